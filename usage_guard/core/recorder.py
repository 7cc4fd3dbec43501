"""
Usage recording.

Turns measured consumption into exactly one ledger row: prices it,
suppresses duplicate submissions, and retries transient ledger failures
with exponential backoff. Recording is best-effort attribution for the
caller's primary request, so every outcome, including failure, is
returned as a RecordResult instead of raised.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Set

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from usage_guard.errors import DuplicateRecordError, StorageError
from usage_guard.storage.ledger import SqliteLedger
from usage_guard.storage.models import ConsumptionRecord, UsageScope
from .events import EventSink, UsageEvent, log_event_sink
from .idempotency import IdempotencyGuard, generate_idempotency_key
from .pricing import DEFAULT_PRICING_TABLE, PricingTable, Provider

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.1


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, StorageError) and not isinstance(error, DuplicateRecordError)


class RecordOutcome(Enum):
    """How a record() call ended."""
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordResult:
    """Result of a record() call. Only FAILED is a reportable failure."""
    outcome: RecordOutcome
    idempotency_key: Optional[str] = None
    record: Optional[ConsumptionRecord] = None
    attempts: int = 0
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def recorded(self) -> bool:
        return self.outcome is RecordOutcome.RECORDED

    @property
    def duplicate(self) -> bool:
        return self.outcome is RecordOutcome.DUPLICATE

    @property
    def success(self) -> bool:
        return self.outcome is not RecordOutcome.FAILED


class UsageRecorder:
    """Records metered consumption to the ledger exactly once per key."""

    def __init__(
        self,
        ledger: SqliteLedger,
        idempotency: IdempotencyGuard,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], None] = time.sleep,
        event_sink: Optional[EventSink] = None,
    ):
        """Initialize the recorder.

        Args:
            ledger: Ledger to append to
            idempotency: Set of already-recorded keys
            pricing: Price list used to cost each record
            max_attempts: Total append attempts, including the first
            backoff_base: Wait after attempt n is ``2**n * backoff_base`` seconds
            sleep: Sleep function used between attempts
            event_sink: Receiver for retry/duplicate/failure events
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")
        self._ledger = ledger
        self._idempotency = idempotency
        self._pricing = pricing
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._emit = event_sink or log_event_sink
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()

    def record(
        self,
        tenant_id: Optional[str],
        provider: str,
        model: str,
        input_units: int,
        output_units: int,
        request_kind: Optional[str] = None,
        scope: Optional[UsageScope] = None,
        idempotency_key: Optional[str] = None,
        reservation_id: Optional[str] = None,
    ) -> RecordResult:
        """Record consumption for a completed metered operation.

        Never raises. A missing tenant or zero units is a no-op; a known
        idempotency key is a duplicate; ledger failures are retried and,
        once exhausted, returned as a FAILED result.

        Args:
            tenant_id: Tenant to charge
            provider: Provider name (closed enumeration)
            model: Model name; unknown models use the provider default rate
            input_units: Measured input units
            output_units: Measured output units
            request_kind: Free-form attribution label
            scope: Project/agent/conversation attribution
            idempotency_key: Caller key identifying one logical operation;
                generated when omitted
            reservation_id: Quota reservation to settle with this record
        """
        if not tenant_id:
            return RecordResult(RecordOutcome.SKIPPED, reason="No tenant provided")

        input_units = input_units or 0
        output_units = output_units or 0
        if input_units < 0 or output_units < 0:
            return self._failed(
                tenant_id, idempotency_key, 0,
                ValueError("unit counts cannot be negative"),
            )
        if input_units + output_units <= 0:
            return RecordResult(RecordOutcome.SKIPPED, reason="No units to record")

        scope = scope or UsageScope()
        key = idempotency_key or generate_idempotency_key(
            tenant_id, str(provider), model, input_units, output_units, scope
        )

        if not self._claim(key):
            return self._duplicate(tenant_id, key, "in_flight")
        try:
            if self._is_known(tenant_id, key):
                return self._duplicate(tenant_id, key, "known_key")

            try:
                provider_name = Provider.parse(provider).value
                cost = self._pricing.cost(provider_name, model, input_units, output_units)
                record = ConsumptionRecord(
                    tenant_id=tenant_id,
                    provider=provider_name,
                    model=model,
                    input_units=input_units,
                    output_units=output_units,
                    total_units=input_units + output_units,
                    estimated_cost=cost,
                    request_kind=request_kind,
                    scope=scope,
                    idempotency_key=key,
                )
            except ValueError as e:
                return self._failed(tenant_id, key, 0, e)

            return self._append_with_retry(record, reservation_id)
        finally:
            self._release(key)

    def _append_with_retry(
        self, record: ConsumptionRecord, reservation_id: Optional[str]
    ) -> RecordResult:
        key = record.idempotency_key
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=2 * self.backoff_base),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=self._log_retry(record.tenant_id),
        )

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    stored = self._ledger.append(record, reservation_id=reservation_id)
        except DuplicateRecordError:
            # The ledger already has this key, e.g. written by another process
            self._mark_known(record.tenant_id, key)
            return self._duplicate(record.tenant_id, key, "ledger_key", attempts)
        except RetryError as e:
            return self._failed(record.tenant_id, key, attempts, e.last_attempt.exception())
        except Exception as e:
            return self._failed(record.tenant_id, key, attempts, e)

        self._mark_known(record.tenant_id, key)
        logger.info(
            "Usage recorded tenant=%s provider=%s model=%s units=%d cost=%s",
            stored.tenant_id, stored.provider, stored.model,
            stored.total_units, stored.estimated_cost,
        )
        return RecordResult(
            RecordOutcome.RECORDED,
            idempotency_key=key,
            record=stored,
            attempts=attempts,
        )

    def _log_retry(self, tenant_id: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0
            self._emit(UsageEvent(
                "usage_record", tenant_id, "record", "retry",
                attempt=state.attempt_number,
                details={"error": str(error), "wait_seconds": wait},
            ))
        return _before_sleep

    def _is_known(self, tenant_id: str, key: str) -> bool:
        # A cache outage falls through to the ledger's unique key index
        try:
            return self._idempotency.is_known(key)
        except Exception as e:
            self._cache_error(tenant_id, key, "lookup", e)
            return False

    def _mark_known(self, tenant_id: str, key: str) -> None:
        try:
            self._idempotency.mark_known(key)
        except Exception as e:
            self._cache_error(tenant_id, key, "mark", e)

    def _cache_error(self, tenant_id: str, key: str, stage: str, error: Exception) -> None:
        self._emit(UsageEvent(
            "usage_record", tenant_id, "record", "cache_error",
            details={"idempotency_key": key, "stage": stage, "error": str(error)},
        ))

    def _claim(self, key: str) -> bool:
        with self._in_flight_lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(key)

    def _duplicate(
        self, tenant_id: str, key: str, source: str, attempts: int = 0
    ) -> RecordResult:
        self._emit(UsageEvent(
            "usage_record", tenant_id, "record", "duplicate",
            attempt=attempts or None,
            details={"idempotency_key": key, "source": source},
        ))
        return RecordResult(
            RecordOutcome.DUPLICATE,
            idempotency_key=key,
            attempts=attempts,
            reason="Duplicate request",
        )

    def _failed(
        self,
        tenant_id: str,
        key: Optional[str],
        attempts: int,
        error: Optional[BaseException],
    ) -> RecordResult:
        self._emit(UsageEvent(
            "usage_record", tenant_id, "record", "failed",
            attempt=attempts or None,
            details={"idempotency_key": key, "error": str(error)},
        ))
        return RecordResult(
            RecordOutcome.FAILED,
            idempotency_key=key,
            attempts=attempts,
            reason=str(error),
            error=error,
        )
