"""
Quota enforcement.

Decides, before a metered operation starts, whether a tenant may consume
N more units. The read-aggregate and compare steps run inside a per-tenant
serialized ledger transaction, and an admitted request leaves a
reservation behind in that same transaction, so two concurrent checks for
one tenant can never both be admitted past a limit they jointly violate.

Evaluation order:
1. Tenant exists
2. Tenant is active
3. Lifetime limit
4. Period (calendar month, UTC) limit
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Collection, Optional

from usage_guard.errors import (
    LedgerIntegrityError,
    QuotaDimension,
    QuotaExceeded,
    TenantInactive,
    TenantNotFound,
)
from usage_guard.storage.ledger import SqliteLedger, period_start_for, utc_now
from usage_guard.storage.models import UsageAggregate
from usage_guard.storage.tenants import TenantDirectory, TenantQuota
from .events import EventSink, UsageEvent, log_event_sink

logger = logging.getLogger(__name__)

# Remaining headroom reported for a dimension without a limit
UNLIMITED = -1


@dataclass(frozen=True)
class LimitDefaults:
    """Global limits applied when a tenant has no limit of its own.

    None or 0 means unlimited. Tenants on an unlimited plan skip both
    the tenant and the global limits.
    """
    lifetime_limit: Optional[int] = None
    period_limit: Optional[int] = None
    unlimited_plans: Collection[str] = frozenset()

    def __post_init__(self):
        if self.lifetime_limit is not None and self.lifetime_limit < 0:
            raise ValueError("lifetime_limit cannot be negative")
        if self.period_limit is not None and self.period_limit < 0:
            raise ValueError("period_limit cannot be negative")


@dataclass(frozen=True)
class EffectiveLimits:
    """Limits in force for one check. None means unlimited."""
    lifetime_limit: Optional[int]
    period_limit: Optional[int]


@dataclass(frozen=True)
class AdmitResult:
    """Outcome of an admitted quota check."""
    tenant_id: str
    units_requested: int
    usage: UsageAggregate
    limits: EffectiveLimits
    lifetime_remaining: int
    period_remaining: int
    period_start: datetime
    reservation_id: Optional[str] = None


def resolve_limits(tenant: TenantQuota, defaults: LimitDefaults) -> EffectiveLimits:
    """Combine tenant-specific limits with the global defaults."""
    if tenant.plan is not None and tenant.plan in defaults.unlimited_plans:
        return EffectiveLimits(lifetime_limit=None, period_limit=None)

    def _pick(own: Optional[int], default: Optional[int]) -> Optional[int]:
        value = own if own is not None else default
        return value if value else None

    return EffectiveLimits(
        lifetime_limit=_pick(tenant.lifetime_limit, defaults.lifetime_limit),
        period_limit=_pick(tenant.period_limit, defaults.period_limit),
    )


def _require_finite(value, name: str, tenant_id: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise LedgerIntegrityError(f"{name} for {tenant_id} is not numeric: {value!r}")
    if not math.isfinite(value):
        raise LedgerIntegrityError(f"{name} for {tenant_id} is not finite: {value!r}")
    return int(value)


def _enforce(
    tenant_id: str,
    dimension: QuotaDimension,
    current: int,
    limit: Optional[int],
    requested: int,
) -> None:
    # Strict: landing exactly on the limit is allowed, one unit past is not
    if limit is not None and current + requested > limit:
        raise QuotaExceeded(tenant_id, dimension, current, limit, requested)


def _remaining(limit: Optional[int], used: int) -> int:
    if limit is None:
        return UNLIMITED
    return max(0, limit - used)


class QuotaGuard:
    """Admits or rejects metered operations against tenant quotas."""

    def __init__(
        self,
        ledger: SqliteLedger,
        tenants: TenantDirectory,
        limits: Optional[LimitDefaults] = None,
        clock: Optional[Callable[[], datetime]] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self._ledger = ledger
        self._tenants = tenants
        self._limits = limits or LimitDefaults()
        self._clock = clock or utc_now
        self._emit = event_sink or log_event_sink

    def _resolve_tenant(self, tenant_id: str) -> TenantQuota:
        tenant = self._tenants.get_tenant(tenant_id) if tenant_id else None
        if tenant is None:
            self._emit(UsageEvent("quota_check", tenant_id, "check_and_reserve", "not_found"))
            raise TenantNotFound(tenant_id)
        if not tenant.active:
            self._emit(UsageEvent("quota_check", tenant_id, "check_and_reserve", "inactive"))
            raise TenantInactive(tenant_id)
        return tenant

    def check_and_reserve(self, tenant_id: str, units_requested: int) -> AdmitResult:
        """Admit a request for ``units_requested`` units or raise.

        On admission the units are reserved until the matching usage is
        recorded (pass ``reservation_id`` to the recorder), released with
        release(), or the reservation expires.

        Args:
            tenant_id: Tenant making the request
            units_requested: Estimated or actual units the request will consume

        Returns:
            AdmitResult with usage, limits and remaining headroom

        Raises:
            TenantNotFound: Unknown tenant
            TenantInactive: Tenant account disabled
            QuotaExceeded: A limit would be exceeded
            StorageError: The ledger could not be read or locked
            LedgerIntegrityError: The ledger returned non-finite totals
        """
        if units_requested < 0:
            raise ValueError("units_requested cannot be negative")

        tenant = self._resolve_tenant(tenant_id)
        limits = resolve_limits(tenant, self._limits)
        period_start = period_start_for(self._clock())

        try:
            with self._ledger.tenant_transaction(tenant_id) as txn:
                usage = txn.aggregate(period_start)
                lifetime_total = _require_finite(usage.lifetime_total, "lifetime total", tenant_id)
                period_total = _require_finite(usage.period_total, "period total", tenant_id)

                _enforce(tenant_id, QuotaDimension.LIFETIME, lifetime_total,
                         limits.lifetime_limit, units_requested)
                _enforce(tenant_id, QuotaDimension.PERIOD, period_total,
                         limits.period_limit, units_requested)

                reservation_id = txn.reserve(units_requested) if units_requested > 0 else None
        except QuotaExceeded as e:
            self._emit(UsageEvent(
                "quota_check", tenant_id, "check_and_reserve", "denied",
                details={
                    "dimension": e.dimension.value,
                    "current": e.current,
                    "limit": e.limit,
                    "units_requested": e.requested,
                },
            ))
            raise

        result = AdmitResult(
            tenant_id=tenant_id,
            units_requested=units_requested,
            usage=UsageAggregate(lifetime_total=lifetime_total, period_total=period_total),
            limits=limits,
            lifetime_remaining=_remaining(limits.lifetime_limit, lifetime_total + units_requested),
            period_remaining=_remaining(limits.period_limit, period_total + units_requested),
            period_start=period_start,
            reservation_id=reservation_id,
        )
        self._emit(UsageEvent(
            "quota_check", tenant_id, "check_and_reserve", "admitted",
            details={
                "units_requested": units_requested,
                "lifetime_total": lifetime_total,
                "period_total": period_total,
                "reservation_id": reservation_id,
            },
        ))
        return result

    def release(self, reservation_id: Optional[str]) -> bool:
        """Give back units reserved for an operation that did not run."""
        if not reservation_id:
            return False
        released = self._ledger.release_reservation(reservation_id)
        logger.debug("Reservation %s released=%s", reservation_id, released)
        return released
