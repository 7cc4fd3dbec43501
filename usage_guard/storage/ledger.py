"""
Append-only usage ledger.

Stores one ConsumptionRecord per metered operation and answers the
aggregate queries the quota guard decides on. Consumption records are
never updated or deleted here; totals are always computed at read time.

Admitted-but-not-yet-recorded requests are tracked as short-lived quota
reservations in a separate table so that concurrent checks for the same
tenant see each other's admissions.
"""

import logging
import sqlite3
import threading
import uuid
import zlib
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from usage_guard.errors import DuplicateRecordError, StorageError
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ConsumptionRecord,
    DailyUsage,
    ModelUsage,
    ProviderUsage,
    ScopeTotals,
    UsageAggregate,
    UsageScope,
    UsageSummary,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

LOCK_STRIPES = 1024

_RECORD_COLUMNS = (
    "id, tenant_id, project_id, agent_id, conversation_id, provider, model, "
    "input_units, output_units, total_units, estimated_cost, request_kind, "
    "idempotency_key, created_at"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_start_for(moment: datetime) -> datetime:
    """First instant of the calendar month containing ``moment``, in UTC."""
    moment = _as_utc(moment)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _to_db(moment: datetime) -> str:
    # Fixed-width UTC text so lexical order matches time order
    return _as_utc(moment).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    return datetime.fromisoformat(value)


class TenantLockRegistry:
    """Striped mutexes keyed by a stable hash of the tenant id.

    Two tenants may share a stripe; that only costs contention, never
    correctness. The same tenant always maps to the same stripe.
    """

    def __init__(self, stripes: int = LOCK_STRIPES):
        if stripes <= 0:
            raise ValueError("stripes must be > 0")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def lock_for(self, tenant_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(tenant_id.encode("utf-8")) % len(self._locks)]


class LedgerTransaction:
    """Operations available while a tenant's serialization lock is held."""

    def __init__(self, ledger: "SqliteLedger", conn: sqlite3.Connection, tenant_id: str):
        self._ledger = ledger
        self._conn = conn
        self.tenant_id = tenant_id

    def aggregate(self, period_start: datetime) -> UsageAggregate:
        """Committed consumption plus live reservations for the tenant."""
        now = _to_db(self._ledger.clock())
        try:
            recorded = self._conn.execute(
                """
                SELECT COALESCE(SUM(total_units), 0),
                       COALESCE(SUM(CASE WHEN created_at >= ? THEN total_units ELSE 0 END), 0)
                FROM consumption_record
                WHERE tenant_id = ?
                """,
                (_to_db(period_start), self.tenant_id),
            ).fetchone()
            reserved = self._conn.execute(
                """
                SELECT COALESCE(SUM(units), 0),
                       COALESCE(SUM(CASE WHEN created_at >= ? THEN units ELSE 0 END), 0)
                FROM quota_reservation
                WHERE tenant_id = ? AND expires_at > ?
                """,
                (_to_db(period_start), self.tenant_id, now),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to aggregate usage for {self.tenant_id}: {e}") from e

        return UsageAggregate(
            lifetime_total=recorded[0] + reserved[0],
            period_total=recorded[1] + reserved[1],
        )

    def reserve(self, units: int) -> str:
        """Hold ``units`` against the tenant's quota until recorded or expired."""
        if units <= 0:
            raise ValueError("reserved units must be > 0")

        now = self._ledger.clock()
        reservation_id = uuid.uuid4().hex
        try:
            self._conn.execute(
                "DELETE FROM quota_reservation WHERE tenant_id = ? AND expires_at <= ?",
                (self.tenant_id, _to_db(now)),
            )
            self._conn.execute(
                """
                INSERT INTO quota_reservation (id, tenant_id, units, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    reservation_id,
                    self.tenant_id,
                    units,
                    _to_db(now),
                    _to_db(now + self._ledger.reservation_ttl),
                ),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to reserve units for {self.tenant_id}: {e}") from e
        return reservation_id


class SqliteLedger:
    """SQLite-backed usage ledger.

    Each operation opens its own connection, so one instance can be shared
    by many request threads.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        lock_timeout: float = 10.0,
        reservation_ttl: float = 600.0,
        clock: Optional[Clock] = None,
        locks: Optional[TenantLockRegistry] = None,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            lock_timeout: Seconds to wait for a tenant lock or the database lock
            reservation_ttl: Seconds an unrecorded reservation keeps holding quota
            clock: Source of server timestamps (UTC)
            locks: Tenant lock registry, shared between ledgers on the same file
        """
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.reservation_ttl = timedelta(seconds=reservation_ttl)
        self.clock = clock or utc_now
        self._locks = locks or TenantLockRegistry()

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path, busy_timeout=self.lock_timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open ledger database {self.db_path}: {e}") from e

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Ledger rollback failed")

    def initialize_schema(self) -> None:
        """Create ledger tables and indexes if they don't exist.

        consumption_record is append-only: no UPDATE or DELETE is ever issued
        against it by this package.
        """
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS consumption_record (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    project_id TEXT,
                    agent_id TEXT,
                    conversation_id TEXT,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_units INTEGER NOT NULL CHECK (input_units >= 0),
                    output_units INTEGER NOT NULL CHECK (output_units >= 0),
                    total_units INTEGER NOT NULL CHECK (total_units >= 0),
                    estimated_cost TEXT NOT NULL,
                    request_kind TEXT,
                    idempotency_key TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_consumption_tenant_created
                    ON consumption_record(tenant_id, created_at);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_consumption_idempotency_key
                    ON consumption_record(idempotency_key)
                    WHERE idempotency_key IS NOT NULL;
                CREATE TABLE IF NOT EXISTS quota_reservation (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    units INTEGER NOT NULL CHECK (units > 0),
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_reservation_tenant_expiry
                    ON quota_reservation(tenant_id, expires_at);
            """)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize ledger schema: {e}") from e
        finally:
            conn.close()

    def append(
        self,
        record: ConsumptionRecord,
        reservation_id: Optional[str] = None,
    ) -> ConsumptionRecord:
        """Insert a single consumption record.

        The server assigns ``created_at`` and ``record_id``. When a
        reservation id is given, that hold is released in the same
        transaction so the units are never counted twice.

        Returns:
            The stored record

        Raises:
            DuplicateRecordError: If the idempotency key is already recorded
            StorageError: On any other database failure
        """
        created_at = self.clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO consumption_record
                    (tenant_id, project_id, agent_id, conversation_id, provider, model,
                     input_units, output_units, total_units, estimated_cost,
                     request_kind, idempotency_key, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.tenant_id,
                        record.scope.project_id,
                        record.scope.agent_id,
                        record.scope.conversation_id,
                        record.provider,
                        record.model,
                        record.input_units,
                        record.output_units,
                        record.total_units,
                        str(record.estimated_cost),
                        record.request_kind,
                        record.idempotency_key,
                        _to_db(created_at),
                    ),
                )
                if reservation_id:
                    conn.execute(
                        "DELETE FROM quota_reservation WHERE id = ? AND tenant_id = ?",
                        (reservation_id, record.tenant_id),
                    )
                conn.execute("COMMIT")
            except BaseException:
                self._rollback(conn)
                raise
        except sqlite3.IntegrityError as e:
            if record.idempotency_key and "idempotency_key" in str(e):
                raise DuplicateRecordError(
                    f"Usage already recorded for key {record.idempotency_key}"
                ) from e
            raise StorageError(f"Failed to append usage record: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"Failed to append usage record: {e}") from e
        finally:
            conn.close()

        return ConsumptionRecord(
            tenant_id=record.tenant_id,
            provider=record.provider,
            model=record.model,
            input_units=record.input_units,
            output_units=record.output_units,
            total_units=record.total_units,
            estimated_cost=record.estimated_cost,
            request_kind=record.request_kind,
            scope=record.scope,
            idempotency_key=record.idempotency_key,
            created_at=_as_utc(created_at),
            record_id=cursor.lastrowid,
        )

    def aggregate(self, tenant_id: str, period_start: datetime) -> UsageAggregate:
        """Sum recorded units for a tenant, lifetime and since period_start.

        This is a plain read; quota decisions must use tenant_transaction().
        """
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(total_units), 0),
                       COALESCE(SUM(CASE WHEN created_at >= ? THEN total_units ELSE 0 END), 0)
                FROM consumption_record
                WHERE tenant_id = ?
                """,
                (_to_db(period_start), tenant_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to aggregate usage for {tenant_id}: {e}") from e
        finally:
            conn.close()
        return UsageAggregate(lifetime_total=row[0], period_total=row[1])

    @contextmanager
    def tenant_transaction(self, tenant_id: str) -> Iterator[LedgerTransaction]:
        """Serialize read-decide-reserve for one tenant.

        Holds the tenant's lock and a write transaction for the lifetime of
        the ``with`` block. Commits on normal exit, rolls back on any
        exception; the lock is released either way.

        Raises:
            StorageError: If the lock or the database cannot be acquired
                within lock_timeout, or the commit fails
        """
        lock = self._locks.lock_for(tenant_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise StorageError(
                f"Timed out after {self.lock_timeout}s waiting for quota lock on {tenant_id}"
            )
        try:
            conn = self._connect()
            try:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as e:
                    raise StorageError(f"Failed to open quota transaction: {e}") from e

                try:
                    yield LedgerTransaction(self, conn, tenant_id)
                except BaseException:
                    self._rollback(conn)
                    raise

                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback(conn)
                    raise StorageError(f"Failed to commit quota transaction: {e}") from e
            finally:
                conn.close()
        finally:
            lock.release()

    def release_reservation(self, reservation_id: str) -> bool:
        """Release an unused quota hold. Returns False if it no longer exists."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM quota_reservation WHERE id = ?", (reservation_id,)
            )
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to release reservation {reservation_id}: {e}") from e
        finally:
            conn.close()

    def _query_records(
        self,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ConsumptionRecord]:
        query = f"SELECT {_RECORD_COLUMNS} FROM consumption_record"
        params: list = []
        conditions = []

        for column, value in (
            ("tenant_id", tenant_id),
            ("project_id", project_id),
            ("agent_id", agent_id),
            ("conversation_id", conversation_id),
        ):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_to_db(since))
        if until is not None:
            conditions.append("created_at <= ?")
            params.append(_to_db(until))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to query usage records: {e}") from e
        finally:
            conn.close()

        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Tuple) -> ConsumptionRecord:
        return ConsumptionRecord(
            record_id=row[0],
            tenant_id=row[1],
            scope=UsageScope(project_id=row[2], agent_id=row[3], conversation_id=row[4]),
            provider=row[5],
            model=row[6],
            input_units=row[7],
            output_units=row[8],
            total_units=row[9],
            estimated_cost=Decimal(row[10]),
            request_kind=row[11],
            idempotency_key=row[12],
            created_at=_from_db(row[13]),
        )

    def fetch_records(
        self,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ConsumptionRecord]:
        """Fetch recent records, newest first, with optional filters."""
        return self._query_records(
            tenant_id=tenant_id,
            project_id=project_id,
            agent_id=agent_id,
            conversation_id=conversation_id,
            since=since,
            until=until,
            limit=limit,
        )

    def summarize(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> UsageSummary:
        """Total a tenant's usage with a per-provider and per-model breakdown."""
        summary = UsageSummary()
        for record in self._query_records(tenant_id=tenant_id, since=since, until=until):
            summary.total_units += record.total_units
            summary.input_units += record.input_units
            summary.output_units += record.output_units
            summary.total_cost += record.estimated_cost

            provider = summary.by_provider.setdefault(record.provider, ProviderUsage())
            provider.units += record.total_units
            provider.input_units += record.input_units
            provider.output_units += record.output_units
            provider.cost += record.estimated_cost

            model = provider.models.setdefault(record.model, ModelUsage())
            model.units += record.total_units
            model.input_units += record.input_units
            model.output_units += record.output_units
            model.cost += record.estimated_cost
            model.requests += 1
        return summary

    def daily_stats(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[DailyUsage]:
        """Per-day, per-provider, per-model usage rows, newest day first."""
        buckets: Dict[Tuple[date, str, str], List[ConsumptionRecord]] = defaultdict(list)
        for record in self._query_records(
            tenant_id=tenant_id,
            project_id=project_id,
            agent_id=agent_id,
            since=since,
            until=until,
        ):
            buckets[(record.created_at.date(), record.provider, record.model)].append(record)

        stats = [
            DailyUsage(
                usage_date=day,
                provider=provider,
                model=model,
                request_count=len(records),
                input_units=sum(r.input_units for r in records),
                output_units=sum(r.output_units for r in records),
                total_units=sum(r.total_units for r in records),
                total_cost=sum((r.estimated_cost for r in records), Decimal("0")),
            )
            for (day, provider, model), records in buckets.items()
        ]
        stats.sort(key=lambda s: (s.provider, s.model))
        stats.sort(key=lambda s: s.usage_date, reverse=True)
        return stats

    def scope_totals(
        self,
        tenant_id: str,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> ScopeTotals:
        """Totals for one attribution scope, e.g. a single conversation."""
        records = self._query_records(
            tenant_id=tenant_id,
            project_id=project_id,
            agent_id=agent_id,
            conversation_id=conversation_id,
        )
        return ScopeTotals(
            input_units=sum(r.input_units for r in records),
            output_units=sum(r.output_units for r in records),
            total_units=sum(r.total_units for r in records),
            total_cost=sum((r.estimated_cost for r in records), Decimal("0")),
            request_count=len(records),
        )
