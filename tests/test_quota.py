"""
Tests for quota enforcement logic.
"""
import math
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from usage_guard.core.quota import (
    UNLIMITED,
    LimitDefaults,
    QuotaGuard,
    resolve_limits,
)
from usage_guard.errors import (
    LedgerIntegrityError,
    QuotaDimension,
    QuotaExceeded,
    StorageError,
    TenantInactive,
    TenantNotFound,
)
from usage_guard.storage.ledger import SqliteLedger
from usage_guard.storage.models import ConsumptionRecord, UsageAggregate
from usage_guard.storage.tenants import InMemoryTenantDirectory, TenantQuota

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


class TestResolveLimits:
    """Test effective limit resolution."""

    def test_tenant_limit_wins(self):
        """Verify a tenant's own limit overrides the default."""
        tenant = TenantQuota("t", lifetime_limit=100, period_limit=50)
        limits = resolve_limits(tenant, LimitDefaults(lifetime_limit=1000, period_limit=500))
        assert limits.lifetime_limit == 100
        assert limits.period_limit == 50

    def test_missing_tenant_limit_uses_default(self):
        """Verify an unset tenant limit falls back to the global default."""
        tenant = TenantQuota("t")
        limits = resolve_limits(tenant, LimitDefaults(lifetime_limit=1000, period_limit=500))
        assert limits.lifetime_limit == 1000
        assert limits.period_limit == 500

    def test_zero_means_unlimited(self):
        """Verify a zero limit disables that dimension."""
        tenant = TenantQuota("t", lifetime_limit=0)
        limits = resolve_limits(tenant, LimitDefaults(lifetime_limit=1000, period_limit=0))
        assert limits.lifetime_limit is None
        assert limits.period_limit is None

    def test_unlimited_plan_skips_defaults(self):
        """Verify an unlimited plan ignores both tenant and global limits."""
        tenant = TenantQuota("t", lifetime_limit=10, plan="enterprise")
        limits = resolve_limits(
            tenant,
            LimitDefaults(lifetime_limit=1000, period_limit=500, unlimited_plans={"enterprise"}),
        )
        assert limits.lifetime_limit is None
        assert limits.period_limit is None

    def test_negative_default_rejected(self):
        """Verify negative global limits are rejected."""
        with pytest.raises(ValueError):
            LimitDefaults(lifetime_limit=-1)


class TestQuotaGuard:
    """Test admit/deny decisions against a real ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = SqliteLedger(os.path.join(self.temp_dir, "test.db"), clock=fixed_clock)
        self.ledger.initialize_schema()
        self.tenants = InMemoryTenantDirectory()
        self.events = []
        self.guard = QuotaGuard(
            self.ledger, self.tenants, clock=fixed_clock, event_sink=self.events.append
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed(self, tenant_id, units):
        self.ledger.append(ConsumptionRecord(
            tenant_id=tenant_id,
            provider="openai",
            model="gpt-4",
            input_units=units,
            output_units=0,
            total_units=units,
            estimated_cost=Decimal("0"),
        ))

    def test_lifetime_limit_exceeded(self):
        """Verify 9,500 used + 1,000 requested is denied on the lifetime dimension."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000))
        self._seed("t1", 9500)

        with pytest.raises(QuotaExceeded, match=r"Lifetime .* exceeded") as excinfo:
            self.guard.check_and_reserve("t1", 1000)

        error = excinfo.value
        assert error.dimension is QuotaDimension.LIFETIME
        assert error.current == 9500
        assert error.limit == 10000
        assert error.requested == 1000

    def test_period_limit_exceeded(self):
        """Verify 4,500 used this month + 1,000 requested is denied on the period dimension."""
        self.tenants.put(TenantQuota("t1", period_limit=5000))
        self._seed("t1", 4500)

        with pytest.raises(QuotaExceeded, match=r"Monthly .* exceeded") as excinfo:
            self.guard.check_and_reserve("t1", 1000)
        assert excinfo.value.dimension is QuotaDimension.PERIOD

    def test_lifetime_reported_before_period(self):
        """Verify the lifetime dimension is reported when both are violated."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=100, period_limit=100))
        self._seed("t1", 100)

        with pytest.raises(QuotaExceeded) as excinfo:
            self.guard.check_and_reserve("t1", 1)
        assert excinfo.value.dimension is QuotaDimension.LIFETIME

    def test_strict_boundary(self):
        """Verify L-1 used admits 1 unit but denies 2."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=100))
        self._seed("t1", 99)

        with pytest.raises(QuotaExceeded):
            self.guard.check_and_reserve("t1", 2)
        result = self.guard.check_and_reserve("t1", 1)
        assert result.lifetime_remaining == 0

    def test_at_limit_denies_any_positive_request(self):
        """Verify a tenant exactly at its limit is denied one more unit."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=100))
        self._seed("t1", 100)

        with pytest.raises(QuotaExceeded):
            self.guard.check_and_reserve("t1", 1)

    def test_zero_request_admitted_at_limit(self):
        """Verify a zero-unit request is admitted and reserves nothing."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=100))
        self._seed("t1", 100)

        result = self.guard.check_and_reserve("t1", 0)
        assert result.reservation_id is None
        assert result.lifetime_remaining == 0

    def test_negative_request_rejected(self):
        """Verify negative requests are rejected outright."""
        self.tenants.put(TenantQuota("t1"))
        with pytest.raises(ValueError):
            self.guard.check_and_reserve("t1", -5)

    def test_inactive_blocks_regardless_of_quota(self):
        """Verify an inactive tenant is denied even with ample quota."""
        self.tenants.put(TenantQuota("t1", active=False, lifetime_limit=1_000_000))

        with pytest.raises(TenantInactive, match="inactive"):
            self.guard.check_and_reserve("t1", 1)
        assert self.events[-1].outcome == "inactive"

    def test_unknown_tenant(self):
        """Verify an unknown tenant is denied with TenantNotFound."""
        with pytest.raises(TenantNotFound, match="not found"):
            self.guard.check_and_reserve("ghost", 1)

    def test_admit_result_contents(self):
        """Verify usage, limits and remaining headroom are reported."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000, period_limit=5000))
        self._seed("t1", 1000)

        result = self.guard.check_and_reserve("t1", 500)
        assert result.usage == UsageAggregate(lifetime_total=1000, period_total=1000)
        assert result.lifetime_remaining == 8500
        assert result.period_remaining == 3500
        assert result.period_start == datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert result.reservation_id is not None

    def test_unlimited_remaining(self):
        """Verify unlimited dimensions report -1 remaining."""
        self.tenants.put(TenantQuota("t1"))
        result = self.guard.check_and_reserve("t1", 10)
        assert result.lifetime_remaining == UNLIMITED
        assert result.period_remaining == UNLIMITED

    def test_global_defaults_apply(self):
        """Verify global limits apply to tenants without their own."""
        guard = QuotaGuard(
            self.ledger, self.tenants,
            limits=LimitDefaults(lifetime_limit=50),
            clock=fixed_clock,
            event_sink=self.events.append,
        )
        self.tenants.put(TenantQuota("t1"))
        with pytest.raises(QuotaExceeded):
            guard.check_and_reserve("t1", 51)

    def test_reservations_count_against_later_checks(self):
        """Verify an admitted but unrecorded request still holds its units."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000))
        self.guard.check_and_reserve("t1", 6000)

        with pytest.raises(QuotaExceeded):
            self.guard.check_and_reserve("t1", 6000)

    def test_release_returns_units(self):
        """Verify releasing a reservation frees its units."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000))
        result = self.guard.check_and_reserve("t1", 6000)
        assert self.guard.release(result.reservation_id) is True

        self.guard.check_and_reserve("t1", 6000)
        assert self.guard.release(None) is False

    def test_denial_emits_event(self):
        """Verify denials are reported with the violated dimension."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10))
        with pytest.raises(QuotaExceeded):
            self.guard.check_and_reserve("t1", 11)

        event = self.events[-1]
        assert event.outcome == "denied"
        assert event.tenant_id == "t1"
        assert event.details["dimension"] == "lifetime"

    def test_admission_emits_event(self):
        """Verify admissions are reported."""
        self.tenants.put(TenantQuota("t1"))
        self.guard.check_and_reserve("t1", 10)
        assert self.events[-1].outcome == "admitted"
        assert self.events[-1].details["units_requested"] == 10


class TestQuotaConcurrency:
    """Test that concurrent checks never over-admit."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = SqliteLedger(os.path.join(self.temp_dir, "test.db"), clock=fixed_clock)
        self.ledger.initialize_schema()
        self.tenants = InMemoryTenantDirectory()
        self.guard = QuotaGuard(
            self.ledger, self.tenants, clock=fixed_clock, event_sink=lambda event: None
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _race(self, tenant_id, units, workers):
        barrier = threading.Barrier(workers)
        admitted = []
        denied = []
        errors = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                result = self.guard.check_and_reserve(tenant_id, units)
            except QuotaExceeded as e:
                with lock:
                    denied.append(e)
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    admitted.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        return admitted, denied

    def test_two_concurrent_requests_one_admitted(self):
        """Verify two 6,000-unit requests against a 10,000 limit admit exactly one."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000))
        admitted, denied = self._race("t1", 6000, 2)
        assert len(admitted) == 1
        assert len(denied) == 1

    def test_many_concurrent_requests_never_over_admit(self):
        """Verify at most floor(L / u) of N concurrent requests are admitted."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=10000))
        admitted, denied = self._race("t1", 1500, 16)
        assert len(admitted) == math.floor(10000 / 1500)
        assert len(admitted) + len(denied) == 16

    def test_tenants_do_not_block_each_other(self):
        """Verify one tenant's usage never affects another's admission."""
        self.tenants.put(TenantQuota("t1", lifetime_limit=1000))
        self.tenants.put(TenantQuota("t2", lifetime_limit=1000))
        self._race("t1", 1000, 4)
        admitted, _ = self._race("t2", 1000, 4)
        assert len(admitted) == 1


class FakeTransaction:
    def __init__(self, usage):
        self.usage = usage
        self.reserved = []

    def aggregate(self, period_start):
        return self.usage

    def reserve(self, units):
        self.reserved.append(units)
        return "r1"


class FakeLedger:
    """Ledger stand-in returning fixed aggregates."""

    def __init__(self, usage=None, error=None):
        self.txn = FakeTransaction(usage)
        self.error = error
        self.rolled_back = False

    @contextmanager
    def tenant_transaction(self, tenant_id):
        if self.error is not None:
            raise self.error
        try:
            yield self.txn
        except BaseException:
            self.rolled_back = True
            raise


class TestQuotaGuardIntegrity:
    """Test handling of untrustworthy or failing storage."""

    def _guard(self, ledger):
        tenants = InMemoryTenantDirectory([TenantQuota("t1", lifetime_limit=100)])
        return QuotaGuard(ledger, tenants, clock=fixed_clock, event_sink=lambda event: None)

    def test_non_finite_total_is_fatal(self):
        """Verify an infinite aggregate raises instead of passing."""
        ledger = FakeLedger(UsageAggregate(lifetime_total=float("inf"), period_total=0))
        with pytest.raises(LedgerIntegrityError, match="not finite"):
            self._guard(ledger).check_and_reserve("t1", 1)
        assert ledger.rolled_back
        assert ledger.txn.reserved == []

    def test_nan_total_is_fatal(self):
        """Verify a NaN aggregate raises instead of passing."""
        ledger = FakeLedger(UsageAggregate(lifetime_total=0, period_total=float("nan")))
        with pytest.raises(LedgerIntegrityError):
            self._guard(ledger).check_and_reserve("t1", 1)

    def test_denial_rolls_back(self):
        """Verify a quota denial rolls back the transaction."""
        ledger = FakeLedger(UsageAggregate(lifetime_total=100, period_total=100))
        with pytest.raises(QuotaExceeded):
            self._guard(ledger).check_and_reserve("t1", 1)
        assert ledger.rolled_back
        assert ledger.txn.reserved == []

    def test_storage_error_propagates(self):
        """Verify storage failures are not retried by the quota guard."""
        ledger = FakeLedger(error=StorageError("database is locked"))
        with pytest.raises(StorageError, match="locked"):
            self._guard(ledger).check_and_reserve("t1", 1)
