"""
Error taxonomy for quota enforcement and ledger storage.

Quota checks fail by raising; usage recording never raises and reports
through RecordResult instead (see usage_guard.core.recorder).
"""

from enum import Enum
from typing import Optional


class QuotaDimension(Enum):
    """Limit dimensions evaluated by the quota guard, in evaluation order."""
    LIFETIME = "lifetime"
    PERIOD = "period"


class QuotaCheckError(Exception):
    """Base class for failures that must stop a metered operation."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class TenantNotFound(QuotaCheckError):
    """Raised when the tenant directory has no record for the tenant."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant not found: {tenant_id}", tenant_id)


class TenantInactive(QuotaCheckError):
    """Raised when the tenant exists but its account is disabled."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Account is inactive: {tenant_id}", tenant_id)


class QuotaExceeded(QuotaCheckError):
    """Raised when admitting a request would push usage past a limit."""

    _LABELS = {
        QuotaDimension.LIFETIME: "Lifetime",
        QuotaDimension.PERIOD: "Monthly",
    }

    def __init__(
        self,
        tenant_id: str,
        dimension: QuotaDimension,
        current: int,
        limit: int,
        requested: int,
    ):
        message = (
            f"{self._LABELS[dimension]} unit limit exceeded for {tenant_id}: "
            f"{current:,} used + {requested:,} requested > {limit:,} allowed"
        )
        super().__init__(message, tenant_id)
        self.dimension = dimension
        self.current = current
        self.limit = limit
        self.requested = requested


class StorageError(Exception):
    """Transient ledger failure. The caller decides whether to retry."""


class DuplicateRecordError(StorageError):
    """The ledger already holds a record with the same idempotency key."""


class LedgerIntegrityError(Exception):
    """Ledger returned data that cannot be trusted (e.g. non-finite totals)."""


class UnknownProviderError(ValueError):
    """Provider is not part of the closed provider enumeration."""
