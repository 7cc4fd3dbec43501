"""
Tenant quota lookup.

Tenant limits are owned by an external tenant-management system; the core
only reads them, synchronously, at check time and never caches them.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol


@dataclass(frozen=True)
class TenantQuota:
    """Quota settings for one tenant.

    A limit of None defers to the global default; 0 means unlimited.
    """
    tenant_id: str
    active: bool = True
    lifetime_limit: Optional[int] = None
    period_limit: Optional[int] = None
    plan: Optional[str] = None

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        if self.lifetime_limit is not None and self.lifetime_limit < 0:
            raise ValueError("lifetime_limit cannot be negative")
        if self.period_limit is not None and self.period_limit < 0:
            raise ValueError("period_limit cannot be negative")


class TenantDirectory(Protocol):
    """Resolves tenant quota settings by id."""

    def get_tenant(self, tenant_id: str) -> Optional[TenantQuota]:
        ...


class InMemoryTenantDirectory:
    """Thread-safe tenant directory held in process memory."""

    def __init__(self, tenants: Iterable[TenantQuota] = ()):
        self._lock = threading.Lock()
        self._tenants: Dict[str, TenantQuota] = {t.tenant_id: t for t in tenants}

    def get_tenant(self, tenant_id: str) -> Optional[TenantQuota]:
        with self._lock:
            return self._tenants.get(tenant_id)

    def put(self, tenant: TenantQuota) -> None:
        """Insert or replace a tenant's quota settings."""
        with self._lock:
            self._tenants[tenant.tenant_id] = tenant
