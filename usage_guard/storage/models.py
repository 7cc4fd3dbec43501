"""
Data models for storage layer.

Defines ledger rows and aggregate views.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional


@dataclass(frozen=True)
class UsageScope:
    """Secondary identifiers used for attribution only, never enforcement."""
    project_id: Optional[str] = None
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class ConsumptionRecord:
    """Immutable record of metered consumption.

    Append-only rows that form the auditable ledger of tenant usage.
    Once written, these records must never be modified; the cost is
    computed at write time and never recomputed.
    """
    tenant_id: str
    provider: str
    model: str
    input_units: int
    output_units: int
    total_units: int
    estimated_cost: Decimal
    request_kind: Optional[str] = None
    scope: UsageScope = field(default_factory=UsageScope)
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    record_id: Optional[int] = None

    def __post_init__(self):
        """Validate unit counts and cost."""
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        if self.input_units < 0 or self.output_units < 0:
            raise ValueError("unit counts cannot be negative")
        if self.total_units != self.input_units + self.output_units:
            raise ValueError("total_units must equal input_units + output_units")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")


@dataclass(frozen=True)
class UsageAggregate:
    """Computed consumption totals for one tenant."""
    lifetime_total: int
    period_total: int


@dataclass
class ModelUsage:
    """Per-model slice of a usage summary."""
    units: int = 0
    input_units: int = 0
    output_units: int = 0
    cost: Decimal = Decimal("0")
    requests: int = 0


@dataclass
class ProviderUsage:
    """Per-provider slice of a usage summary."""
    units: int = 0
    input_units: int = 0
    output_units: int = 0
    cost: Decimal = Decimal("0")
    models: Dict[str, ModelUsage] = field(default_factory=dict)


@dataclass
class UsageSummary:
    """Totals for a tenant over a time window with provider/model breakdown."""
    total_units: int = 0
    input_units: int = 0
    output_units: int = 0
    total_cost: Decimal = Decimal("0")
    by_provider: Dict[str, ProviderUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyUsage:
    """One row of per-day usage statistics."""
    usage_date: date
    provider: str
    model: str
    request_count: int
    input_units: int
    output_units: int
    total_units: int
    total_cost: Decimal


@dataclass(frozen=True)
class ScopeTotals:
    """Usage totals for one attribution scope (e.g. a conversation)."""
    input_units: int
    output_units: int
    total_units: int
    total_cost: Decimal
    request_count: int
