"""
Configuration management and loading.

Reads the YAML configuration for limits, pricing, retry, idempotency and
storage settings. Validation is strict: unknown keys and wrong types are
rejected at load time rather than silently defaulted.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from usage_guard.core.estimator import DEFAULT_MAX_OUTPUT_UNITS
from usage_guard.core.idempotency import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TTL_SECONDS,
    IdempotencyGuard,
    build_idempotency_guard,
)
from usage_guard.core.pricing import (
    DEFAULT_PRICING_TABLE,
    ModelPricing,
    PricingTable,
    Provider,
)
from usage_guard.core.quota import LimitDefaults, QuotaGuard
from usage_guard.core.recorder import DEFAULT_BACKOFF_BASE, DEFAULT_MAX_ATTEMPTS, UsageRecorder
from usage_guard.errors import UnknownProviderError
from usage_guard.storage.db import DEFAULT_DB_PATH
from usage_guard.storage.ledger import SqliteLedger
from usage_guard.storage.tenants import InMemoryTenantDirectory, TenantQuota


class IdempotencyBackend(Enum):
    """Where recorded idempotency keys are kept."""
    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class EstimatorConfig:
    """Pre-flight estimation settings."""
    max_output_units: int = DEFAULT_MAX_OUTPUT_UNITS

    def __post_init__(self):
        if self.max_output_units <= 0:
            raise ValueError("max_output_units must be > 0")


@dataclass(frozen=True)
class RecorderConfig:
    """Ledger write retry settings."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds cannot be negative")


@dataclass(frozen=True)
class IdempotencyConfig:
    """Duplicate suppression settings."""
    backend: IdempotencyBackend = IdempotencyBackend.MEMORY
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    redis_url: Optional[str] = None

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if self.backend is IdempotencyBackend.REDIS and not self.redis_url:
            raise ValueError("redis_url is required when idempotency backend is 'redis'")


@dataclass(frozen=True)
class StorageConfig:
    """Ledger database settings."""
    db_path: str = DEFAULT_DB_PATH
    lock_timeout_seconds: float = 10.0
    reservation_ttl_seconds: float = 600.0

    def __post_init__(self):
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be > 0")
        if self.reservation_ttl_seconds <= 0:
            raise ValueError("reservation_ttl_seconds must be > 0")


@dataclass(frozen=True)
class UsageGuardConfig:
    """Complete usage guard configuration."""
    limits: LimitDefaults = field(default_factory=LimitDefaults)
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    tenants: Tuple[TenantQuota, ...] = ()


_TOP_LEVEL_KEYS = {
    'limits', 'unlimited_plans', 'pricing', 'estimator',
    'recorder', 'idempotency', 'storage', 'tenants',
}


def load_config(path: str) -> UsageGuardConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration that could
    let a tenant run past its quota or charge at the wrong rate.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated UsageGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Usage guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> UsageGuardConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - _TOP_LEVEL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return UsageGuardConfig(
        limits=_parse_limits(raw_config.get('limits', {}), raw_config.get('unlimited_plans', [])),
        pricing=_parse_pricing(raw_config.get('pricing', {})),
        estimator=_parse_estimator(raw_config.get('estimator', {})),
        recorder=_parse_recorder(raw_config.get('recorder', {})),
        idempotency=_parse_idempotency(raw_config.get('idempotency', {})),
        storage=_parse_storage(raw_config.get('storage', {})),
        tenants=_parse_tenants(raw_config.get('tenants', {})),
    )


def _section(data: Any, path: str, allowed_keys: set) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, path: str, integer: bool = False):
    value = data[key]
    expected = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, expected):
        kind = "an integer" if integer else "a number"
        raise ValueError(f"'{key}' in {path} must be {kind}")
    return value


def _optional_limit(data: Dict[str, Any], key: str, path: str) -> Optional[int]:
    if data.get(key) is None:
        return None
    value = _number(data, key, path, integer=True)
    if value < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return value


def _parse_limits(data: Any, unlimited_plans: Any) -> LimitDefaults:
    data = _section(data, 'limits', {'lifetime', 'period'})

    if unlimited_plans is None:
        unlimited_plans = []
    if not isinstance(unlimited_plans, list) or not all(isinstance(p, str) for p in unlimited_plans):
        raise ValueError("'unlimited_plans' must be a list of plan names")

    plans: FrozenSet[str] = frozenset(unlimited_plans)
    return LimitDefaults(
        lifetime_limit=_optional_limit(data, 'lifetime', 'limits'),
        period_limit=_optional_limit(data, 'period', 'limits'),
        unlimited_plans=plans,
    )


def _parse_rate(value: Any, key: str, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        # str() keeps 0.03 as Decimal("0.03") rather than its binary float value
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not rate.is_finite() or rate < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return rate


def _parse_pricing(data: Any) -> PricingTable:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    overrides: Dict[Provider, Dict[str, ModelPricing]] = {}
    for provider_name, models in data.items():
        try:
            provider = Provider.parse(provider_name)
        except UnknownProviderError as e:
            raise ValueError(f"Invalid pricing provider: {e}")
        if not isinstance(models, dict):
            raise ValueError(f"Pricing for provider '{provider_name}' must be a dictionary")

        parsed: Dict[str, ModelPricing] = {}
        for model, rates in models.items():
            path = f"pricing.{provider_name}.{model}"
            rates = _section(rates, path, {'input', 'output'})
            for key in ('input', 'output'):
                if key not in rates:
                    raise ValueError(f"Missing required '{key}' in {path}")
            parsed[str(model)] = ModelPricing(
                input_cost_per_1k=_parse_rate(rates['input'], 'input', path),
                output_cost_per_1k=_parse_rate(rates['output'], 'output', path),
            )
        overrides[provider] = parsed

    return DEFAULT_PRICING_TABLE.with_overrides(overrides)


def _parse_estimator(data: Any) -> EstimatorConfig:
    data = _section(data, 'estimator', {'max_output_units'})
    if 'max_output_units' not in data:
        return EstimatorConfig()
    value = _number(data, 'max_output_units', 'estimator', integer=True)
    if value <= 0:
        raise ValueError("'max_output_units' in estimator must be > 0")
    return EstimatorConfig(max_output_units=value)


def _parse_recorder(data: Any) -> RecorderConfig:
    data = _section(data, 'recorder', {'max_attempts', 'backoff_base_seconds'})
    kwargs = {}
    if 'max_attempts' in data:
        value = _number(data, 'max_attempts', 'recorder', integer=True)
        if value < 1:
            raise ValueError("'max_attempts' in recorder must be >= 1")
        kwargs['max_attempts'] = value
    if 'backoff_base_seconds' in data:
        value = _number(data, 'backoff_base_seconds', 'recorder')
        if value < 0:
            raise ValueError("'backoff_base_seconds' in recorder must be >= 0")
        kwargs['backoff_base_seconds'] = float(value)
    return RecorderConfig(**kwargs)


def _parse_idempotency(data: Any) -> IdempotencyConfig:
    data = _section(
        data, 'idempotency',
        {'backend', 'ttl_seconds', 'sweep_interval_seconds', 'redis_url'},
    )
    kwargs: Dict[str, Any] = {}

    if 'backend' in data:
        backend = data['backend']
        if not isinstance(backend, str):
            raise ValueError("'backend' in idempotency must be a string")
        try:
            kwargs['backend'] = IdempotencyBackend(backend.lower())
        except ValueError:
            valid = [b.value for b in IdempotencyBackend]
            raise ValueError(f"'backend' in idempotency must be one of: {valid}")

    for key in ('ttl_seconds', 'sweep_interval_seconds'):
        if key in data:
            value = _number(data, key, 'idempotency')
            if value <= 0:
                raise ValueError(f"'{key}' in idempotency must be > 0")
            kwargs[key] = float(value)

    if data.get('redis_url') is not None:
        if not isinstance(data['redis_url'], str):
            raise ValueError("'redis_url' in idempotency must be a string")
        kwargs['redis_url'] = data['redis_url']

    return IdempotencyConfig(**kwargs)


def _parse_storage(data: Any) -> StorageConfig:
    data = _section(
        data, 'storage',
        {'db_path', 'lock_timeout_seconds', 'reservation_ttl_seconds'},
    )
    kwargs: Dict[str, Any] = {}
    if 'db_path' in data:
        if not isinstance(data['db_path'], str) or not data['db_path'].strip():
            raise ValueError("'db_path' in storage must be a non-empty string")
        kwargs['db_path'] = data['db_path']
    for key in ('lock_timeout_seconds', 'reservation_ttl_seconds'):
        if key in data:
            value = _number(data, key, 'storage')
            if value <= 0:
                raise ValueError(f"'{key}' in storage must be > 0")
            kwargs[key] = float(value)
    return StorageConfig(**kwargs)


def _parse_tenants(data: Any) -> Tuple[TenantQuota, ...]:
    if data is None:
        return ()
    if not isinstance(data, dict):
        raise ValueError("'tenants' must be a dictionary")

    tenants = []
    for tenant_id, tenant_data in data.items():
        path = f"tenants.{tenant_id}"
        if tenant_data is None:
            tenant_data = {}
        if not isinstance(tenant_data, dict):
            raise ValueError(f"Tenant '{tenant_id}' must be a dictionary")
        tenant_data = _section(
            tenant_data, path, {'active', 'lifetime_limit', 'period_limit', 'plan'}
        )

        active = tenant_data.get('active', True)
        if not isinstance(active, bool):
            raise ValueError(f"'active' in {path} must be a boolean")
        plan = tenant_data.get('plan')
        if plan is not None and not isinstance(plan, str):
            raise ValueError(f"'plan' in {path} must be a string")

        tenants.append(TenantQuota(
            tenant_id=str(tenant_id),
            active=active,
            lifetime_limit=_optional_limit(tenant_data, 'lifetime_limit', path),
            period_limit=_optional_limit(tenant_data, 'period_limit', path),
            plan=plan,
        ))
    return tuple(tenants)


@dataclass
class UsageServices:
    """The wired-up components one process shares across requests."""
    config: UsageGuardConfig
    ledger: SqliteLedger
    tenants: InMemoryTenantDirectory
    quota: QuotaGuard
    idempotency: IdempotencyGuard
    recorder: UsageRecorder


def build_services(config: UsageGuardConfig) -> UsageServices:
    """Build ledger, tenant directory, quota guard and recorder from config.

    The ledger schema is created if missing.
    """
    ledger = SqliteLedger(
        db_path=config.storage.db_path,
        lock_timeout=config.storage.lock_timeout_seconds,
        reservation_ttl=config.storage.reservation_ttl_seconds,
    )
    ledger.initialize_schema()

    tenants = InMemoryTenantDirectory(config.tenants)
    idempotency = build_idempotency_guard(config.idempotency)

    return UsageServices(
        config=config,
        ledger=ledger,
        tenants=tenants,
        quota=QuotaGuard(ledger, tenants, limits=config.limits),
        idempotency=idempotency,
        recorder=UsageRecorder(
            ledger,
            idempotency,
            pricing=config.pricing,
            max_attempts=config.recorder.max_attempts,
            backoff_base=config.recorder.backoff_base_seconds,
        ),
    )
