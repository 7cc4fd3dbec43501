"""
Duplicate suppression for usage recording.

Keeps a short-lived set of request fingerprints that have already been
recorded. Only the existence of a key is checked, never a payload.

The in-memory guard is process-local: with several worker processes,
use the Redis guard so every process sees the same key set.
"""

import hashlib
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from usage_guard.storage.models import UsageScope

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
KEY_LENGTH = 32


class IdempotencyGuard(Protocol):
    """Set of recently recorded request fingerprints."""

    def is_known(self, key: str) -> bool:
        ...

    def mark_known(self, key: str) -> None:
        ...


def generate_idempotency_key(
    tenant_id: str,
    provider: str,
    model: str,
    input_units: int,
    output_units: int,
    scope: Optional[UsageScope] = None,
) -> str:
    """Fingerprint a recording request.

    Includes a nanosecond timestamp and a random nonce, so two genuinely
    distinct requests with identical parameters never collide. Client
    retries of one logical operation must pass an explicit key instead.
    """
    scope = scope or UsageScope()
    material = "|".join([
        tenant_id or "",
        scope.project_id or "",
        scope.agent_id or "",
        scope.conversation_id or "",
        str(provider),
        model or "",
        str(input_units),
        str(output_units),
        str(time.time_ns()),
        secrets.token_hex(8),
    ])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:KEY_LENGTH]


class InMemoryIdempotencyGuard:
    """Thread-safe TTL set held in process memory.

    Expired keys are removed by sweep(), which runs at most once per sweep
    interval during normal access, or continuously from a background
    thread after start().
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be > 0")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, float] = {}
        self._last_sweep = clock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_known(self, key: str) -> bool:
        now = self._clock()
        self._maybe_sweep(now)
        with self._lock:
            recorded_at = self._entries.get(key)
        return recorded_at is not None and now - recorded_at < self.ttl_seconds

    def mark_known(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = now
        self._maybe_sweep(now)

    def sweep(self) -> int:
        """Drop expired keys. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, at in self._entries.items() if now - at >= self.ttl_seconds]
            for key in expired:
                del self._entries[key]
            self._last_sweep = now
        if expired:
            logger.debug("Swept %d expired idempotency keys", len(expired))
        return len(expired)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep()

    def start(self) -> None:
        """Run sweep() every sweep interval on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="idempotency-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=max(1.0, self.sweep_interval))
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            self.sweep()


class RedisIdempotencyGuard:
    """Idempotency keys in a shared Redis instance, expired by Redis TTL."""

    def __init__(self, client, ttl_seconds: float = DEFAULT_TTL_SECONDS, prefix: str = "usage_guard:idem:"):
        """Initialize the guard.

        Args:
            client: A ``redis.Redis`` client (or compatible)
            ttl_seconds: Key lifetime
            prefix: Namespace prepended to every key
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisIdempotencyGuard":
        import redis

        return cls(redis.Redis.from_url(url), **kwargs)

    def is_known(self, key: str) -> bool:
        return bool(self._client.exists(self.prefix + key))

    def mark_known(self, key: str) -> None:
        self._client.set(self.prefix + key, 1, ex=max(1, int(self.ttl_seconds)))


def build_idempotency_guard(config) -> IdempotencyGuard:
    """Create the guard selected by an IdempotencyConfig."""
    if config.backend.value == "redis":
        logger.info("Using Redis idempotency store at %s", config.redis_url)
        return RedisIdempotencyGuard.from_url(config.redis_url, ttl_seconds=config.ttl_seconds)
    return InMemoryIdempotencyGuard(
        ttl_seconds=config.ttl_seconds,
        sweep_interval=config.sweep_interval_seconds,
    )
