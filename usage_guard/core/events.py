"""
Structured usage events.

Every quota decision, recording retry, duplicate suppression and final
recording failure is reported as a UsageEvent. Sinks are plain callables
so callers can forward events to metrics or alerting; the default sink
writes them through the standard logging module.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

event_logger = logging.getLogger("usage_guard.events")

_LEVELS = {
    "failed": logging.ERROR,
    "retry": logging.WARNING,
    "denied": logging.WARNING,
    "cache_error": logging.WARNING,
}


@dataclass(frozen=True)
class UsageEvent:
    """A single observable step of the accounting core."""
    name: str
    tenant_id: Optional[str]
    operation: str
    outcome: str
    attempt: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_fields(self) -> Dict[str, Any]:
        fields = {
            "event": self.name,
            "tenant_id": self.tenant_id,
            "operation": self.operation,
            "outcome": self.outcome,
            "attempt": self.attempt,
        }
        fields.update(self.details)
        return fields


EventSink = Callable[[UsageEvent], None]


def log_event_sink(event: UsageEvent) -> None:
    """Default sink: one log line per event, fields attached via ``extra``."""
    level = _LEVELS.get(event.outcome, logging.INFO)
    event_logger.log(
        level,
        "%s tenant=%s operation=%s outcome=%s attempt=%s",
        event.name,
        event.tenant_id,
        event.operation,
        event.outcome,
        event.attempt,
        extra={"usage_event": event.as_fields()},
    )
