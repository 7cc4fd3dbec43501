"""
Tests for structured usage events.
"""
import logging

from usage_guard.core.events import UsageEvent, log_event_sink


class TestUsageEvents:
    """Test event fields and the logging sink."""

    def test_as_fields_merges_details(self):
        """Test details are flattened into the event fields."""
        event = UsageEvent("usage_record", "t1", "record", "retry", attempt=2,
                           details={"wait_seconds": 0.4})
        fields = event.as_fields()
        assert fields["tenant_id"] == "t1"
        assert fields["attempt"] == 2
        assert fields["wait_seconds"] == 0.4

    def test_log_sink_levels(self, caplog):
        """Test failures log at ERROR and retries at WARNING."""
        with caplog.at_level(logging.DEBUG, logger="usage_guard.events"):
            log_event_sink(UsageEvent("usage_record", "t1", "record", "failed"))
            log_event_sink(UsageEvent("usage_record", "t1", "record", "retry", attempt=1))
            log_event_sink(UsageEvent("quota_check", "t1", "check_and_reserve", "admitted"))

        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.ERROR, logging.WARNING, logging.INFO]
        assert caplog.records[0].usage_event["outcome"] == "failed"
