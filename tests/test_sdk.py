"""
Unit tests for SDK layer.

Tests the metered OpenAI wrapper: quota gating, recording and release.
"""

import os
import tempfile
from unittest.mock import Mock, patch

import pytest

from usage_guard.config.loader import StorageConfig, UsageGuardConfig, build_services
from usage_guard.errors import QuotaExceeded, TenantInactive
from usage_guard.sdk.openai_client import MeteredOpenAI
from usage_guard.storage.ledger import period_start_for, utc_now
from usage_guard.storage.models import UsageScope
from usage_guard.storage.tenants import TenantQuota


def make_response(prompt_tokens=100, completion_tokens=50, response_id="chat_123"):
    response = Mock()
    response.id = response_id
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.usage.total_tokens = prompt_tokens + completion_tokens
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        config = UsageGuardConfig(
            storage=StorageConfig(db_path=os.path.join(self.temp_dir, "test.db")),
            tenants=(
                TenantQuota("acme", lifetime_limit=10000),
                TenantQuota("dormant", active=False),
            ),
        )
        self.services = build_services(config)
        self.client = Mock()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _held_units(self, tenant_id="acme"):
        with self.services.ledger.tenant_transaction(tenant_id) as txn:
            return txn.aggregate(period_start_for(utc_now())).lifetime_total

    @patch('usage_guard.sdk.openai_client.OpenAI')
    def test_init_default_client(self, mock_openai_class):
        """Test initialization creates an OpenAI client when none is given."""
        mock_openai_class.return_value = Mock()

        metered = MeteredOpenAI("acme", "gpt-4", self.services)

        assert metered.tenant_id == "acme"
        assert metered.model == "gpt-4"
        assert metered.request_kind == "chat"
        assert metered.client is mock_openai_class.return_value

    def test_init_missing_tenant(self):
        """Test initialization fails with missing tenant."""
        with pytest.raises(ValueError, match="tenant_id is required"):
            MeteredOpenAI("", "gpt-4", self.services, client=self.client)

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI("acme", " ", self.services, client=self.client)

    def test_chat_records_usage(self):
        """Test successful chat call records actual usage."""
        response = make_response()
        self.client.chat.completions.create.return_value = response
        scope = UsageScope(conversation_id="c1")
        metered = MeteredOpenAI("acme", "gpt-4", self.services, scope=scope, client=self.client)

        messages = [{"role": "user", "content": "Hello"}]
        result = metered.chat(messages=messages)

        self.client.chat.completions.create.assert_called_once_with(
            model="gpt-4",
            messages=messages,
            temperature=None,
            max_tokens=None
        )
        assert result is response

        records = self.services.ledger.fetch_records(tenant_id="acme")
        assert len(records) == 1
        record = records[0]
        assert record.provider == "openai"
        assert record.model == "gpt-4"
        assert record.input_units == 100
        assert record.output_units == 50
        assert record.request_kind == "chat"
        assert record.scope == scope
        assert record.idempotency_key == "chat_123"
        assert metered.last_record.recorded

        # The reservation was replaced by the actual usage
        assert self._held_units() == 150

    def test_chat_denied_before_upstream_call(self):
        """Test quota denial prevents the OpenAI call."""
        self.services.recorder.record("acme", "openai", "gpt-4", 9990, 0)
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        with pytest.raises(QuotaExceeded):
            metered.chat(messages=[{"role": "user", "content": "Hello"}])
        self.client.chat.completions.create.assert_not_called()

    def test_chat_inactive_tenant(self):
        """Test inactive tenants never reach the upstream API."""
        metered = MeteredOpenAI("dormant", "gpt-4", self.services, client=self.client)

        with pytest.raises(TenantInactive):
            metered.chat(messages=[{"role": "user", "content": "Hello"}])
        self.client.chat.completions.create.assert_not_called()

    def test_chat_upstream_failure_releases_reservation(self):
        """Test OpenAI errors propagate and free the reserved units."""
        self.client.chat.completions.create.side_effect = RuntimeError("upstream down")
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        with pytest.raises(RuntimeError, match="upstream down"):
            metered.chat(messages=[{"role": "user", "content": "Hello"}])

        assert self._held_units() == 0
        assert self.services.ledger.fetch_records(tenant_id="acme") == []

    def test_chat_missing_usage(self):
        """Test a response without usage raises and releases the reservation."""
        response = make_response()
        response.usage = None
        self.client.chat.completions.create.return_value = response
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        with pytest.raises(ValueError, match="missing usage"):
            metered.chat(messages=[{"role": "user", "content": "Hello"}])
        assert self._held_units() == 0

    def test_chat_empty_messages(self):
        """Test chat fails with empty messages."""
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)
        with pytest.raises(ValueError, match="messages is required"):
            metered.chat(messages=[])

    def test_chat_recording_failure_returns_response(self):
        """Test a failed ledger write never hides a successful response."""
        response = make_response()
        self.client.chat.completions.create.return_value = response
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        failed = Mock(success=False, recorded=False, reason="database is locked")
        with patch.object(self.services.recorder, "record", return_value=failed):
            result = metered.chat(messages=[{"role": "user", "content": "Hello"}])

        assert result is response
        assert metered.last_record is failed

    def test_chat_duplicate_response_releases_reservation(self):
        """Test a response id seen before is not recorded twice."""
        self.client.chat.completions.create.return_value = make_response()
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        metered.chat(messages=[{"role": "user", "content": "Hello"}])
        metered.chat(messages=[{"role": "user", "content": "Hello"}])

        assert metered.last_record.duplicate
        assert len(self.services.ledger.fetch_records(tenant_id="acme")) == 1
        assert self._held_units() == 150

    def test_max_tokens_caps_estimate(self):
        """Test max_tokens is passed upstream."""
        self.client.chat.completions.create.return_value = make_response()
        metered = MeteredOpenAI("acme", "gpt-4", self.services, client=self.client)

        metered.chat(messages=[{"role": "user", "content": "Hello"}], max_tokens=64, temperature=0.2)

        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 64
        assert kwargs["temperature"] == 0.2
