"""
Metered OpenAI client wrapper.

Checks the tenant's quota before each chat completion and records the
measured usage afterwards, without modifying the response.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config.loader import UsageServices
from ..core.estimator import estimate_request
from ..core.pricing import Provider
from ..core.recorder import RecordResult
from ..storage.models import UsageScope

logger = logging.getLogger(__name__)


class MeteredOpenAI:
    """OpenAI client wrapper that enforces and records tenant usage.

    Quota denials raise before any upstream call is made. Upstream
    failures release the reservation and propagate unchanged. Recording
    failures are logged and never hide a successful response.
    """

    def __init__(
        self,
        tenant_id: str,
        model: str,
        services: UsageServices,
        request_kind: str = "chat",
        scope: Optional[UsageScope] = None,
        client: Optional[OpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            tenant_id: Tenant charged for every call (required)
            model: OpenAI model name (required)
            services: Wired quota guard and recorder
            request_kind: Attribution label stored with each record
            scope: Project/agent/conversation attribution
            client: Preconfigured OpenAI client; a default one is created if omitted

        Raises:
            ValueError: If tenant_id or model is missing/empty
        """
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenant_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.tenant_id = tenant_id
        self.model = model
        self.services = services
        self.request_kind = request_kind
        self.scope = scope or UsageScope()
        self.client = client or OpenAI()
        self.last_record: Optional[RecordResult] = None

    def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ):
        """Create a chat completion under the tenant's quota.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional); also caps
                the predicted output used for the quota check
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response has no usage
            QuotaCheckError: If the tenant may not make this request
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        estimate = estimate_request(
            messages,
            max_output_units=max_tokens or self.services.config.estimator.max_output_units,
        )
        admitted = self.services.quota.check_and_reserve(self.tenant_id, estimate.total)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception:
            self.services.quota.release(admitted.reservation_id)
            raise

        usage = response.usage
        if not usage:
            self.services.quota.release(admitted.reservation_id)
            raise ValueError("OpenAI response missing usage information")

        self.last_record = self.services.recorder.record(
            tenant_id=self.tenant_id,
            provider=Provider.OPENAI,
            model=self.model,
            input_units=usage.prompt_tokens,
            output_units=usage.completion_tokens,
            request_kind=self.request_kind,
            scope=self.scope,
            idempotency_key=getattr(response, "id", None) or None,
            reservation_id=admitted.reservation_id,
        )
        if not self.last_record.success:
            logger.warning(
                "Usage for tenant %s was not recorded: %s",
                self.tenant_id, self.last_record.reason,
            )
        elif not self.last_record.recorded:
            # Skipped or duplicate: nothing settled the reservation
            self.services.quota.release(admitted.reservation_id)

        return response
