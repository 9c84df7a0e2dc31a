"""
Metered OpenAI client wrapper.

Authorizes each chat completion against the credit engine before calling
the provider and settles the actual usage afterwards.
"""

import time
import uuid
from typing import Any, Dict, List, Optional, Union

from openai import APITimeoutError, OpenAI

from ..config.loader import Tier
from ..core.engine import CreditEngine
from ..core.orchestrator import SettleResult
from ..core.units import UnitUsage, predict_units
from ..storage.models import UsageStatus


class MeteredOpenAI:
    """OpenAI client wrapper that charges credits per completion.

    Denied requests never reach the provider. Provider failures are
    settled without charge and re-raised unchanged.
    """

    def __init__(
        self,
        engine: CreditEngine,
        identity: str,
        tier: Union[Tier, str],
        model: str,
        provider: str = "openai"
    ):
        """Initialize metered OpenAI client.

        Args:
            engine: Credit engine to authorize and settle against
            identity: Account identity charged for calls (required)
            tier: Caller tier for rate limiting
            model: OpenAI model name, must be in the pricing catalog
            provider: Catalog provider name for the model

        Raises:
            ValueError: If identity or model is missing/empty
            UnknownModel: If the model has no active pricing
        """
        if not identity or not identity.strip():
            raise ValueError("identity is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        engine.config.catalog.lookup(provider, model)

        self.engine = engine
        self.identity = identity
        self.tier = Tier(tier)
        self.model = model
        self.provider = provider
        self.client = OpenAI()
        self.last_settlement: Optional[SettleResult] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        request_ref: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and charge for it.

        Args:
            messages: List of message dictionaries (required)
            request_ref: Idempotency reference for settlement; generated
                when omitted
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response has no usage
            RateLimitExceeded: If the identity is out of requests
            InsufficientCredits: If the projected cost is not covered
            OpenAI API errors: Propagated after a no-charge settlement
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request_ref = request_ref or f"req_{uuid.uuid4().hex}"
        predicted = predict_units(messages, max_tokens)

        decision = self.engine.authorize(self.identity, self.tier, self.provider, self.model, predicted)
        decision.raise_for_status()

        started = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception as e:
            status = UsageStatus.TIMEOUT if isinstance(e, APITimeoutError) else UsageStatus.FAILED
            self.last_settlement = self.engine.settle(
                self.identity,
                self.provider,
                self.model,
                request_ref,
                UnitUsage(0, 0),
                status=status,
                response_time_ms=_elapsed_ms(started),
                error_message=str(e)
            )
            raise

        usage = response.usage
        if not usage:
            self.last_settlement = self.engine.settle(
                self.identity,
                self.provider,
                self.model,
                request_ref,
                UnitUsage(0, 0),
                status=UsageStatus.FAILED,
                response_time_ms=_elapsed_ms(started),
                error_message="response missing usage information"
            )
            raise ValueError("OpenAI response missing usage information")

        self.last_settlement = self.engine.settle(
            self.identity,
            self.provider,
            self.model,
            request_ref,
            UnitUsage(prompt_units=usage.prompt_tokens, completion_units=usage.completion_tokens),
            response_time_ms=_elapsed_ms(started)
        )

        # Return original OpenAI response unchanged
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
