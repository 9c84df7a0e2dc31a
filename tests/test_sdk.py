"""
Unit tests for SDK layer.

Tests the metered OpenAI wrapper: authorization before the call,
settlement after it, and no-charge settlement of provider failures.
"""

from decimal import Decimal
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from credit_ledger.config.loader import CreditEngineConfig, Tier
from credit_ledger.core.engine import CreditEngine
from credit_ledger.core.errors import InsufficientCredits, RateLimitExceeded, UnknownModel
from credit_ledger.core.orchestrator import ConsumptionState
from credit_ledger.sdk.openai_client import MeteredOpenAI
from credit_ledger.storage.ledger import MemoryLedgerStore
from credit_ledger.storage.models import UsageStatus


def _response(prompt_tokens: int = 1000, completion_tokens: int = 500) -> Mock:
    response = Mock()
    response.id = "chatcmpl_123"
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.usage.total_tokens = prompt_tokens + completion_tokens
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    def setup_method(self):
        """Set up an engine with no free allowance so every call hits the balance."""
        self.store = MemoryLedgerStore()
        self.engine = CreditEngine(self.store, CreditEngineConfig(daily_free_limit=0))
        self.engine.grant("alice", 10)

    def _client(self, mock_openai_class, response=None, **kwargs) -> MeteredOpenAI:
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = response or _response()
        mock_openai_class.return_value = mock_client
        return MeteredOpenAI(self.engine, "alice", Tier.PAID, "gpt-3.5-turbo", **kwargs)

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        client = self._client(mock_openai_class)

        assert client.identity == "alice"
        assert client.tier == Tier.PAID
        assert client.model == "gpt-3.5-turbo"
        assert client.provider == "openai"
        assert client.client is not None
        assert client.last_settlement is None

    def test_init_missing_identity(self):
        with pytest.raises(ValueError, match="identity is required"):
            MeteredOpenAI(self.engine, "", Tier.PAID, "gpt-3.5-turbo")

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(self.engine, "alice", Tier.PAID, "")
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(self.engine, "alice", Tier.PAID, None)

    def test_init_unknown_model(self):
        with pytest.raises(UnknownModel):
            MeteredOpenAI(self.engine, "alice", Tier.PAID, "gpt-5-ultra")

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_chat_success_charges_credits(self, mock_openai_class):
        """Test successful chat call settles actual usage."""
        response = _response(prompt_tokens=1000, completion_tokens=500)
        client = self._client(mock_openai_class, response)

        messages = [{"role": "user", "content": "Hello"}]
        result = client.chat(messages=messages, request_ref="req_1")

        client.client.chat.completions.create.assert_called_once_with(
            model="gpt-3.5-turbo",
            messages=messages,
            temperature=None,
            max_tokens=None
        )
        assert result == response

        # gpt-3.5-turbo: (1000 * 1/4 + 500 * 3/4) / 1000 * 0.05 = 0.03125 -> 0.04
        settlement = client.last_settlement
        assert settlement.state == ConsumptionState.SETTLED
        assert settlement.credits_charged == Decimal("0.04")
        assert settlement.new_balance == Decimal("9.96")

        usage = self.store.get_usage("req_1")
        assert usage.prompt_units == 1000
        assert usage.completion_units == 500
        assert usage.response_time_ms is not None

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_generated_request_refs_are_unique(self, mock_openai_class):
        client = self._client(mock_openai_class)
        messages = [{"role": "user", "content": "Hello"}]

        for _ in range(3):
            client.chat(messages=messages)

        usage = self.store.list_usage(identity="alice")
        assert len(usage) == 3
        assert len({u.request_ref for u in usage}) == 3

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_retried_request_ref_charged_once(self, mock_openai_class):
        client = self._client(mock_openai_class)
        messages = [{"role": "user", "content": "Hello"}]

        client.chat(messages=messages, request_ref="req_1")
        client.chat(messages=messages, request_ref="req_1")

        assert client.last_settlement.duplicate
        assert self.engine.get_balance("alice").balance == Decimal("9.96")

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_insufficient_credits_skip_provider(self, mock_openai_class):
        """Denied requests never reach OpenAI."""
        client = self._client(mock_openai_class)
        client.identity = "bob"

        with pytest.raises(InsufficientCredits):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        client.client.chat.completions.create.assert_not_called()
        assert self.store.list_usage(identity="bob") == []

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_rate_limit_skips_provider(self, mock_openai_class):
        client = self._client(mock_openai_class)
        client.tier = Tier.ANONYMOUS
        for _ in range(5):
            self.engine.rate_limiter.record("alice")

        with pytest.raises(RateLimitExceeded):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        client.client.chat.completions.create.assert_not_called()

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_openai_failure_settles_without_charge(self, mock_openai_class):
        """Test OpenAI API failure is recorded and re-raised."""
        client = self._client(mock_openai_class)
        client.client.chat.completions.create.side_effect = Exception("API Error")

        with pytest.raises(Exception, match="API Error"):
            client.chat(messages=[{"role": "user", "content": "Hello"}], request_ref="req_1")

        assert client.last_settlement.state == ConsumptionState.FAILED_UPSTREAM
        usage = self.store.get_usage("req_1")
        assert usage.status == UsageStatus.FAILED
        assert usage.error_message == "API Error"
        assert self.engine.get_balance("alice").balance == Decimal("10")

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_openai_timeout_recorded_as_timeout(self, mock_openai_class):
        client = self._client(mock_openai_class)
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.client.chat.completions.create.side_effect = openai.APITimeoutError(request=request)

        with pytest.raises(openai.APITimeoutError):
            client.chat(messages=[{"role": "user", "content": "Hello"}], request_ref="req_1")

        assert self.store.get_usage("req_1").status == UsageStatus.TIMEOUT

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_missing_usage_raises_error(self, mock_openai_class):
        """Test response without usage information raises error."""
        response = Mock()
        response.usage = None
        client = self._client(mock_openai_class, response)

        with pytest.raises(ValueError, match="usage information"):
            client.chat(messages=[{"role": "user", "content": "Hello"}], request_ref="req_1")

        assert self.store.get_usage("req_1").status == UsageStatus.FAILED
        assert self.engine.get_balance("alice").balance == Decimal("10")

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_empty_messages_raises_error(self, mock_openai_class):
        """Test empty messages raises error."""
        client = self._client(mock_openai_class)

        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=[])
        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=None)

    @patch('credit_ledger.sdk.openai_client.OpenAI')
    def test_chat_with_additional_kwargs(self, mock_openai_class):
        """Test chat call passes through additional kwargs."""
        client = self._client(mock_openai_class)
        messages = [{"role": "user", "content": "Hello"}]

        client.chat(messages=messages, temperature=0.5, max_tokens=200, stop=["\n"])

        client.client.chat.completions.create.assert_called_once_with(
            model="gpt-3.5-turbo",
            messages=messages,
            temperature=0.5,
            max_tokens=200,
            stop=["\n"]
        )
