"""
Unit tests for the Anthropic completion adapter and cost estimates.
"""

from unittest.mock import MagicMock, patch

import pytest

from wrangler.services.ai_provider import (
    AnthropicCompletionService, CompletionRequest, CompletionResult, ERROR_PREFIX,
    get_anthropic_client,
)
from wrangler.services.ai_usage import estimate_cost_usd, month_start


def _mock_response(text="A short summary.", input_tokens=40, output_tokens=12):
    response = MagicMock()
    block = MagicMock()
    block.text = text
    response.content = [block]
    response.usage.input_tokens = input_tokens
    response.usage.output_tokens = output_tokens
    return response


def _result(text):
    return CompletionResult(text=text, input_tokens=0, output_tokens=0,
                            model="m", provider="p", duration_ms=0)


class TestCompletionResult:

    def test_produced_output(self):
        assert _result("Council approved the plan.").produced_output

    def test_empty_is_not_output(self):
        assert not _result("   ").produced_output

    def test_error_marker_is_not_output(self):
        assert not _result(f"{ERROR_PREFIX} boom").produced_output


class TestAnthropicCompletionService:

    def test_system_prompt_sent_separately(self):
        client = MagicMock()
        client.messages.create.return_value = _mock_response()
        service = AnthropicCompletionService(client=client, model="claude-haiku-4-5")

        result = service.complete(CompletionRequest(messages=[
            {'role': 'system', 'content': 'Be brief.'},
            {'role': 'user', 'content': 'Title: Park plan'},
        ]))

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs['system'] == 'Be brief.'
        assert kwargs['messages'] == [{'role': 'user', 'content': 'Title: Park plan'}]
        assert kwargs['model'] == 'claude-haiku-4-5'
        assert result.text == "A short summary."
        assert result.input_tokens == 40
        assert result.output_tokens == 12
        assert result.provider == "anthropic"

    @patch('wrangler.services.ai_provider.time.sleep')
    def test_retries_then_returns_error_marker(self, mock_sleep):
        client = MagicMock()
        client.messages.create.side_effect = RuntimeError("overloaded")
        service = AnthropicCompletionService(client=client)

        result = service.complete(CompletionRequest(messages=[{'role': 'user', 'content': 'x'}]))

        assert client.messages.create.call_count == 2
        assert result.text.startswith(ERROR_PREFIX)
        assert not result.produced_output

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv('ANTHROPIC_API_KEY', raising=False)
        with pytest.raises(ValueError):
            get_anthropic_client()


class TestCostEstimate:

    def test_known_model(self):
        assert estimate_cost_usd("claude-haiku-4-5", 1_000_000, 0) == pytest.approx(1.0)

    def test_unknown_model_uses_default(self):
        assert estimate_cost_usd("mystery-model", 0, 1_000_000) == pytest.approx(15.0)

    def test_local_models_free(self):
        assert estimate_cost_usd("llama3", 5000, 5000, provider="ollama") == 0.0
        assert estimate_cost_usd("ollama/llama3", 5000, 5000) == 0.0

    def test_month_start(self):
        from datetime import datetime, timezone
        now = datetime(2026, 10, 16, 15, 30, tzinfo=timezone.utc)
        assert month_start(now) == datetime(2026, 10, 1, tzinfo=timezone.utc)
