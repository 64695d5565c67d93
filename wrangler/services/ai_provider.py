"""
AI Completion Service

Narrow text-completion interface the pipeline consumes, backed by Claude.
Failures never raise to the caller: after retries the result text is an
"[error] ..." marker, which callers treat as "no output produced".
"""

import logging
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Optional

from anthropic import Anthropic

logger = logging.getLogger(__name__)


def _log_ai(msg: str):
    """Log AI progress with immediate flush."""
    full_msg = f"AI: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


# Configuration
# NOTE: Model name is an Anthropic API identifier, not a date.
MODEL = os.environ.get("CLAUDE_SUMMARY_MODEL", "claude-haiku-4-5")
PROVIDER = "anthropic"
MAX_RETRIES = 2
RETRY_BASE_DELAY = 2.0

ERROR_PREFIX = "[error]"


@dataclass
class CompletionRequest:
    messages: list[dict] = field(default_factory=list)  # {"role": ..., "content": ...}
    max_tokens: int = 150
    temperature: float = 0.3


@dataclass
class CompletionResult:
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: str
    duration_ms: int

    @property
    def produced_output(self) -> bool:
        """False for empty or error-marker responses."""
        stripped = self.text.strip()
        return bool(stripped) and not stripped.startswith("[")


def get_anthropic_client() -> Anthropic:
    """Get Anthropic client with API key from environment."""
    api_key = os.environ.get('ANTHROPIC_API_KEY')
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY environment variable not set")
    return Anthropic(api_key=api_key)


class AnthropicCompletionService:
    """Completion adapter over the Anthropic Messages API."""

    provider = PROVIDER

    def __init__(self, client: Optional[Anthropic] = None, model: str = MODEL):
        self.client = client or get_anthropic_client()
        self.model = model

    def complete(self, request: CompletionRequest) -> CompletionResult:
        # Anthropic takes the system prompt separately from the turns
        system_parts = [m["content"] for m in request.messages if m.get("role") == "system"]
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in request.messages
            if m.get("role") in ("user", "assistant")
        ]

        kwargs = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": turns,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        start_time = time.time()
        last_error = None
        for attempt in range(MAX_RETRIES):
            try:
                response = self.client.messages.create(**kwargs)
                text = "".join(
                    getattr(block, "text", "") for block in response.content
                ).strip()
                duration_ms = int((time.time() - start_time) * 1000)
                _log_ai(
                    f"Completion in {duration_ms}ms, "
                    f"{response.usage.input_tokens}+{response.usage.output_tokens} tokens"
                )
                return CompletionResult(
                    text=text,
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    model=self.model,
                    provider=self.provider,
                    duration_ms=duration_ms,
                )
            except Exception as e:
                last_error = e
                logger.error(f"Claude API error (attempt {attempt + 1}/{MAX_RETRIES}): {e}")
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_BASE_DELAY * (2 ** attempt))

        return CompletionResult(
            text=f"{ERROR_PREFIX} {last_error}",
            input_tokens=0,
            output_tokens=0,
            model=self.model,
            provider=self.provider,
            duration_ms=int((time.time() - start_time) * 1000),
        )
