"""LLM backend used by the model-backed collaborator.

The backend owns provider concerns only:
- Client creation and timeout configuration
- Max_tokens adjustment to fit the standard context window
- Response text extraction and token counting

Prompting, JSON handling and file application live in llm.py.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

STANDARD_CONTEXT_LIMIT = 200_000
MIN_OUTPUT_TOKENS = 8_000


@dataclass
class LLMCallResult:
    """Normalized response from an LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        timeout: Optional[float] = None,
        label: str = "",
    ) -> LLMCallResult: ...


class AnthropicBackend:
    """Anthropic Claude backend (synchronous calls)."""

    def __init__(self, model_id: str = "claude-sonnet-4-6"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        timeout: Optional[float] = None,
        label: str = "",
    ) -> LLMCallResult:
        """Execute a synchronous (non-streaming) Anthropic call.

        The read timeout is the collaborator timeout, so a stalled call fails
        the phase instead of hanging the run.
        """
        import httpx
        from anthropic import Anthropic

        client = Anthropic(
            timeout=httpx.Timeout(
                connect=60.0,
                read=timeout or 1200.0,
                write=120.0,
                pool=60.0,
            ),
            max_retries=0,
        )
        start_time = time.time()

        estimated_input_tokens = (len(system_prompt) + len(user_message)) // 4
        headroom = STANDARD_CONTEXT_LIMIT - estimated_input_tokens - 2_000
        if MIN_OUTPUT_TOKENS <= headroom < max_tokens:
            logger.info(
                f"[{label}] Reducing max_tokens {max_tokens} -> {headroom} "
                f"to fit context (~{estimated_input_tokens:,} input tokens)"
            )
            max_tokens = headroom

        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
        }

        logger.info(
            f"[{label}] Anthropic sync: ~{estimated_input_tokens:,} input tokens, "
            f"max_tokens={max_tokens}"
        )
        response = client.messages.create(**kwargs)
        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                raw_text += block.text

        if not raw_text.strip():
            raise RuntimeError(f"[{label}] Empty response from {self._model_id}")

        logger.info(
            f"[{label}] Sync completed: {response.usage.input_tokens}+"
            f"{response.usage.output_tokens} tokens, {duration_ms}ms, "
            f"{len(raw_text):,} chars"
        )

        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=duration_ms,
        )
