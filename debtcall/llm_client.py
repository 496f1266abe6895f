from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol

from .clock import Clock
from .config import EngineConfig


class LLMClient(Protocol):
    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


@dataclass
class FakeLLMClient:
    """Replays canned token streams, one list per call, cycling on the last."""

    clock: Clock
    responses: list[list[str]]
    token_delay_ms: int = 0
    prompts: list[str] = field(default_factory=list)

    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        idx = min(len(self.prompts) - 1, len(self.responses) - 1)
        for tok in self.responses[idx] if idx >= 0 else []:
            if self.token_delay_ms > 0:
                await self.clock.sleep_ms(self.token_delay_ms)
            yield tok

    async def aclose(self) -> None:
        return


# Sent as system instructions on every request; case facts travel in the per-turn prompt.
COLLECTOR_INSTRUCTIONS = (
    "You are a courteous, compliant debt collection agent on a recorded phone call. "
    "Reply with one or two short spoken sentences. Never threaten, never guess at facts "
    "that are not in the prompt, and never use placeholder text."
)


class OpenAILLMClient:
    """
    OpenAI Responses streaming adapter for agent utterances.

    Lazy-imports the `openai` package so the engine and its tests run without
    credentials or the dependency installed. Output tokens are capped
    below what the validator's length limit allows.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_ms: int = 8000,
        instructions: str = COLLECTOR_INSTRUCTIONS,
        max_output_tokens: int = 120,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self.instructions = instructions
        self.max_output_tokens = max(16, int(max_output_tokens))
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAILLMClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def _delta(event: Any) -> str:
        et = str(getattr(event, "type", "") or "")
        if et in {"response.output_text.delta", "output_text.delta"}:
            d = getattr(event, "delta", None)
            return str(d) if d else ""
        if isinstance(event, dict) and isinstance(event.get("delta"), str):
            return str(event["delta"])
        return ""

    async def stream_text(self, *, prompt: str) -> AsyncIterator[str]:
        client = self._ensure_client()
        stream = await client.responses.create(
            model=self.model,
            instructions=self.instructions,
            input=prompt,
            max_output_tokens=self.max_output_tokens,
            stream=True,
            timeout=max(1.0, self.timeout_ms / 1000.0),
        )
        async for event in stream:
            delta = self._delta(event)
            if delta:
                yield delta

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None


def build_llm_client(cfg: EngineConfig) -> LLMClient | None:
    if cfg.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=cfg.openai_api_key or None,
            model=cfg.openai_model,
            timeout_ms=cfg.openai_timeout_ms,
        )
    return None
