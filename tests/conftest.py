from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from persona_gateway.engine import ConversationEngine
from persona_gateway.providers import BaseProvider, CompletionResult, Usage
from persona_gateway.registry import AssistantRegistry


class ScriptedProvider(BaseProvider):
    """
    Test double returning canned replies in order (the last one repeats).

    Records every call so tests can assert on the prompt, window and sampling
    parameters. `fail` raises on every call; `fail_after_chunks` makes the
    stream raise after emitting that many fragments.
    """

    name = "scripted"

    def __init__(
        self,
        replies: Optional[List[str]] = None,
        *,
        fail: Optional[Exception] = None,
        fail_after_chunks: Optional[int] = None,
        omit_usage: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.replies = replies or ["Here is my answer."]
        self.fail = fail
        self.fail_after_chunks = fail_after_chunks
        self.omit_usage = omit_usage
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    def _record(self, system_prompt, history, model, temperature, max_tokens) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": [dict(h) for h in history],
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        return self.replies[min(len(self.calls) - 1, len(self.replies) - 1)]

    async def complete(self, system_prompt, history, *, model, temperature, max_tokens) -> CompletionResult:
        text = self._record(system_prompt, history, model, temperature, max_tokens)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return CompletionResult(text=text, input_tokens=10, output_tokens=5)

    async def complete_streaming(self, system_prompt, history, *, model, temperature, max_tokens):
        text = self._record(system_prompt, history, model, temperature, max_tokens)
        if self.fail is not None:
            raise self.fail
        words = text.split(" ")
        for i, word in enumerate(words):
            if self.fail_after_chunks is not None and i == self.fail_after_chunks:
                raise RuntimeError("stream dropped")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word if i == 0 else " " + word
        if not self.omit_usage:
            yield Usage(input_tokens=10, output_tokens=5)


@pytest.fixture
def registry() -> AssistantRegistry:
    return AssistantRegistry.from_directory()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def engine(registry: AssistantRegistry, provider: ScriptedProvider) -> ConversationEngine:
    return ConversationEngine(registry, provider, provider_timeout=5)
