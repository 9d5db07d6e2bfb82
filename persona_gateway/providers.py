from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from .config import get_settings


@dataclass
class CompletionResult:
    """Normalized result of a batch completion."""

    text: str
    input_tokens: int
    output_tokens: int


@dataclass
class Usage:
    """Final usage report that terminates a streamed completion."""

    input_tokens: int
    output_tokens: int


HistoryItem = Dict[str, str]  # {"role": "user" | "assistant", "content": str}
StreamItem = Union[str, Usage]


class BaseProvider:
    """
    Abstract completion provider.

    `complete` returns the whole answer. `complete_streaming` is an async
    iterator of text fragments, in generation order, followed by exactly one
    Usage item.
    """

    name = "base"

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[HistoryItem],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def complete_streaming(
        self,
        system_prompt: str,
        history: Sequence[HistoryItem],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamItem]:  # pragma: no cover - interface only
        raise NotImplementedError


def _count_tokens(text: str) -> int:
    return len(text.split())


class StubProvider(BaseProvider):
    """
    Deterministic offline provider.

    Replies by echoing the latest user message; token counts are whitespace
    word counts. Used when no API key is configured and throughout the tests.
    """

    name = "stub"

    def _reply(self, history: Sequence[HistoryItem], model: str) -> str:
        last_user = next((h["content"] for h in reversed(history) if h.get("role") == "user"), "")
        return f"[{model}] Received: {last_user}"

    async def complete(self, system_prompt, history, *, model, temperature, max_tokens) -> CompletionResult:
        text = self._reply(history, model)
        prompt_tokens = _count_tokens(system_prompt) + sum(_count_tokens(h.get("content", "")) for h in history)
        return CompletionResult(text=text, input_tokens=prompt_tokens, output_tokens=_count_tokens(text))

    async def complete_streaming(self, system_prompt, history, *, model, temperature, max_tokens):
        result = await self.complete(
            system_prompt, history, model=model, temperature=temperature, max_tokens=max_tokens
        )
        words = result.text.split(" ")
        for i, word in enumerate(words):
            yield word if i == 0 else " " + word
        yield Usage(input_tokens=result.input_tokens, output_tokens=result.output_tokens)


async def _sse_payloads(response: Any) -> AsyncIterator[str]:
    """Yield the `data:` payloads of a server-sent-events response."""
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            yield line[len("data:"):].strip()


ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API over httpx."""

    name = "anthropic"

    def __init__(self, api_key: str, timeout: Optional[float] = 120.0, transport: Any = None) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _body(self, system_prompt, history, model, temperature, max_tokens, stream=False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [{"role": h["role"], "content": h["content"]} for h in history],
        }
        if stream:
            body["stream"] = True
        return body

    async def complete(self, system_prompt, history, *, model, temperature, max_tokens) -> CompletionResult:  # pragma: no cover - network
        import httpx

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                ANTHROPIC_API_URL,
                headers=self._headers(),
                json=self._body(system_prompt, history, model, temperature, max_tokens),
            )
            resp.raise_for_status()
            data = resp.json()

        blocks = data.get("content") or []
        text = blocks[0].get("text", "") if blocks and blocks[0].get("type") == "text" else ""
        usage = data.get("usage") or {}
        return CompletionResult(
            text=text,
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
        )

    async def complete_streaming(self, system_prompt, history, *, model, temperature, max_tokens):
        import httpx

        input_tokens = 0
        output_tokens = 0
        completed = False
        body = self._body(system_prompt, history, model, temperature, max_tokens, stream=True)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            async with client.stream("POST", ANTHROPIC_API_URL, headers=self._headers(), json=body) as resp:
                resp.raise_for_status()
                async for payload in _sse_payloads(resp):
                    event = json.loads(payload)
                    kind = event.get("type")
                    if kind == "message_start":
                        usage = event.get("message", {}).get("usage", {})
                        input_tokens = int(usage.get("input_tokens", 0))
                        output_tokens = int(usage.get("output_tokens", 0))
                    elif kind == "content_block_delta":
                        delta = event.get("delta", {})
                        if delta.get("type") == "text_delta":
                            yield delta.get("text", "")
                    elif kind == "message_delta":
                        output_tokens = int(event.get("usage", {}).get("output_tokens", output_tokens))
                    elif kind == "error":
                        raise RuntimeError(event.get("error", {}).get("message", "stream error"))
                    elif kind == "message_stop":
                        completed = True
                        break
        if not completed:
            raise RuntimeError("stream ended before message_stop")
        yield Usage(input_tokens=input_tokens, output_tokens=output_tokens)


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterProvider(BaseProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).

    When `model` is set it overrides the persona's model identifier, since
    OpenRouter uses vendor-prefixed names.
    """

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout: Optional[float] = 120.0,
        transport: Any = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, system_prompt, history, model, temperature, max_tokens, stream=False) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": h["role"], "content": h["content"]} for h in history)
        body: Dict[str, Any] = {
            "model": self.model or model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    async def complete(self, system_prompt, history, *, model, temperature, max_tokens) -> CompletionResult:  # pragma: no cover - network
        import httpx

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                OPENROUTER_API_URL,
                headers=self._headers(),
                json=self._body(system_prompt, history, model, temperature, max_tokens),
            )
            resp.raise_for_status()
            data = resp.json()

        text = data["choices"][0]["message"].get("content") or ""
        usage = data.get("usage") or {}
        return CompletionResult(
            text=text,
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
        )

    async def complete_streaming(self, system_prompt, history, *, model, temperature, max_tokens):
        import httpx

        usage: Dict[str, Any] = {}
        completed = False
        body = self._body(system_prompt, history, model, temperature, max_tokens, stream=True)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            async with client.stream("POST", OPENROUTER_API_URL, headers=self._headers(), json=body) as resp:
                resp.raise_for_status()
                async for payload in _sse_payloads(resp):
                    if payload == "[DONE]":
                        completed = True
                        break
                    chunk = json.loads(payload)
                    if chunk.get("error"):
                        raise RuntimeError(chunk["error"].get("message", "stream error"))
                    if chunk.get("usage"):
                        usage = chunk["usage"]
                    for choice in chunk.get("choices") or []:
                        text = (choice.get("delta") or {}).get("content")
                        if text:
                            yield text
        if not completed:
            raise RuntimeError("stream ended before [DONE]")
        yield Usage(
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
        )


def build_provider() -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    # <= 0 disables the deadline, matching the engine's turn timeout.
    timeout = settings.provider_timeout_seconds if settings.provider_timeout_seconds > 0 else None
    if settings.provider_name == "anthropic":
        if not settings.anthropic_api_key:
            return StubProvider()
        return AnthropicProvider(api_key=settings.anthropic_api_key, timeout=timeout)
    if settings.provider_name == "openrouter":
        if not settings.openrouter_api_key:
            return StubProvider()
        return OpenRouterProvider(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            timeout=timeout,
        )

    return StubProvider()
