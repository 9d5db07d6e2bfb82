"""
Conversation engine: batch and streaming turns over persona sessions.

Turn contract:
- The user's message is committed before the provider is called, so a failed
  turn still leaves the question in the transcript.
- Only the most recent HISTORY_WINDOW messages are sent to the provider.
- An assistant message is committed only for a complete answer; provider
  errors, timeouts and abandoned streams commit nothing.
- Turns on one session are serialized by the session's lock.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .actions import ActionDispatcher, ActionExtractor, LiteralPhraseExtractor
from .errors import ActionNotFound, AssistantConfigMissing, ChatFailed, SessionInactive
from .models import (
    ActionResult,
    AssistantConfig,
    ChatMetadata,
    ChatResult,
    ConversationSession,
    Message,
    MessageMetadata,
    PendingAction,
)
from .providers import BaseProvider, Usage
from .registry import AssistantRegistry
from .storage.action_queue import PendingActionQueue
from .storage.session_store import SessionStore
from .suggestions import generate_suggestions

logger = logging.getLogger("persona-gateway")

HISTORY_WINDOW = 20
DEFAULT_CONFIDENCE = 0.9

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


def new_message_id() -> str:
    return str(uuid.uuid4())


def build_history_window(messages: Sequence[Message], limit: int = HISTORY_WINDOW) -> List[Dict[str, str]]:
    """The last `limit` messages as provider-facing {role, content} pairs, oldest first."""
    return [{"role": m.role, "content": m.content} for m in messages[-limit:]]


def build_system_prompt(config: AssistantConfig, context: Mapping[str, Any]) -> str:
    return config.behavior_prompt + "\n\nContext: " + json.dumps(context, default=str, ensure_ascii=False)


class ConversationEngine:
    def __init__(
        self,
        registry: AssistantRegistry,
        provider: BaseProvider,
        *,
        sessions: Optional[SessionStore] = None,
        pending: Optional[PendingActionQueue] = None,
        extractor: Optional[ActionExtractor] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        provider_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.provider = provider
        self.sessions = sessions or SessionStore(registry)
        self.pending = pending or PendingActionQueue()
        self.extractor = extractor or LiteralPhraseExtractor()
        self.dispatcher = dispatcher or ActionDispatcher()
        # None or <= 0 disables the deadline.
        self.provider_timeout = provider_timeout if provider_timeout and provider_timeout > 0 else None

    # Sessions ----------------------------------------------------------------

    def initialize_session(self, assistant_id: str, user_id: str) -> ConversationSession:
        session = self.sessions.create_session(assistant_id, user_id)
        self.pending.replace(session.id, [])
        return session

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        return self.sessions.get_session(session_id)

    def end_session(self, session_id: str) -> None:
        self.sessions.end_session(session_id)

    def prune_inactive(self, max_idle_seconds: float) -> List[str]:
        pruned = self.sessions.prune_inactive(max_idle_seconds)
        for session_id in pruned:
            self.pending.drop_session(session_id)
        return pruned

    # Registry introspection ---------------------------------------------------

    def list_assistants(self) -> List[AssistantConfig]:
        return self.registry.list_configs()

    def get_assistant_config(self, assistant_id: str) -> AssistantConfig:
        return self.registry.get_config(assistant_id)

    def get_capabilities(self, assistant_id: str) -> List[str]:
        return self.registry.get_capabilities(assistant_id)

    def get_suggestions(self, session_id: str) -> List[str]:
        """Replay the persona menu when the session's last message is an assistant reply."""
        session = self.sessions.get_session(session_id)
        if session is None or not session.messages:
            return []
        if session.messages[-1].role != "assistant":
            return []
        return generate_suggestions(self.registry, session.assistant_id)

    # Turns -------------------------------------------------------------------

    def _resolve_turn(self, session_id: str) -> Tuple[ConversationSession, AssistantConfig]:
        session = self.sessions.require_session(session_id)
        config = self.registry.find_config(session.assistant_id)
        if config is None:
            raise AssistantConfigMissing(session.assistant_id)
        if not session.is_active:
            raise SessionInactive(session_id)
        return session, config

    def _record_user_message(self, session_id: str, text: str, context: Optional[Mapping[str, Any]]) -> None:
        self.sessions.append_message(session_id, Message(id=new_message_id(), role="user", content=text))
        self.sessions.merge_context(session_id, context)

    def _provider_args(self, session: ConversationSession, config: AssistantConfig) -> Dict[str, Any]:
        return {
            "system_prompt": build_system_prompt(config, session.context),
            "history": build_history_window(session.messages),
            "model": config.model,
            "temperature": config.sampling_temperature,
            "max_tokens": config.max_tokens,
        }

    def _commit_turn(
        self,
        session: ConversationSession,
        text: str,
        tokens_used: int,
        execution_time_ms: float,
    ) -> ChatResult:
        self.sessions.append_message(
            session.id,
            Message(
                id=new_message_id(),
                role="assistant",
                content=text,
                metadata=MessageMetadata(tokens_used=tokens_used, execution_time_ms=execution_time_ms),
            ),
        )
        self.sessions.touch(session.id)

        suggestions = generate_suggestions(self.registry, session.assistant_id)
        actions = self.extractor.extract(text)
        if actions:
            self.pending.replace(session.id, actions)

        return ChatResult(
            message=text,
            suggestions=suggestions,
            actions=actions,
            metadata=ChatMetadata(
                tokens_used=tokens_used,
                execution_time_ms=execution_time_ms,
                tools_used=[],
                confidence=DEFAULT_CONFIDENCE,
            ),
        )

    def _fail_turn(self, session: ConversationSession, mode: str, exc: BaseException, started: float) -> ChatFailed:
        if isinstance(exc, asyncio.TimeoutError) and self.provider_timeout is not None:
            message = f"provider timed out after {self.provider_timeout:g}s"
        else:
            message = str(exc) or exc.__class__.__name__
        _log_turn(session, mode, "failed", (time.monotonic() - started) * 1000.0)
        logger.warning("turn failed session_id=%s mode=%s error=%s", session.id, mode, message)
        return ChatFailed(message, session_id=session.id)

    async def chat(
        self,
        session_id: str,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ChatResult:
        """Answer one turn with a single batch completion."""
        self._resolve_turn(session_id)
        async with self.sessions.lock_for(session_id):
            # Re-resolve: the session may have ended while this turn waited.
            session, config = self._resolve_turn(session_id)
            self._record_user_message(session_id, text, context)

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self.provider.complete(**self._provider_args(session, config)),
                    timeout=self.provider_timeout,
                )
            except Exception as exc:
                raise self._fail_turn(session, "batch", exc, started) from exc
            elapsed_ms = (time.monotonic() - started) * 1000.0

            chat_result = self._commit_turn(
                session,
                result.text,
                result.input_tokens + result.output_tokens,
                elapsed_ms,
            )
            _log_turn(session, "batch", "ok", elapsed_ms)
            return chat_result

    async def stream_chat(
        self,
        session_id: str,
        text: str,
        on_chunk: ChunkCallback,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ChatResult:
        """
        Answer one turn from a streamed completion.

        Fragments reach `on_chunk` in generation order as they arrive. The
        assistant message, suggestions and actions are derived once from the
        full text after the provider's usage report. If `on_chunk` raises or
        the stream stops early, nothing beyond the user message is committed.
        Cancelling the awaiting task propagates CancelledError with the same
        guarantee.
        """
        self._resolve_turn(session_id)
        async with self.sessions.lock_for(session_id):
            session, config = self._resolve_turn(session_id)
            self._record_user_message(session_id, text, context)

            fragments: List[str] = []
            usage: Optional[Usage] = None

            async def consume() -> None:
                nonlocal usage
                stream = self.provider.complete_streaming(**self._provider_args(session, config))
                try:
                    async for item in stream:
                        if isinstance(item, Usage):
                            usage = item
                            break
                        fragments.append(item)
                        delivered = on_chunk(item)
                        if inspect.isawaitable(delivered):
                            await delivered
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

            started = time.monotonic()
            try:
                await asyncio.wait_for(consume(), timeout=self.provider_timeout)
                if usage is None:
                    raise RuntimeError("stream ended without a usage report")
            except Exception as exc:
                raise self._fail_turn(session, "stream", exc, started) from exc
            elapsed_ms = (time.monotonic() - started) * 1000.0

            chat_result = self._commit_turn(
                session,
                "".join(fragments),
                usage.input_tokens + usage.output_tokens,
                elapsed_ms,
            )
            _log_turn(session, "stream", "ok", elapsed_ms)
            return chat_result

    # Pending actions -----------------------------------------------------------

    def get_pending_actions(self, session_id: str) -> List[PendingAction]:
        return self.pending.get(session_id)

    async def execute_action(self, session_id: str, action_id: str) -> ActionResult:
        """Run a pending action through its type handler. The action stays pending."""
        session = self.sessions.require_session(session_id)
        action = self.pending.find(session_id, action_id)
        if action is None:
            raise ActionNotFound(session_id, action_id)

        result = self.dispatcher.dispatch(action, session)
        if inspect.isawaitable(result):
            result = await result
        return ActionResult(success=True, result=result)

    async def cancel_action(self, session_id: str, action_id: str) -> None:
        if self.pending.remove(session_id, action_id):
            logger.info("action cancelled session_id=%s action_id=%s", session_id, action_id)


def _log_turn(session: ConversationSession, mode: str, status: str, latency_ms: float) -> None:
    logger.info(
        "chat session_id=%s assistant=%s mode=%s status=%s latency_ms=%.2f",
        session.id,
        session.assistant_id,
        mode,
        status,
        latency_ms,
    )
