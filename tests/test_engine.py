"""
Conversation engine behaviour: turn commit rules, history window, pending
actions and session lifecycle. Providers are scripted test doubles.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List

import pytest

from conftest import ScriptedProvider
from persona_gateway.actions import ActionDispatcher
from persona_gateway.engine import HISTORY_WINDOW, ConversationEngine
from persona_gateway.errors import (
    ActionNotFound,
    ChatFailed,
    SessionInactive,
    SessionNotFound,
    UnknownAssistant,
)
from persona_gateway.models import Message, utcnow
from persona_gateway.providers import BaseProvider, StubProvider


def _roles(engine: ConversationEngine, session_id: str) -> List[str]:
    return [m.role for m in engine.get_session(session_id).messages]


### Sessions ###################################################################


def test_initialize_session_validates_assistant(engine):
    session = engine.initialize_session("ai_governor", "user-1")
    assert session.is_active
    assert session.messages == []
    assert session.context == {}
    assert session.last_activity_at >= session.started_at
    assert engine.get_session(session.id) is session

    with pytest.raises(UnknownAssistant):
        engine.initialize_session("no_such_persona", "user-1")


def test_session_ids_are_unique(engine):
    ids = {engine.initialize_session("ai_governor", "u").id for _ in range(50)}
    assert len(ids) == 50


def test_get_session_unknown_returns_none(engine):
    assert engine.get_session("missing") is None


def test_end_session_is_idempotent(engine):
    session = engine.initialize_session("ai_governor", "u")
    engine.end_session(session.id)
    engine.end_session(session.id)
    engine.end_session("never-existed")
    assert engine.get_session(session.id).is_active is False


async def test_chat_after_end_session_is_rejected(engine):
    session = engine.initialize_session("ai_governor", "u")
    engine.end_session(session.id)

    with pytest.raises(SessionInactive):
        await engine.chat(session.id, "hello?")

    assert engine.get_session(session.id).messages == []


async def test_chat_unknown_session_raises(engine):
    with pytest.raises(SessionNotFound):
        await engine.chat("missing", "hi")


### Batch turns ################################################################


async def test_security_guardian_scenario(engine, registry):
    session = engine.initialize_session("security_guardian", "user-7")

    result = await engine.chat(session.id, "scan my repo for vulnerabilities")

    menu = registry.get_config("security_guardian").suggestions
    assert len(result.suggestions) <= 3
    assert all(s in menu for s in result.suggestions)
    assert len(engine.get_session(session.id).messages) == 2


async def test_turns_are_appended_in_order(engine, provider):
    provider.replies = ["first answer", "second answer"]
    session = engine.initialize_session("platform_architect", "u")

    await engine.chat(session.id, "A")
    await engine.chat(session.id, "B")

    messages = engine.get_session(session.id).messages
    assert [(m.role, m.content) for m in messages] == [
        ("user", "A"),
        ("assistant", "first answer"),
        ("user", "B"),
        ("assistant", "second answer"),
    ]


async def test_chat_result_and_assistant_metadata(engine):
    session = engine.initialize_session("ai_governor", "u")
    result = await engine.chat(session.id, "status?")

    assert result.message == "Here is my answer."
    assert result.metadata.tokens_used == 15
    assert result.metadata.tools_used == []
    assert result.metadata.confidence == 0.9
    assert result.metadata.execution_time_ms >= 0

    assistant = engine.get_session(session.id).messages[-1]
    assert assistant.role == "assistant"
    assert assistant.metadata.tokens_used == 15
    assert assistant.metadata.execution_time_ms == result.metadata.execution_time_ms
    assert engine.get_session(session.id).messages[0].metadata is None


async def test_provider_receives_persona_parameters(engine, provider):
    session = engine.initialize_session("security_guardian", "u")
    await engine.chat(session.id, "hi", {"activeProject": "alpha"})

    call = provider.calls[0]
    assert call["model"] == "claude-sonnet-4-20250514"
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 8000
    assert call["system_prompt"].startswith("You are the Security Guardian")
    assert call["system_prompt"].endswith('Context: {"activeProject": "alpha"}')
    assert call["history"] == [{"role": "user", "content": "hi"}]


async def test_context_merge_is_shallow_last_write_wins(engine, provider):
    session = engine.initialize_session("ai_governor", "u")
    await engine.chat(session.id, "one", {"a": 1, "nested": {"x": 1}})
    await engine.chat(session.id, "two", {"a": 2, "nested": {"y": 2}})
    await engine.chat(session.id, "three")

    assert engine.get_session(session.id).context == {"a": 2, "nested": {"y": 2}}
    assert '"a": 2' in provider.calls[-1]["system_prompt"]


async def test_history_window_sends_only_last_twenty(engine, provider):
    session = engine.initialize_session("operations_commander", "u")
    for i in range(36):
        role = "user" if i % 2 == 0 else "assistant"
        engine.sessions.append_message(session.id, Message(id=f"m{i}", role=role, content=f"msg {i}"))

    await engine.chat(session.id, "latest")

    stored = engine.get_session(session.id).messages
    assert len(stored) == 38
    sent = provider.calls[0]["history"]
    assert len(sent) == HISTORY_WINDOW == 20
    assert sent == [{"role": m.role, "content": m.content} for m in stored[17:37]]
    assert sent[-1] == {"role": "user", "content": "latest"}
    assert sent[0]["content"] == "msg 17"


async def test_failed_chat_keeps_user_message_only(registry):
    provider = ScriptedProvider(fail=RuntimeError("upstream 529 overloaded"))
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("ai_governor", "u")

    with pytest.raises(ChatFailed) as exc:
        await engine.chat(session.id, "are you there?")

    assert "upstream 529 overloaded" in exc.value.message
    assert exc.value.retryable is True
    assert _roles(engine, session.id) == ["user"]
    assert engine.get_session(session.id).messages[0].content == "are you there?"


async def test_message_count_never_decreases(registry):
    provider = ScriptedProvider()
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("growth_strategist", "u")
    counts = [0]

    for i in range(6):
        provider.fail = RuntimeError("boom") if i % 2 else None
        try:
            await engine.chat(session.id, f"turn {i}")
        except ChatFailed:
            pass
        counts.append(len(engine.get_session(session.id).messages))

    assert counts == sorted(counts)
    assert counts[-1] == 9


async def test_provider_timeout_fails_turn(registry):
    provider = ScriptedProvider(delay=1.0)
    engine = ConversationEngine(registry, provider, provider_timeout=0.05)
    session = engine.initialize_session("ai_governor", "u")

    with pytest.raises(ChatFailed) as exc:
        await engine.chat(session.id, "slow")

    assert "timed out" in exc.value.message
    assert _roles(engine, session.id) == ["user"]


async def test_concurrent_turns_on_one_session_serialize(registry):
    provider = ScriptedProvider(replies=["reply A", "reply B"], delay=0.02)
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("ai_governor", "u")

    await asyncio.gather(engine.chat(session.id, "A"), engine.chat(session.id, "B"))

    messages = engine.get_session(session.id).messages
    assert [(m.role, m.content) for m in messages] == [
        ("user", "A"),
        ("assistant", "reply A"),
        ("user", "B"),
        ("assistant", "reply B"),
    ]
    # The second turn saw the complete first turn in its window.
    assert len(provider.calls[1]["history"]) == 3


async def test_stub_provider_end_to_end(registry):
    engine = ConversationEngine(registry, StubProvider())
    session = engine.initialize_session("platform_architect", "u")
    result = await engine.chat(session.id, "design an API")
    assert result.message == "[claude-sonnet-4-20250514] Received: design an API"
    assert result.metadata.tokens_used > 0


### Streaming turns ############################################################


async def test_stream_chat_delivers_chunks_in_order(engine, provider):
    provider.replies = ["I recommend enabling MFA everywhere"]
    session = engine.initialize_session("security_guardian", "u")
    chunks: List[str] = []

    result = await engine.stream_chat(session.id, "hardening tips?", chunks.append)

    assert "".join(chunks) == "I recommend enabling MFA everywhere"
    assert len(chunks) == 5
    assert result.message == "I recommend enabling MFA everywhere"
    assert result.metadata.tokens_used == 15
    assert len(result.actions) == 1
    assert engine.get_pending_actions(session.id) == result.actions
    assert _roles(engine, session.id) == ["user", "assistant"]


async def test_stream_chat_accepts_async_callback(engine):
    session = engine.initialize_session("ai_governor", "u")
    seen: List[str] = []

    async def on_chunk(fragment: str) -> None:
        await asyncio.sleep(0)
        seen.append(fragment)

    result = await engine.stream_chat(session.id, "hi", on_chunk)
    assert "".join(seen) == result.message


async def test_stream_failure_commits_no_partial_answer(registry):
    provider = ScriptedProvider(replies=["one two three four"], fail_after_chunks=2)
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("ai_governor", "u")
    chunks: List[str] = []

    with pytest.raises(ChatFailed):
        await engine.stream_chat(session.id, "go", chunks.append)

    assert chunks == ["one", " two"]
    assert _roles(engine, session.id) == ["user"]


async def test_stream_without_usage_report_fails(registry):
    provider = ScriptedProvider(replies=["partial answer"], omit_usage=True)
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("ai_governor", "u")

    with pytest.raises(ChatFailed):
        await engine.stream_chat(session.id, "go", lambda _c: None)

    assert _roles(engine, session.id) == ["user"]


async def test_stream_abandoned_by_callback_commits_nothing(engine, provider):
    provider.replies = ["alpha beta gamma"]
    session = engine.initialize_session("ai_governor", "u")
    delivered: List[str] = []

    def on_chunk(fragment: str) -> None:
        delivered.append(fragment)
        if len(delivered) == 2:
            raise ConnectionResetError("client went away")

    with pytest.raises(ChatFailed):
        await engine.stream_chat(session.id, "go", on_chunk)

    assert delivered == ["alpha", " beta"]
    assert _roles(engine, session.id) == ["user"]


class HangingStreamProvider(BaseProvider):
    """Emits one fragment then waits forever."""

    name = "hanging"

    def __init__(self) -> None:
        self.first_chunk_sent = asyncio.Event()

    async def complete(self, *args, **kwargs):  # pragma: no cover - unused
        raise NotImplementedError

    async def complete_streaming(self, system_prompt, history, *, model, temperature, max_tokens):
        yield "partial"
        self.first_chunk_sent.set()
        await asyncio.Event().wait()


async def test_cancelled_stream_commits_nothing_and_releases_session(registry):
    provider = HangingStreamProvider()
    engine = ConversationEngine(registry, provider)
    session = engine.initialize_session("ai_governor", "u")
    chunks: List[str] = []

    task = asyncio.create_task(engine.stream_chat(session.id, "go", chunks.append))
    await provider.first_chunk_sent.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert chunks == ["partial"]
    assert _roles(engine, session.id) == ["user"]

    engine.provider = ScriptedProvider()
    await engine.chat(session.id, "again")
    assert _roles(engine, session.id) == ["user", "user", "assistant"]


### Suggestions ################################################################


async def test_get_suggestions_replays_menu_after_assistant_reply(engine):
    session = engine.initialize_session("growth_strategist", "u")
    assert engine.get_suggestions(session.id) == []
    assert engine.get_suggestions("missing") == []

    await engine.chat(session.id, "how do we grow?")
    assert engine.get_suggestions(session.id) == [
        "Analyze user metrics",
        "Suggest growth strategies",
        "Create marketing content",
    ]


async def test_get_suggestions_empty_when_last_message_is_user(registry):
    engine = ConversationEngine(registry, ScriptedProvider(fail=RuntimeError("down")))
    session = engine.initialize_session("growth_strategist", "u")
    with pytest.raises(ChatFailed):
        await engine.chat(session.id, "hello")
    assert engine.get_suggestions(session.id) == []


### Pending actions ############################################################


async def test_recommendation_creates_single_pending_action(engine, provider):
    provider.replies = ["You should rotate the keys. I recommend doing it weekly."]
    session = engine.initialize_session("security_guardian", "u")

    result = await engine.chat(session.id, "keys?")

    assert len(result.actions) == 1
    action = result.actions[0]
    assert action.type == "suggest"
    assert action.target == "recommendation"
    assert action.requires_approval is False
    assert action.parameters == {"content": provider.replies[0]}


async def test_turn_without_recommendation_keeps_previous_actions(engine, provider):
    provider.replies = ["I recommend a backup.", "Done."]
    session = engine.initialize_session("operations_commander", "u")

    first = await engine.chat(session.id, "one")
    second = await engine.chat(session.id, "two")

    assert second.actions == []
    assert engine.get_pending_actions(session.id) == first.actions


async def test_superseded_action_is_not_found(engine, provider):
    provider.replies = ["I recommend plan A.", "You should try plan B."]
    session = engine.initialize_session("ai_governor", "u")

    old = (await engine.chat(session.id, "one")).actions[0]
    new = (await engine.chat(session.id, "two")).actions[0]

    with pytest.raises(ActionNotFound):
        await engine.execute_action(session.id, old.id)

    outcome = await engine.execute_action(session.id, new.id)
    assert outcome.success is True
    assert outcome.result == "Action suggest executed successfully"
    # Executing does not consume the action.
    assert [a.id for a in engine.get_pending_actions(session.id)] == [new.id]


async def test_cancel_action_is_idempotent(engine, provider):
    provider.replies = ["I recommend plan A."]
    session = engine.initialize_session("ai_governor", "u")
    action = (await engine.chat(session.id, "one")).actions[0]

    await engine.cancel_action(session.id, "not-an-action")
    assert len(engine.get_pending_actions(session.id)) == 1

    await engine.cancel_action(session.id, action.id)
    await engine.cancel_action(session.id, action.id)
    await engine.cancel_action("missing-session", action.id)
    assert engine.get_pending_actions(session.id) == []

    with pytest.raises(ActionNotFound):
        await engine.execute_action(session.id, action.id)


async def test_execute_action_uses_registered_handler(registry):
    seen = []

    async def suggest_handler(action, session):
        seen.append((action.id, session.id))
        return {"applied": action.target}

    engine = ConversationEngine(
        registry,
        ScriptedProvider(replies=["I recommend caching."]),
        dispatcher=ActionDispatcher({"suggest": suggest_handler}),
    )
    session = engine.initialize_session("platform_architect", "u")
    action = (await engine.chat(session.id, "speed?")).actions[0]

    outcome = await engine.execute_action(session.id, action.id)

    assert outcome.result == {"applied": "recommendation"}
    assert seen == [(action.id, session.id)]


async def test_execute_action_unknown_session(engine):
    with pytest.raises(SessionNotFound):
        await engine.execute_action("missing", "action-1")


### Idle reaping ###############################################################


async def test_prune_inactive_drops_idle_sessions(engine, provider):
    provider.replies = ["I recommend a nap."]
    idle = engine.initialize_session("ai_governor", "u")
    fresh = engine.initialize_session("ai_governor", "u")
    await engine.chat(idle.id, "tired")

    idle.last_activity_at = utcnow() - timedelta(hours=2)
    pruned = engine.prune_inactive(3600)

    assert pruned == [idle.id]
    assert engine.get_session(idle.id) is None
    assert engine.get_pending_actions(idle.id) == []
    assert engine.get_session(fresh.id) is not None
