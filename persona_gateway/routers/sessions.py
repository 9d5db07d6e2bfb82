"""
Conversation session API.

POST /sessions, GET /sessions/{id}, DELETE /sessions/{id},
POST /sessions/{id}/chat, POST /sessions/{id}/stream (SSE),
GET /sessions/{id}/suggestions, GET /sessions/{id}/actions,
POST /sessions/{id}/actions/{action_id}/execute, DELETE /sessions/{id}/actions/{action_id}.

Engine errors propagate to the handlers in `persona_gateway.main`, which render
the standard error envelope.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from persona_gateway.dependencies import authenticated_user_id, enforce_auth, get_engine, resolve_user_id
from persona_gateway.engine import ConversationEngine
from persona_gateway.envelope import build_error_envelope, envelope_for, new_request_id
from persona_gateway.errors import EngineError, SessionInactive, SessionNotFound
from persona_gateway.models import ChatRequest, ConversationSession, CreateSessionRequest

logger = logging.getLogger("persona-gateway")


def require_auth(request: Request) -> None:
    enforce_auth(request)


router = APIRouter(prefix="/sessions", tags=["sessions"], dependencies=[Depends(require_auth)])


def _check_owner(request: Request, engine: ConversationEngine, session_id: str) -> None:
    """With verified callers, another user's session is reported as not found."""
    caller = authenticated_user_id(request)
    if caller is None:
        return
    session = engine.get_session(session_id)
    if session is not None and session.user_id != caller:
        raise SessionNotFound(session_id)


def _existing_session(request: Request, engine: ConversationEngine, session_id: str) -> ConversationSession:
    _check_owner(request, engine, session_id)
    session = engine.get_session(session_id)
    if session is None:
        raise SessionNotFound(session_id)
    return session


@router.post("", status_code=201)
async def post_sessions(
    body: CreateSessionRequest,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    """Create a session for an assistant. Returns 201 with the session."""
    user_id = resolve_user_id(request, body.user_id)
    session = engine.initialize_session(body.assistant_id, user_id)
    return JSONResponse(status_code=201, content=session.model_dump(mode="json"))


@router.get("/{session_id}")
async def get_sessions_id(
    session_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    session = _existing_session(request, engine, session_id)
    return JSONResponse(status_code=200, content=session.model_dump(mode="json"))


@router.delete("/{session_id}")
async def delete_sessions_id(
    session_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    """End a session. Idempotent: unknown or already-ended ids also return 200."""
    _check_owner(request, engine, session_id)
    engine.end_session(session_id)
    return JSONResponse(status_code=200, content={"ok": True, "session_id": session_id})


@router.post("/{session_id}/chat")
async def post_sessions_chat(
    session_id: str,
    body: ChatRequest,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    _check_owner(request, engine, session_id)
    result = await engine.chat(session_id, body.message, body.context)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


def _sse(event: str, payload: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


@router.post("/{session_id}/stream")
async def post_sessions_stream(
    session_id: str,
    body: ChatRequest,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> StreamingResponse:
    """
    Server-sent events stream for one turn.

    Emits `chunk` events ({"text": ...}) as fragments arrive, then a single
    `done` event with the chat result or an `error` event with the envelope.
    Closing the connection early cancels the turn; no partial answer is stored.
    """
    session = _existing_session(request, engine, session_id)
    if not session.is_active:
        raise SessionInactive(session_id)

    queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()

    async def on_chunk(fragment: str) -> None:
        await queue.put(("chunk", {"text": fragment}))

    async def run_turn() -> None:
        try:
            result = await engine.stream_chat(session_id, body.message, on_chunk, body.context)
            await queue.put(("done", result.model_dump(mode="json")))
        except EngineError as exc:
            _, error_body = envelope_for(exc)
            await queue.put(("error", error_body))
        except Exception as exc:
            logger.exception("stream turn crashed session_id=%s", session_id)
            _, error_body = build_error_envelope(
                request_id=new_request_id(),
                status_code=500,
                code="INTERNAL_ERROR",
                message=str(exc),
                session_id=session_id,
            )
            await queue.put(("error", error_body))

    async def event_stream():
        task = asyncio.create_task(run_turn())
        try:
            while True:
                event, payload = await queue.get()
                yield _sse(event, payload)
                if event != "chunk":
                    break
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("/{session_id}/suggestions")
async def get_sessions_suggestions(
    session_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    _existing_session(request, engine, session_id)
    return JSONResponse(
        status_code=200,
        content={"session_id": session_id, "suggestions": engine.get_suggestions(session_id)},
    )


@router.get("/{session_id}/actions")
async def get_sessions_actions(
    session_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    _existing_session(request, engine, session_id)
    actions = [a.model_dump(mode="json") for a in engine.get_pending_actions(session_id)]
    return JSONResponse(status_code=200, content={"session_id": session_id, "actions": actions})


@router.post("/{session_id}/actions/{action_id}/execute")
async def post_sessions_action_execute(
    session_id: str,
    action_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    _check_owner(request, engine, session_id)
    result = await engine.execute_action(session_id, action_id)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.delete("/{session_id}/actions/{action_id}")
async def delete_sessions_action(
    session_id: str,
    action_id: str,
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
) -> JSONResponse:
    """Cancel a pending action. Idempotent."""
    _check_owner(request, engine, session_id)
    await engine.cancel_action(session_id, action_id)
    return JSONResponse(status_code=200, content={"ok": True, "session_id": session_id, "action_id": action_id})
