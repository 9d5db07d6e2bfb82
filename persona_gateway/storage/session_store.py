"""
Session store: in-memory conversation sessions keyed by id.

Sessions live for the life of the process unless pruned by the idle reaper.
Each session owns an asyncio.Lock; the engine holds it for the duration of a
turn so that at most one turn per session is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from persona_gateway.errors import SessionNotFound, UnknownAssistant
from persona_gateway.models import ConversationSession, Message, utcnow
from persona_gateway.registry import AssistantRegistry

logger = logging.getLogger("persona-gateway")


class SessionStore:
    def __init__(self, registry: AssistantRegistry):
        self._registry = registry
        self._sessions: Dict[str, ConversationSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self, assistant_id: str, user_id: str) -> ConversationSession:
        """Create a new session; raises UnknownAssistant before storing anything."""
        if assistant_id not in self._registry:
            raise UnknownAssistant(assistant_id)
        now = utcnow()
        session = ConversationSession(
            id=str(uuid.uuid4()),
            assistant_id=assistant_id,
            user_id=user_id,
            started_at=now,
            last_activity_at=now,
        )
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        logger.info("session created session_id=%s assistant=%s", session.id, assistant_id)
        return session

    def get_session(self, session_id: str) -> Optional[ConversationSession]:
        """Return the session or None when not found. Do not raise."""
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> ConversationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def end_session(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_active:
            session.is_active = False
            logger.info("session ended session_id=%s", session_id)

    def lock_for(self, session_id: str) -> asyncio.Lock:
        self.require_session(session_id)
        return self._locks.setdefault(session_id, asyncio.Lock())

    def append_message(self, session_id: str, message: Message) -> None:
        self.require_session(session_id).messages.append(message)

    def merge_context(self, session_id: str, patch: Optional[Mapping[str, Any]]) -> None:
        if not patch:
            return
        session = self.require_session(session_id)
        session.context = {**session.context, **patch}

    def touch(self, session_id: str) -> None:
        session = self.require_session(session_id)
        session.last_activity_at = max(utcnow(), session.started_at)

    def prune_inactive(self, max_idle_seconds: float, now: Optional[datetime] = None) -> List[str]:
        """
        Drop sessions whose last activity is older than max_idle_seconds.

        Sessions with a turn in flight (lock held) are skipped.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=max_idle_seconds)
        pruned: List[str] = []
        for session_id, session in list(self._sessions.items()):
            lock = self._locks.get(session_id)
            if lock is not None and lock.locked():
                continue
            if session.last_activity_at < cutoff:
                del self._sessions[session_id]
                self._locks.pop(session_id, None)
                pruned.append(session_id)
        if pruned:
            logger.info("pruned idle sessions count=%d", len(pruned))
        return pruned
