"""
Pending action queue: the actions extracted from each session's latest turn.

A new non-empty extraction replaces the session's list wholesale, so only the
most recent turn's actions are ever pending.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from persona_gateway.models import PendingAction


class PendingActionQueue:
    def __init__(self) -> None:
        self._pending: Dict[str, List[PendingAction]] = {}

    def replace(self, session_id: str, actions: Iterable[PendingAction]) -> None:
        self._pending[session_id] = list(actions)

    def get(self, session_id: str) -> List[PendingAction]:
        return list(self._pending.get(session_id, []))

    def find(self, session_id: str, action_id: str) -> Optional[PendingAction]:
        for action in self._pending.get(session_id, []):
            if action.id == action_id:
                return action
        return None

    def remove(self, session_id: str, action_id: str) -> bool:
        actions = self._pending.get(session_id)
        if not actions:
            return False
        remaining = [a for a in actions if a.id != action_id]
        self._pending[session_id] = remaining
        return len(remaining) != len(actions)

    def drop_session(self, session_id: str) -> None:
        self._pending.pop(session_id, None)
