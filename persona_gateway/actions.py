"""
Action extraction and execution.

Extraction is a strategy: the engine accepts any object with an `extract(text)`
method. The default matches literal recommendation phrases and yields at most
one `suggest` action per turn; the approval UI relies on that shape.

Execution dispatches on the action type through a handler table. The default
handler only logs; deployments register real handlers per type.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .models import ActionType, ConversationSession, PendingAction

logger = logging.getLogger("persona-gateway")

RECOMMENDATION_PHRASES = ("i recommend", "you should")

ActionHandler = Callable[[PendingAction, ConversationSession], Any]


class ActionExtractor(Protocol):
    def extract(self, text: str) -> List[PendingAction]:  # pragma: no cover - interface only
        ...


class LiteralPhraseExtractor:
    """Emit one recommendation action when any marker phrase appears (case-insensitive)."""

    def __init__(self, phrases: Sequence[str] = RECOMMENDATION_PHRASES):
        self.phrases = tuple(p.lower() for p in phrases)

    def extract(self, text: str) -> List[PendingAction]:
        lowered = text.lower()
        if not any(phrase in lowered for phrase in self.phrases):
            return []
        return [
            PendingAction(
                id=f"action-{uuid.uuid4()}",
                type="suggest",
                target="recommendation",
                parameters={"content": text},
                requires_approval=False,
                description="Recommendation from assistant",
                description_ar="توصية من المساعد",
            )
        ]


def log_only_handler(action: PendingAction, session: ConversationSession) -> str:
    logger.info(
        "executing action session_id=%s action_id=%s type=%s target=%s",
        session.id,
        action.id,
        action.type,
        action.target,
    )
    return f"Action {action.type} executed successfully"


class ActionDispatcher:
    """Maps action types to handlers; unregistered types fall back to the default."""

    def __init__(
        self,
        handlers: Optional[Dict[ActionType, ActionHandler]] = None,
        default: ActionHandler = log_only_handler,
    ):
        self._handlers: Dict[str, ActionHandler] = dict(handlers or {})
        self._default = default

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def dispatch(self, action: PendingAction, session: ConversationSession) -> Any:
        handler = self._handlers.get(action.type, self._default)
        return handler(action, session)
