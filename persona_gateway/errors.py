"""
Engine error taxonomy.

Each error carries an HTTP status and a stable code; the routers turn them into
the standard error envelope. Only ChatFailed is retryable.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class UnknownAssistant(EngineError):
    """Session creation or lookup referenced a persona that is not registered."""

    status_code = 404
    code = "UNKNOWN_ASSISTANT"

    def __init__(self, assistant_id: str):
        super().__init__(f"Unknown assistant: {assistant_id}", details={"assistant_id": assistant_id})
        self.assistant_id = assistant_id


class SessionNotFound(EngineError):
    status_code = 404
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class SessionInactive(EngineError):
    """The session was ended and no longer accepts turns."""

    status_code = 409
    code = "SESSION_INACTIVE"

    def __init__(self, session_id: str):
        super().__init__(f"Session has ended: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class ActionNotFound(EngineError):
    status_code = 404
    code = "ACTION_NOT_FOUND"

    def __init__(self, session_id: str, action_id: str):
        super().__init__(
            f"Action not found: {action_id}",
            details={"session_id": session_id, "action_id": action_id},
        )
        self.session_id = session_id
        self.action_id = action_id


class ChatFailed(EngineError):
    """
    The completion provider failed, timed out or the stream was abandoned.

    The user's message is already in the transcript when this is raised.
    """

    status_code = 502
    code = "CHAT_FAILED"
    retryable = True

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(f"Chat failed: {message}", details={"session_id": session_id})
        self.session_id = session_id


class AssistantConfigMissing(EngineError):
    """Integrity failure: a live session points at a persona the registry lacks."""

    status_code = 500
    code = "ASSISTANT_CONFIG_MISSING"

    def __init__(self, assistant_id: str):
        super().__init__(
            f"Assistant configuration not found: {assistant_id}",
            details={"assistant_id": assistant_id},
        )
        self.assistant_id = assistant_id
