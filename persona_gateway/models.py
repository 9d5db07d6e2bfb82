"""
Data models for the persona gateway.

Defines AssistantConfig, Message, ConversationSession, PendingAction and the
ChatResult/ActionResult shapes returned by the engine, plus the request bodies
accepted by the HTTP routers. Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]
ActionType = Literal["execute", "suggest", "navigate", "create", "modify", "delete"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssistantConfig(BaseModel):
    """Static persona definition; loaded once and never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    name_ar: str = ""
    behavior_prompt: str
    model: str
    # Stored as 0-100; providers receive temperature / 100.
    temperature: int = Field(ge=0, le=100)
    max_tokens: int = Field(gt=0)
    capabilities: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @property
    def sampling_temperature(self) -> float:
        return self.temperature / 100


class MessageMetadata(BaseModel):
    tokens_used: int = 0
    execution_time_ms: float = 0.0
    tools_used: Optional[List[str]] = None
    confidence: Optional[float] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[MessageMetadata] = None


class ConversationSession(BaseModel):
    id: str
    assistant_id: str
    user_id: str
    messages: List[Message] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True


class PendingAction(BaseModel):
    id: str
    type: ActionType
    target: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    description: str = ""
    description_ar: str = ""


class ChatMetadata(BaseModel):
    tokens_used: int
    execution_time_ms: float
    tools_used: List[str] = Field(default_factory=list)
    confidence: float = 0.9


class ChatResult(BaseModel):
    message: str
    suggestions: List[str] = Field(default_factory=list)
    actions: List[PendingAction] = Field(default_factory=list)
    metadata: ChatMetadata


class ActionResult(BaseModel):
    success: bool
    result: Any = None


class CreateSessionRequest(BaseModel):
    """Body for POST /sessions."""

    assistant_id: str
    user_id: Optional[str] = None


class ChatRequest(BaseModel):
    """Body for POST /sessions/{id}/chat and /stream."""

    message: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None
