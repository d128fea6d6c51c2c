"""Request bodies and public response shapes for the HTTP API."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..domain.models import Chat, Feedback, Message


class ChatCreate(BaseModel):
    """Defines the structure for chat creation requests"""
    title: Optional[str] = None


class MessageCreate(BaseModel):
    """Defines the structure for message send requests"""
    content: str
    image: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)


class RegenerateRequest(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)


class FeedbackUpdate(BaseModel):
    feedback: Optional[Feedback] = None


class SharedChatView(BaseModel):
    """Public view of a shared chat (no owner, tags or sharing internals)."""

    id: str
    title: str
    messages: List[Message]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @classmethod
    def from_chat(cls, chat: Chat) -> "SharedChatView":
        return cls(
            id=chat.id,
            title=chat.title,
            messages=chat.messages,
            created_at=chat.created_at,
            updated_at=chat.updated_at,
            expires_at=chat.sharing.expires_at,
        )


def failure(code: str, message: str, retry_after: Optional[int] = None) -> dict:
    """JSON envelope for failed responses."""
    error = {"code": code, "message": message}
    if retry_after is not None:
        error["retry_after"] = retry_after
    return {"success": False, "error": error}
