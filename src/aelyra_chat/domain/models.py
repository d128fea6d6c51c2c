"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Chat"
MAX_TITLE_LENGTH = 100


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Random hex identifier for chats and messages."""
    return uuid4().hex


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Feedback(str, Enum):
    """Owner rating of an assistant message."""

    LIKE = "like"
    DISLIKE = "dislike"


class TitleSource(str, Enum):
    """Where the current chat title came from."""

    DEFAULT = "default"
    PROVISIONAL = "provisional"
    USER = "user"
    GENERATED = "generated"


class ImageRef(BaseModel):
    """Reference to an image stored by the external upload service."""

    url: str
    public_id: Optional[str] = None


class Message(BaseModel):
    """Message model."""

    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    images: List[ImageRef] = Field(default_factory=list)
    feedback: Optional[Feedback] = None
    created_at: datetime = Field(default_factory=utcnow)


class Sharing(BaseModel):
    """Public sharing state; only present while a chat is shared."""

    token: str
    expires_at: datetime
    is_shared: bool = True

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Whether the link is switched on and not yet expired."""
        now = now or utcnow()
        return self.is_shared and self.expires_at > now


class Chat(BaseModel):
    """Conversation model."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str = DEFAULT_TITLE
    title_source: TitleSource = TitleSource.DEFAULT
    messages: List[Message] = Field(default_factory=list)
    is_starred: bool = False
    tags: List[str] = Field(default_factory=list)
    sharing: Optional[Sharing] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_shared(self) -> bool:
        return self.sharing is not None and self.sharing.is_shared

    @property
    def share_token(self) -> Optional[str]:
        return self.sharing.token if self.sharing else None

    def touch(self) -> None:
        """Refresh ``updated_at`` after a mutation."""
        self.updated_at = utcnow()

    def append(self, message: Message) -> Message:
        """Add a message at the end and bump ``updated_at``."""
        self.messages.append(message)
        self.touch()
        return message


class ChatUpdate(BaseModel):
    """Owner-editable chat fields; ``None`` leaves a field untouched."""

    title: Optional[str] = None
    is_starred: Optional[bool] = None
    tags: Optional[List[str]] = None
    is_shared: Optional[bool] = None


class ChatSummary(BaseModel):
    """Lightweight history entry; never carries message bodies."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    is_starred: bool
    is_shared: bool
    share_token: Optional[str] = None
    preview: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool


class HistoryPage(BaseModel):
    """A page of chat summaries."""

    chats: List[ChatSummary]
    pagination: Pagination


class ShareLink(BaseModel):
    token: str
    url: str
    expires_at: datetime


class SendResult(BaseModel):
    """Assistant reply together with the persisted chat."""

    reply: str
    chat: Chat
