"""Base repository interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from ..domain.models import Chat


class RepositoryError(Exception):
    """Raised when the underlying store fails."""


class DuplicateShareTokenError(RepositoryError):
    """Share token already used by another chat."""


class StaleChatError(RepositoryError):
    """Conditional update lost against a newer version."""


@dataclass
class ChatQuery:
    """Filter, sort and window for ``find_page`` / ``count_chats``.

    With ``text`` set, results are ordered by relevance score; otherwise by
    ``updated_at`` descending.
    """

    owner_id: str
    text: Optional[str] = None
    skip: int = 0
    limit: int = 20


class ChatRepository(ABC):
    """Abstract base class for chat stores."""

    @property
    @abstractmethod
    def revision(self) -> int:
        """Counter that moves forward on every completed write."""
        pass

    @abstractmethod
    async def create_chat(self, chat: Chat) -> Chat:
        """Insert a new chat."""
        pass

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Retrieve a chat by ID."""
        pass

    @abstractmethod
    async def find_page(self, query: ChatQuery) -> Tuple[List[Chat], int]:
        """Return one window of an owner's chats and the unwindowed total.

        Both come from the same read, so the total always describes the
        window it is returned with.
        """
        pass

    @abstractmethod
    async def count_chats(self, query: ChatQuery) -> int:
        """Count chats matching the query, ignoring its window."""
        pass

    @abstractmethod
    async def update_chat(self, chat: Chat) -> Chat:
        """Replace a chat if its version is still current.

        Raises ``StaleChatError`` when another write got there first and
        ``DuplicateShareTokenError`` when the share token is taken.
        """
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat, returning whether it existed."""
        pass

    @abstractmethod
    async def find_by_share_token(self, token: str) -> Optional[Chat]:
        """Retrieve the chat holding a share token, active or not."""
        pass

    @abstractmethod
    async def delete_expired_shares(self, now: datetime) -> int:
        """Delete every shared chat whose share window ended before ``now``."""
        pass

    @abstractmethod
    async def clear_expired_shares(self, now: datetime) -> int:
        """Drop sharing state of shared chats whose window ended before ``now``."""
        pass
