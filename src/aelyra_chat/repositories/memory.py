"""In-memory repository implementation."""

import asyncio
import itertools
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from ..domain.models import Chat
from .base import (
    ChatQuery,
    ChatRepository,
    DuplicateShareTokenError,
    StaleChatError,
)

logger = structlog.get_logger()

TITLE_WEIGHT = 2
CONTENT_WEIGHT = 1

_WORD = re.compile(r"\w+")


def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens used by the text index."""
    return _WORD.findall(text.lower())


def text_score(chat: Chat, terms: List[str]) -> int:
    """Weighted count of query term occurrences in title and messages."""
    title_tokens = tokenize(chat.title)
    content_tokens: List[str] = []
    for message in chat.messages:
        content_tokens.extend(tokenize(message.content))

    score = 0
    for term in set(terms):
        score += TITLE_WEIGHT * title_tokens.count(term)
        score += CONTENT_WEIGHT * content_tokens.count(term)
    return score


class InMemoryChatRepository(ChatRepository):
    """asyncio-safe in-memory chat store.

    Chats are stored and handed out as deep copies, so a caller mutating
    a chat it read never changes stored state until it saves.
    """

    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._share_index: Dict[str, str] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._revision = 0
        self._lock = asyncio.Lock()
        logger.info("repository_initialized", backend="memory")

    @property
    def revision(self) -> int:
        return self._revision

    def _check_token(self, chat: Chat) -> None:
        token = chat.share_token
        if token is None:
            return
        holder = self._share_index.get(token)
        if holder is not None and holder != chat.id:
            logger.warning("share_token_collision", chat_id=chat.id)
            raise DuplicateShareTokenError("Share token already in use")

    def _reindex(self, previous: Optional[Chat], current: Optional[Chat]) -> None:
        if previous is not None and previous.share_token:
            self._share_index.pop(previous.share_token, None)
        if current is not None and current.share_token:
            self._share_index[current.share_token] = current.id

    async def create_chat(self, chat: Chat) -> Chat:
        """Insert a new chat."""
        async with self._lock:
            if chat.id in self._chats:
                raise StaleChatError(f"Chat {chat.id} already exists")
            self._check_token(chat)
            stored = chat.model_copy(deep=True)
            self._chats[stored.id] = stored
            self._sequence[stored.id] = next(self._counter)
            self._reindex(None, stored)
            self._revision += 1
            logger.info("chat_stored", chat_id=stored.id, owner_id=stored.owner_id)
            return stored.model_copy(deep=True)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Retrieve a chat by ID."""
        async with self._lock:
            chat = self._chats.get(chat_id)
            return chat.model_copy(deep=True) if chat else None

    def _recency(self, chat: Chat) -> Tuple[datetime, int]:
        # insertion order breaks timestamp ties
        return chat.updated_at, self._sequence.get(chat.id, 0)

    def _matching(self, query: ChatQuery) -> List[Tuple[int, Chat]]:
        owned = [c for c in self._chats.values() if c.owner_id == query.owner_id]
        terms = tokenize(query.text) if query.text else []
        if not terms:
            owned.sort(key=self._recency, reverse=True)
            return [(0, c) for c in owned]

        scored = [(text_score(c, terms), c) for c in owned]
        scored = [(score, c) for score, c in scored if score > 0]
        scored.sort(key=lambda pair: (pair[0], self._recency(pair[1])), reverse=True)
        return scored

    async def find_page(self, query: ChatQuery) -> Tuple[List[Chat], int]:
        """Return one window of an owner's chats and the unwindowed total."""
        async with self._lock:
            matches = self._matching(query)
            window = matches[query.skip : query.skip + query.limit]
            return [chat.model_copy(deep=True) for _, chat in window], len(matches)

    async def count_chats(self, query: ChatQuery) -> int:
        async with self._lock:
            return len(self._matching(query))

    async def update_chat(self, chat: Chat) -> Chat:
        """Replace a chat if its version is still current."""
        async with self._lock:
            existing = self._chats.get(chat.id)
            if existing is None:
                raise StaleChatError(f"Chat {chat.id} no longer exists")
            if existing.version != chat.version:
                logger.warning(
                    "stale_chat_update",
                    chat_id=chat.id,
                    stored_version=existing.version,
                    write_version=chat.version,
                )
                raise StaleChatError(f"Chat {chat.id} was modified concurrently")
            self._check_token(chat)

            stored = chat.model_copy(deep=True, update={"version": chat.version + 1})
            self._chats[stored.id] = stored
            self._reindex(existing, stored)
            self._revision += 1
            return stored.model_copy(deep=True)

    async def delete_chat(self, chat_id: str) -> bool:
        async with self._lock:
            existing = self._chats.pop(chat_id, None)
            if existing is None:
                return False
            self._sequence.pop(chat_id, None)
            self._reindex(existing, None)
            self._revision += 1
            logger.info("chat_deleted", chat_id=chat_id)
            return True

    async def find_by_share_token(self, token: str) -> Optional[Chat]:
        async with self._lock:
            chat_id = self._share_index.get(token)
            if chat_id is None:
                return None
            return self._chats[chat_id].model_copy(deep=True)

    def _expired(self, now: datetime) -> List[Chat]:
        return [
            c
            for c in self._chats.values()
            if c.sharing is not None
            and c.sharing.is_shared
            and c.sharing.expires_at < now
        ]

    async def delete_expired_shares(self, now: datetime) -> int:
        async with self._lock:
            expired = self._expired(now)
            for chat in expired:
                del self._chats[chat.id]
                self._sequence.pop(chat.id, None)
                self._reindex(chat, None)
            if expired:
                self._revision += 1
            return len(expired)

    async def clear_expired_shares(self, now: datetime) -> int:
        async with self._lock:
            expired = self._expired(now)
            for chat in expired:
                cleared = chat.model_copy(
                    deep=True, update={"sharing": None, "version": chat.version + 1}
                )
                cleared.touch()
                self._chats[chat.id] = cleared
                self._reindex(chat, None)
            if expired:
                self._revision += 1
            return len(expired)
