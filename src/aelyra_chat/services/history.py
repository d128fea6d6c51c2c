"""Paginated, previewed and optionally search-ranked chat history."""

import asyncio
import hashlib
import json
from typing import Any, Dict, Optional

import structlog

from ..config import Settings
from ..domain.models import Chat, ChatSummary, HistoryPage, Pagination
from ..repositories.base import ChatQuery, ChatRepository
from .access import storage_errors

logger = structlog.get_logger()

PREVIEW_LENGTH = 100
DEFAULT_PAGE = 1


def parse_positive(value: Any, default: int) -> int:
    """Positive integer from a loosely typed value, else ``default``."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def summarize(chat: Chat) -> ChatSummary:
    """History entry for a chat: metadata plus a preview of its last message."""
    last = chat.messages[-1] if chat.messages else None
    return ChatSummary(
        id=chat.id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        is_starred=chat.is_starred,
        is_shared=chat.is_shared,
        share_token=chat.share_token,
        preview=last.content[:PREVIEW_LENGTH] if last else None,
    )


class HistoryQueryService:
    """Builds history pages on top of the chat store.

    Identical queries that overlap in time share one store round trip.
    Entries are keyed by the store revision seen when they started, so a
    query issued after a write never joins a read that began before it.
    An in-flight entry is evicted the moment its query completes.
    """

    def __init__(self, repository: ChatRepository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings
        self._inflight: Dict[str, "asyncio.Task[HistoryPage]"] = {}

    @staticmethod
    def _fingerprint(
        owner_id: str, text: Optional[str], page: int, page_size: int, revision: int
    ) -> str:
        payload = json.dumps([owner_id, text, page, page_size, revision])
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    async def list_chats(
        self,
        owner_id: str,
        query: Optional[str] = None,
        page: Any = None,
        page_size: Any = None,
    ) -> HistoryPage:
        page_num = parse_positive(page, DEFAULT_PAGE)
        size = min(
            parse_positive(page_size, self.settings.default_page_size),
            self.settings.max_page_size,
        )
        text = query.strip() if query and query.strip() else None

        key = self._fingerprint(owner_id, text, page_num, size, self.repository.revision)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(owner_id, text, page_num, size))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("history_query_coalesced", owner_id=owner_id)
        return await asyncio.shield(task)

    async def _fetch(self, owner_id: str, text: Optional[str], page: int, size: int) -> HistoryPage:
        query = ChatQuery(owner_id=owner_id, text=text, skip=(page - 1) * size, limit=size)
        with storage_errors("retrieve chat history"):
            chats, total = await self.repository.find_page(query)

        summaries = [summarize(chat) for chat in chats]
        logger.info(
            "history_listed",
            owner_id=owner_id,
            searched=text is not None,
            page=page,
            returned=len(summaries),
            total=total,
        )
        return HistoryPage(
            chats=summaries,
            pagination=Pagination(
                page=page,
                limit=size,
                total=total,
                has_more=query.skip + len(summaries) < total,
            ),
        )
