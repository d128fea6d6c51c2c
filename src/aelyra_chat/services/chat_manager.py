"""Chat lifecycle manager.

Owns conversation creation, the message append protocol, reply generation,
title inference and owner edits. A user turn is persisted only together
with the assistant turn that answers it, in a single store write.
"""

import asyncio
from collections.abc import Mapping
from typing import Any, List, Optional

import structlog

from ..config import Settings
from ..domain.errors import (
    GenerationError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from ..domain.models import (
    DEFAULT_TITLE,
    MAX_TITLE_LENGTH,
    Chat,
    ChatUpdate,
    Feedback,
    ImageRef,
    Message,
    Role,
    SendResult,
    TitleSource,
)
from ..repositories.base import ChatRepository
from .access import require_owned_chat, storage_errors
from .chat_lease import ChatLeaseManager
from .llm import GenerationGateway, ReplyResult, is_rate_limit_error
from .sharing import ShareService
from .titles import fallback_title, infer_title, provisional_title

logger = structlog.get_logger()

QUOTA_MESSAGE = "AI quota exceeded. Please wait a few seconds and try again."
AUTO_TITLE_SOURCES = (TitleSource.DEFAULT, TitleSource.PROVISIONAL)


def normalize_title(title: str) -> str:
    """Trimmed title, rejecting blanks and capping the length."""
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title cannot be empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title cannot be more than {MAX_TITLE_LENGTH} characters")
    return title


def normalize_tags(tags: List[str]) -> List[str]:
    """Trimmed, non-empty tags without duplicates, in first-seen order."""
    seen: List[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def extract_reply_text(result: Any) -> Optional[str]:
    """Pull the assistant text out of whatever shape the gateway returned."""
    if isinstance(result, str):
        return result
    if isinstance(result, ReplyResult):
        return result.text if result.success else None
    if isinstance(result, Mapping):
        if result.get("success") is False:
            return None
        return result.get("message") or result.get("text")
    return None


class ChatLifecycleManager:
    """Coordinates the store, the generation gateway and per-chat leases."""

    def __init__(
        self,
        repository: ChatRepository,
        gateway: GenerationGateway,
        settings: Settings,
        leases: Optional[ChatLeaseManager] = None,
        sharing: Optional[ShareService] = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.settings = settings
        self.leases = leases or ChatLeaseManager(settings.lease_timeout_seconds)
        self.sharing = sharing or ShareService(repository, settings, self.leases)

    async def create_chat(self, owner_id: str, title: Optional[str] = None) -> Chat:
        """Create an empty chat."""
        chat = Chat(owner_id=owner_id)
        if title is not None and title.strip():
            chat.title = normalize_title(title)
            chat.title_source = TitleSource.USER

        with storage_errors("create chat"):
            saved = await self.repository.create_chat(chat)
        logger.info("chat_created", chat_id=saved.id, owner_id=owner_id)
        return saved

    async def get_chat(self, owner_id: str, chat_id: str) -> Chat:
        """Load one of the owner's chats with its full message list."""
        return await require_owned_chat(self.repository, owner_id, chat_id)

    async def send_message(
        self,
        owner_id: str,
        chat_id: Optional[str],
        text: str,
        image: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> SendResult:
        """Append a user turn, generate the reply and persist both.

        Without ``chat_id`` a new chat is created, titled after the first
        50 characters of ``text`` until the first exchange names it.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is required")
        images = [ImageRef(url=image)] if image else []

        if chat_id is None:
            chat = Chat(
                owner_id=owner_id,
                title=provisional_title(text),
                title_source=TitleSource.PROVISIONAL,
            )
            return await self._exchange(chat, text, images, timeout, is_new=True)

        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)
            return await self._exchange(chat, text, images, timeout, is_new=False)

    async def regenerate(
        self,
        owner_id: str,
        chat_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[SendResult]:
        """Drop the trailing assistant reply and resubmit the user turn before it.

        Returns ``None`` without touching the chat when the last message is
        not an assistant reply.
        """
        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)
            if not chat.messages or chat.messages[-1].role != Role.ASSISTANT:
                logger.info("regenerate_noop", chat_id=chat_id)
                return None

            chat.messages.pop()
            if not chat.messages or chat.messages[-1].role != Role.USER:
                raise ValidationError("No user message to regenerate a reply for")
            user_turn = chat.messages.pop()

            logger.info("regenerate_started", chat_id=chat_id)
            return await self._exchange(
                chat, user_turn.content, user_turn.images, timeout, is_new=False
            )

    async def update_chat(self, owner_id: str, chat_id: str, changes: ChatUpdate) -> Chat:
        """Apply owner edits: title, star, tags and the share flag."""
        fields = changes.model_dump(exclude_none=True)
        if not fields:
            raise ValidationError("No valid fields to update")

        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)

            if changes.title is not None:
                chat.title = normalize_title(changes.title)
                chat.title_source = TitleSource.USER
            if changes.is_starred is not None:
                chat.is_starred = changes.is_starred
            if changes.tags is not None:
                chat.tags = normalize_tags(changes.tags)
            chat.touch()

            if changes.is_shared and not (chat.sharing and chat.sharing.is_active()):
                saved, _ = await self.sharing.issue(chat)
            elif changes.is_shared is False and chat.sharing is not None:
                saved = await self.sharing.revoke(chat)
            else:
                with storage_errors("update chat"):
                    saved = await self.repository.update_chat(chat)

        logger.info("chat_updated", chat_id=chat_id, fields=sorted(fields))
        return saved

    async def delete_chat(self, owner_id: str, chat_id: str) -> None:
        """Remove one of the owner's chats."""
        async with self.leases.acquire(chat_id):
            await require_owned_chat(self.repository, owner_id, chat_id)
            with storage_errors("delete chat"):
                await self.repository.delete_chat(chat_id)

    async def set_feedback(
        self,
        owner_id: str,
        chat_id: str,
        message_id: str,
        feedback: Optional[Feedback],
    ) -> Message:
        """Rate an assistant message; ``None`` clears the rating."""
        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)
            message = next((m for m in chat.messages if m.id == message_id), None)
            if message is None:
                raise NotFoundError("Message not found")
            if message.role != Role.ASSISTANT:
                raise ValidationError("Feedback can only be left on assistant messages")

            message.feedback = feedback
            chat.touch()
            with storage_errors("save feedback"):
                await self.repository.update_chat(chat)

        logger.info(
            "feedback_recorded",
            chat_id=chat_id,
            message_id=message_id,
            feedback=feedback.value if feedback else None,
        )
        return message

    async def _exchange(
        self,
        chat: Chat,
        text: str,
        images: List[ImageRef],
        timeout: Optional[float],
        is_new: bool,
    ) -> SendResult:
        chat.append(Message(role=Role.USER, content=text, images=list(images)))

        reply = await self._generate_reply(chat, timeout)
        chat.append(Message(role=Role.ASSISTANT, content=reply))

        if self._needs_title(chat):
            chat.title = await self._infer_title(chat.messages[0].content, timeout)
            chat.title_source = TitleSource.GENERATED

        if is_new:
            with storage_errors("create chat"):
                saved = await self.repository.create_chat(chat)
        else:
            with storage_errors("save messages"):
                saved = await self.repository.update_chat(chat)

        logger.info(
            "message_processed",
            chat_id=saved.id,
            new_chat=is_new,
            message_count=len(saved.messages),
            user_message_length=len(text),
            ai_response_length=len(reply),
        )
        return SendResult(reply=reply, chat=saved)

    async def _generate_reply(self, chat: Chat, timeout: Optional[float]) -> str:
        timeout = timeout or self.settings.generation_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.gateway.generate_reply(list(chat.messages)), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error("reply_generation_timeout", chat_id=chat.id, timeout=timeout)
            raise GenerationError("Timed out while generating a response")
        except Exception as e:
            if is_rate_limit_error(e):
                raise self._rate_limited(chat) from e
            logger.error("reply_generation_failed", chat_id=chat.id, error=str(e))
            raise GenerationError("Failed to generate response") from e

        if getattr(result, "is_rate_limited", False) or (
            isinstance(result, Mapping) and result.get("isRateLimited")
        ):
            raise self._rate_limited(chat)

        text = (extract_reply_text(result) or "").strip()
        if not text:
            logger.error("reply_generation_empty", chat_id=chat.id)
            raise GenerationError("Failed to generate response")
        return text

    def _rate_limited(self, chat: Chat) -> RateLimitedError:
        retry_after = self.settings.rate_limit_retry_after_seconds
        logger.warning("generation_rate_limited", chat_id=chat.id, retry_after=retry_after)
        return RateLimitedError(QUOTA_MESSAGE, retry_after=retry_after)

    @staticmethod
    def _needs_title(chat: Chat) -> bool:
        return (
            len(chat.messages) == 2
            and chat.messages[0].role == Role.USER
            and chat.messages[1].role == Role.ASSISTANT
            and chat.title_source in AUTO_TITLE_SOURCES
        )

    async def _infer_title(self, seed: str, timeout: Optional[float]) -> str:
        timeout = timeout or self.settings.generation_timeout_seconds
        try:
            title = await asyncio.wait_for(infer_title(self.gateway, seed), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("title_generation_timeout", timeout=timeout)
            title = fallback_title(seed)
        return title or DEFAULT_TITLE
