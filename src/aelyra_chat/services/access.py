"""Ownership guard and store error mapping used by every chat write path."""

import contextlib
from typing import Iterator

import structlog

from ..domain.errors import ConflictError, NotFoundError, StorageError
from ..domain.models import Chat
from ..repositories.base import ChatRepository, RepositoryError, StaleChatError

logger = structlog.get_logger()

CHAT_NOT_FOUND = "Chat not found"


@contextlib.contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Translate repository failures into service errors."""
    try:
        yield
    except StaleChatError as e:
        logger.warning("chat_write_conflict", action=action, error=str(e))
        raise ConflictError("Chat was modified by another request, try again") from e
    except RepositoryError as e:
        logger.error("storage_error", action=action, error=str(e))
        raise StorageError(f"Failed to {action}") from e


async def require_owned_chat(repository: ChatRepository, owner_id: str, chat_id: str) -> Chat:
    """Load a chat the caller owns.

    Missing and foreign chats raise the same ``NotFoundError``.
    """
    with storage_errors("load chat"):
        chat = await repository.get_chat(chat_id)
    if chat is None or chat.owner_id != owner_id:
        logger.info("chat_access_denied", chat_id=chat_id, found=chat is not None)
        raise NotFoundError(CHAT_NOT_FOUND)
    return chat
