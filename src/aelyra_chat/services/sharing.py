"""Public sharing of chats: token issuance, expiry, revocation and sweep."""

import secrets
from datetime import timedelta
from typing import Tuple

import structlog

from ..config import Settings
from ..domain.errors import NotFoundError, StorageError
from ..domain.models import Chat, ShareLink, Sharing, utcnow
from ..repositories.base import ChatRepository, DuplicateShareTokenError
from .access import require_owned_chat, storage_errors
from .chat_lease import ChatLeaseManager

logger = structlog.get_logger()

TOKEN_BYTES = 16
SHARED_CHAT_NOT_FOUND = "Shared chat not found"


def generate_share_token() -> str:
    """URL-safe token carrying 128 bits of entropy."""
    return secrets.token_urlsafe(TOKEN_BYTES)


class ShareService:
    """Issues, revokes and resolves share tokens."""

    def __init__(
        self,
        repository: ChatRepository,
        settings: Settings,
        leases: ChatLeaseManager,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.leases = leases

    def link_for(self, sharing: Sharing) -> ShareLink:
        """Public link for a chat's sharing state."""
        base = self.settings.frontend_url.rstrip("/")
        return ShareLink(
            token=sharing.token,
            url=f"{base}/share/{sharing.token}",
            expires_at=sharing.expires_at,
        )

    async def issue(self, chat: Chat) -> Tuple[Chat, ShareLink]:
        """Attach a fresh share token to ``chat`` and persist it.

        The caller must hold the chat's lease. Token collisions are retried
        with a new token.
        """
        ttl = timedelta(days=self.settings.share_ttl_days)
        for attempt in range(1, self.settings.share_token_attempts + 1):
            chat.sharing = Sharing(
                token=generate_share_token(),
                expires_at=utcnow() + ttl,
                is_shared=True,
            )
            chat.touch()
            with storage_errors("share chat"):
                try:
                    saved = await self.repository.update_chat(chat)
                except DuplicateShareTokenError:
                    logger.warning("share_token_retry", chat_id=chat.id, attempt=attempt)
                    continue
            logger.info("chat_shared", chat_id=chat.id, expires_at=saved.sharing.expires_at.isoformat())
            return saved, self.link_for(saved.sharing)

        raise StorageError("Could not allocate a unique share token")

    async def revoke(self, chat: Chat) -> Chat:
        """Clear sharing state; the caller must hold the chat's lease."""
        if chat.sharing is None:
            return chat
        chat.sharing = None
        chat.touch()
        with storage_errors("unshare chat"):
            saved = await self.repository.update_chat(chat)
        logger.info("chat_unshared", chat_id=chat.id)
        return saved

    async def share(self, owner_id: str, chat_id: str) -> ShareLink:
        """Share an owned chat, issuing a fresh token and expiry."""
        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)
            _, link = await self.issue(chat)
            return link

    async def unshare(self, owner_id: str, chat_id: str) -> Chat:
        """Make a chat private again. Unsharing a private chat is a no-op."""
        async with self.leases.acquire(chat_id):
            chat = await require_owned_chat(self.repository, owner_id, chat_id)
            return await self.revoke(chat)

    async def get_shared_chat(self, token: str) -> Chat:
        """Resolve a public token.

        Expired, revoked and never-issued tokens are indistinguishable.
        """
        chat = None
        if token:
            with storage_errors("load shared chat"):
                chat = await self.repository.find_by_share_token(token)
        if chat is None or chat.sharing is None or not chat.sharing.is_active(utcnow()):
            raise NotFoundError(SHARED_CHAT_NOT_FOUND)
        return chat

    async def sweep_expired_shares(self) -> int:
        """Apply the configured policy to chats whose share window has passed.

        ``delete`` removes the whole chat; ``expire`` only drops its sharing
        state. Returns the number of chats affected.
        """
        now = utcnow()
        with storage_errors("sweep expired shares"):
            if self.settings.sweep_policy == "expire":
                count = await self.repository.clear_expired_shares(now)
            else:
                count = await self.repository.delete_expired_shares(now)
        logger.info("expired_shares_swept", policy=self.settings.sweep_policy, count=count)
        return count
