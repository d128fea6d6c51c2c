"""Tests for the share lifecycle."""

from datetime import timedelta

import pytest

from aelyra_chat.domain.errors import NotFoundError, StorageError
from aelyra_chat.domain.models import Sharing, utcnow
from aelyra_chat.services import sharing as sharing_module
from aelyra_chat.services.chat_manager import ChatLifecycleManager

from conftest import OTHER_OWNER, OWNER, start_chat


async def expire(repository, chat_id, days_ago=1):
    """Move a chat's share window into the past."""
    chat = await repository.get_chat(chat_id)
    chat.sharing = Sharing(
        token=chat.sharing.token,
        expires_at=utcnow() - timedelta(days=days_ago),
        is_shared=True,
    )
    return await repository.update_chat(chat)


class TestShare:
    @pytest.mark.asyncio
    async def test_issues_token_url_and_expiry(self, manager, sharing, settings):
        chat = await start_chat(manager, "Hello there")
        before = utcnow()

        link = await sharing.share(OWNER, chat.id)

        assert len(link.token) >= 22
        assert link.url == f"{settings.frontend_url}/share/{link.token}"
        window = link.expires_at - before
        assert timedelta(days=29, hours=23) < window <= timedelta(days=30, seconds=5)

    @pytest.mark.asyncio
    async def test_tokens_are_unique_per_share(self, manager, sharing):
        first = await sharing.share(OWNER, (await start_chat(manager, "a")).id)
        second = await sharing.share(OWNER, (await start_chat(manager, "b")).id)
        assert first.token != second.token

    @pytest.mark.asyncio
    async def test_round_trip_matches_owner_view(self, manager, sharing):
        chat = await start_chat(manager, "Hello there")
        link = await sharing.share(OWNER, chat.id)

        public = await sharing.get_shared_chat(link.token)
        owned = await manager.get_chat(OWNER, chat.id)

        assert public.id == owned.id
        assert public.title == owned.title
        assert public.messages == owned.messages

    @pytest.mark.asyncio
    async def test_foreign_chat_cannot_be_shared(self, manager, sharing):
        chat = await start_chat(manager, "Hello there", owner=OTHER_OWNER)
        with pytest.raises(NotFoundError):
            await sharing.share(OWNER, chat.id)

    @pytest.mark.asyncio
    async def test_token_collision_is_retried(self, manager, sharing, monkeypatch):
        taken = await sharing.share(OWNER, (await start_chat(manager, "a")).id)
        tokens = iter([taken.token, "fresh-token"])
        monkeypatch.setattr(sharing_module, "generate_share_token", lambda: next(tokens))

        link = await sharing.share(OWNER, (await start_chat(manager, "b")).id)

        assert link.token == "fresh-token"
        assert (await sharing.get_shared_chat(taken.token)).title

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_collisions(self, manager, sharing, monkeypatch):
        taken = await sharing.share(OWNER, (await start_chat(manager, "a")).id)
        monkeypatch.setattr(sharing_module, "generate_share_token", lambda: taken.token)

        with pytest.raises(StorageError):
            await sharing.share(OWNER, (await start_chat(manager, "b")).id)


class TestUnshare:
    @pytest.mark.asyncio
    async def test_unshare_is_idempotent(self, manager, sharing, repository):
        chat = await start_chat(manager, "Hello there")
        link = await sharing.share(OWNER, chat.id)

        first = await sharing.unshare(OWNER, chat.id)
        second = await sharing.unshare(OWNER, chat.id)

        assert first.sharing is None
        assert second.sharing is None
        assert (await repository.get_chat(chat.id)).sharing is None
        with pytest.raises(NotFoundError):
            await sharing.get_shared_chat(link.token)

    @pytest.mark.asyncio
    async def test_unshare_private_chat_is_noop(self, manager, sharing):
        chat = await start_chat(manager, "Hello there")
        result = await sharing.unshare(OWNER, chat.id)
        assert result.sharing is None
        assert result.version == chat.version


class TestSharedAccess:
    @pytest.mark.asyncio
    async def test_expired_and_unknown_tokens_look_identical(self, manager, sharing, repository):
        chat = await start_chat(manager, "Hello there")
        link = await sharing.share(OWNER, chat.id)
        await expire(repository, chat.id)

        with pytest.raises(NotFoundError) as expired:
            await sharing.get_shared_chat(link.token)
        with pytest.raises(NotFoundError) as unknown:
            await sharing.get_shared_chat("never-issued")

        assert expired.value.message == unknown.value.message
        assert expired.value.code == unknown.value.code

    @pytest.mark.asyncio
    async def test_empty_token_is_not_found(self, sharing):
        with pytest.raises(NotFoundError):
            await sharing.get_shared_chat("")


class TestSweep:
    @pytest.mark.asyncio
    async def test_deletes_whole_expired_chats(self, manager, sharing, repository):
        expired_chat = await start_chat(manager, "old")
        await sharing.share(OWNER, expired_chat.id)
        await expire(repository, expired_chat.id)

        active_chat = await start_chat(manager, "current")
        await sharing.share(OWNER, active_chat.id)
        private_chat = await start_chat(manager, "private")

        assert await sharing.sweep_expired_shares() == 1

        assert await repository.get_chat(expired_chat.id) is None
        assert await repository.get_chat(active_chat.id) is not None
        assert await repository.get_chat(private_chat.id) is not None

    @pytest.mark.asyncio
    async def test_expire_policy_keeps_chat(self, repository, gateway, settings):
        settings.sweep_policy = "expire"
        manager = ChatLifecycleManager(repository, gateway, settings)
        chat = await start_chat(manager, "old")
        link = await manager.sharing.share(OWNER, chat.id)
        await expire(repository, chat.id)

        assert await manager.sharing.sweep_expired_shares() == 1

        kept = await repository.get_chat(chat.id)
        assert kept is not None
        assert kept.sharing is None
        assert await repository.find_by_share_token(link.token) is None

    @pytest.mark.asyncio
    async def test_sweep_with_nothing_expired(self, sharing):
        assert await sharing.sweep_expired_shares() == 0
