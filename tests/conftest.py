"""Shared fixtures: a scripted generation gateway and wired services."""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from aelyra_chat.api.app import create_app
from aelyra_chat.config import Settings
from aelyra_chat.domain.models import Message
from aelyra_chat.repositories.memory import InMemoryChatRepository
from aelyra_chat.services.chat_manager import ChatLifecycleManager
from aelyra_chat.services.history import HistoryQueryService
from aelyra_chat.services.llm import GenerationGateway, ReplyResult, TitleResult

OWNER = "owner-1"
OTHER_OWNER = "owner-2"
DEFAULT_REPLY = "Sure, happy to help."
DEFAULT_TITLE_SUGGESTION = "Friendly Greeting"


class FakeGateway(GenerationGateway):
    """Gateway returning scripted outcomes.

    Queued outcomes are consumed one per call; an ``Exception`` instance is
    raised, a string becomes a successful result, anything else is returned
    as is. With ``echo`` set, replies repeat the last user message.
    """

    def __init__(self) -> None:
        self.replies: List[object] = []
        self.titles: List[object] = []
        self.reply_calls: List[List[str]] = []
        self.title_calls: List[str] = []
        self.reply_delay: float = 0.0
        self.echo = False

    async def generate_reply(self, messages: List[Message]) -> ReplyResult:
        self.reply_calls.append([m.content for m in messages])
        if self.reply_delay:
            await asyncio.sleep(self.reply_delay)
        if self.replies:
            outcome = self.replies.pop(0)
        elif self.echo:
            outcome = f"echo: {messages[-1].content}"
        else:
            outcome = DEFAULT_REPLY
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return ReplyResult(success=True, text=outcome)
        return outcome

    async def generate_title(self, seed: str) -> TitleResult:
        self.title_calls.append(seed)
        outcome = self.titles.pop(0) if self.titles else DEFAULT_TITLE_SUGGESTION
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return TitleResult(success=True, title=outcome)
        return outcome


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gemini_api_key=None,
        frontend_url="https://chat.example.com",
        generation_timeout_seconds=5,
        log_level="WARNING",
    )


@pytest.fixture
def repository() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def manager(repository, gateway, settings) -> ChatLifecycleManager:
    return ChatLifecycleManager(repository, gateway, settings)


@pytest.fixture
def sharing(manager):
    return manager.sharing


@pytest.fixture
def history(repository, settings) -> HistoryQueryService:
    return HistoryQueryService(repository, settings)


@pytest.fixture
def app(settings, repository, gateway):
    return create_app(settings=settings, repository=repository, gateway=gateway)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Owner-Id": OWNER},
    ) as client:
        yield client


async def start_chat(manager: ChatLifecycleManager, text: str, owner: Optional[str] = OWNER):
    """Create a chat through its first exchange and return it."""
    result = await manager.send_message(owner, None, text)
    return result.chat
