"""Tests for the Gemini generation gateway with a stubbed model."""

from types import SimpleNamespace

import pytest
from google.api_core import exceptions

from aelyra_chat.domain.models import Message, Role
from aelyra_chat.services.llm import GeminiGateway, is_rate_limit_error


class StubChat:
    def __init__(self, model, history):
        self.model = model
        self.history = history

    async def send_message_async(self, prompt, generation_config=None):
        self.model.prompts.append(prompt)
        if isinstance(self.model.outcome, Exception):
            raise self.model.outcome
        return SimpleNamespace(text=self.model.outcome)


class StubModel:
    def __init__(self, outcome):
        self.outcome = outcome
        self.histories = []
        self.prompts = []

    def start_chat(self, history):
        self.histories.append(history)
        return StubChat(self, history)

    async def generate_content_async(self, prompt, generation_config=None):
        self.prompts.append(prompt)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return SimpleNamespace(text=self.outcome)


def gateway_with(settings, outcome) -> GeminiGateway:
    gateway = GeminiGateway(settings)
    gateway._model = StubModel(outcome)
    return gateway


def conversation():
    return [
        Message(role=Role.USER, content="What is 2 + 2?"),
        Message(role=Role.ASSISTANT, content="4"),
        Message(role=Role.USER, content="   "),
        Message(role=Role.USER, content=" And doubled? "),
    ]


@pytest.mark.asyncio
async def test_reply_maps_history_and_prompt(settings):
    gateway = gateway_with(settings, "  Eight.  ")

    result = await gateway.generate_reply(conversation())

    assert result.success is True
    assert result.text == "Eight."
    model = gateway.model
    assert model.histories == [
        [
            {"role": "user", "parts": ["What is 2 + 2?"]},
            {"role": "model", "parts": ["4"]},
        ]
    ]
    assert model.prompts == ["And doubled?"]


@pytest.mark.asyncio
async def test_quota_exhaustion_is_flagged(settings):
    gateway = gateway_with(settings, exceptions.ResourceExhausted("Quota exceeded"))

    result = await gateway.generate_reply(conversation())

    assert result.success is False
    assert result.is_rate_limited is True


@pytest.mark.asyncio
async def test_other_errors_are_not_rate_limits(settings):
    gateway = gateway_with(settings, exceptions.InternalServerError("backend error"))

    result = await gateway.generate_reply(conversation())

    assert result.success is False
    assert result.is_rate_limited is False


@pytest.mark.asyncio
async def test_empty_reply_is_failure(settings):
    result = await gateway_with(settings, "").generate_reply(conversation())
    assert result.success is False


@pytest.mark.asyncio
async def test_no_usable_messages(settings):
    gateway = gateway_with(settings, "unused")
    result = await gateway.generate_reply([Message(role=Role.USER, content=" ")])
    assert result.success is False
    assert gateway.model.prompts == []


@pytest.mark.asyncio
async def test_title_prompt_uses_seed_prefix(settings):
    gateway = gateway_with(settings, "Doubling Numbers")
    seed = "x" * 300

    result = await gateway.generate_title(seed)

    assert result.success is True
    assert result.title == "Doubling Numbers"
    assert "x" * 200 in gateway.model.prompts[0]
    assert "x" * 201 not in gateway.model.prompts[0]


@pytest.mark.asyncio
async def test_title_failure_does_not_raise(settings):
    gateway = gateway_with(settings, RuntimeError("offline"))
    result = await gateway.generate_title("hello")
    assert result.success is False


@pytest.mark.parametrize(
    "error,expected",
    [
        (exceptions.ResourceExhausted("quota"), True),
        (exceptions.TooManyRequests("slow down"), True),
        (RuntimeError("[429 Too Many Requests] quota"), True),
        (RuntimeError("connection reset"), False),
        (RuntimeError("request 7f84291c failed"), False),
        (RuntimeError("upstream returned 4290 bytes"), False),
    ],
)
def test_is_rate_limit_error(error, expected):
    assert is_rate_limit_error(error) is expected
