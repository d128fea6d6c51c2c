"""Generation gateway: assistant replies and chat titles from Gemini."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import Settings
from ..domain.models import Message, Role

logger = structlog.get_logger()

_HTTP_429 = re.compile(r"\b429\b")

TITLE_SEED_CHARS = 200


@dataclass
class ReplyResult:
    """Outcome of a reply generation."""

    success: bool
    text: Optional[str] = None
    error: Optional[str] = None
    is_rate_limited: bool = False


@dataclass
class TitleResult:
    """Outcome of a title generation."""

    success: bool
    title: Optional[str] = None
    error: Optional[str] = None


class GenerationGateway(ABC):
    """Produces assistant replies and title suggestions."""

    @abstractmethod
    async def generate_reply(self, messages: List[Message]) -> ReplyResult:
        """Generate the next assistant turn for an ordered message list."""
        pass

    @abstractmethod
    async def generate_title(self, seed: str) -> TitleResult:
        """Suggest a short title for a conversation starting with ``seed``."""
        pass


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether a provider error signals quota or throughput exhaustion."""
    if isinstance(error, (exceptions.ResourceExhausted, exceptions.TooManyRequests)):
        return True
    if getattr(error, "code", None) == 429 or getattr(error, "status", None) == 429:
        return True
    return _HTTP_429.search(str(error)) is not None


class GeminiGateway(GenerationGateway):
    """Gateway backed by Google's Gemini models."""

    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.gemini_api_key:
            genai.configure(api_key=settings.gemini_api_key)
        else:
            logger.warning("gemini_api_key_missing")
        self._model: Optional[Any] = None
        logger.info("llm_service_init", model=settings.gemini_model)

    @property
    def model(self) -> Any:
        if self._model is None:
            self._model = genai.GenerativeModel(self.settings.gemini_model)
        return self._model

    @staticmethod
    def _to_history(messages: List[Message]) -> List[Dict[str, Any]]:
        return [
            {
                "role": "user" if msg.role == Role.USER else "model",
                "parts": [msg.content.strip()],
            }
            for msg in messages
        ]

    async def generate_reply(self, messages: List[Message]) -> ReplyResult:
        valid = [msg for msg in messages if msg.content and msg.content.strip()]
        if not valid:
            return ReplyResult(success=False, error="No non-empty messages to answer")

        history = self._to_history(valid[:-1])
        prompt = valid[-1].content.strip()

        try:
            chat = self.model.start_chat(history=history)
            response = await chat.send_message_async(
                prompt,
                generation_config=genai.GenerationConfig(
                    temperature=self.settings.gemini_temperature,
                    max_output_tokens=self.settings.gemini_max_tokens,
                ),
            )
            text = (response.text or "").strip()
        except Exception as e:
            rate_limited = is_rate_limit_error(e)
            logger.error(
                "response_generation_error",
                error=str(e),
                rate_limited=rate_limited,
            )
            return ReplyResult(success=False, error=str(e), is_rate_limited=rate_limited)

        if not text:
            return ReplyResult(success=False, error="Empty response from Gemini")
        return ReplyResult(success=True, text=text)

    async def generate_title(self, seed: str) -> TitleResult:
        if not seed or not seed.strip():
            return TitleResult(success=False, error="Seed text is required")

        prompt = (
            "Generate a short, concise title (3-4 words maximum) for this "
            f'conversation starter: "{seed[:TITLE_SEED_CHARS]}"\n'
            "Return only the title, nothing else. Make it descriptive and relevant."
        )
        try:
            response = await self.model.generate_content_async(
                prompt,
                generation_config=genai.GenerationConfig(
                    temperature=self.settings.gemini_temperature,
                    max_output_tokens=self.settings.title_max_tokens,
                ),
            )
            title = (response.text or "").strip()
        except Exception as e:
            logger.error("title_generation_error", error=str(e))
            return TitleResult(success=False, error=str(e))

        if not title:
            return TitleResult(success=False, error="Empty title from Gemini")
        return TitleResult(success=True, title=title)
