"""Chat title inference with a deterministic fallback."""

import re

import structlog

from ..domain.models import DEFAULT_TITLE
from .llm import GenerationGateway

logger = structlog.get_logger()

GENERATED_TITLE_LENGTH = 50
PROVISIONAL_TITLE_LENGTH = 50
FALLBACK_WORDS = 4

_EDGE_QUOTES = re.compile(r"^[\"']|[\"']$")
_WHITESPACE = re.compile(r"\s+")


def fallback_title(seed: str) -> str:
    """First four words of ``seed``, or the default title."""
    words = (seed or "").split()[:FALLBACK_WORDS]
    return " ".join(words) or DEFAULT_TITLE


def provisional_title(text: str) -> str:
    return text.strip()[:PROVISIONAL_TITLE_LENGTH] or DEFAULT_TITLE


def clean_title(raw: str) -> str:
    """Strip edge quotes, collapse whitespace, cap the length."""
    title = _EDGE_QUOTES.sub("", (raw or "").strip())
    title = _WHITESPACE.sub(" ", title).strip()
    return title[:GENERATED_TITLE_LENGTH].strip()


async def infer_title(gateway: GenerationGateway, seed: str) -> str:
    """Ask the gateway for a title, falling back to the seed's first words."""
    try:
        result = await gateway.generate_title(seed)
    except Exception as e:
        logger.error("title_generation_failed", error=str(e))
        return fallback_title(seed)

    if not result.success or not result.title:
        logger.info("title_fallback_used", reason=result.error or "no_title")
        return fallback_title(seed)

    title = clean_title(result.title)
    if not title:
        logger.info("title_fallback_used", reason="empty_after_cleanup")
        return fallback_title(seed)
    return title
