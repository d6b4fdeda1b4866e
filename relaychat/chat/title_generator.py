"""
Conversation title generation.

Asks a model for a short title summarizing the first exchange of a
conversation, and normalizes whatever comes back.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .models import ContentDelta, GenerationControls, ImagePart, Message, TextPart

if TYPE_CHECKING:
    from relaychat.clients.provider import ProviderConfig, ProviderManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_TITLE_CHARACTERS = 40
FALLBACK_TITLE_CHARACTERS = 48

_TITLE_PREFIXES = ("Title:", "标题:")
_QUOTE_PAIRS = (('"', '"'), ("“", "”"))


class TitleGenerationError(Exception):
    pass


def normalize_title(raw: str, max_characters: int = DEFAULT_MAX_TITLE_CHARACTERS) -> str:
    text = raw.strip()

    for opening, closing in _QUOTE_PAIRS:
        if len(text) >= 2 and text.startswith(opening) and text.endswith(closing):
            text = text[1:-1]

    lines = text.splitlines()
    text = lines[0] if lines else ""

    while text.startswith(_TITLE_PREFIXES):
        text = text.split(":", 1)[1].strip()

    text = re.sub(r"  +", " ", text).strip()
    if len(text) > max_characters:
        text = text[:max_characters].strip()
    return text


def fallback_title(message: Message, default: str) -> str:
    """Title derived from a user message when generation is unavailable."""
    for part in message.content:
        if isinstance(part, TextPart) and part.text.strip():
            first_line = part.text.strip().splitlines()[0].strip()
            return first_line[:FALLBACK_TITLE_CHARACTERS] if first_line else default
        if isinstance(part, ImagePart):
            return "Image"
    return default


def _render_context(messages: Sequence[Message]) -> str:
    lines: list[str] = []
    for message in messages:
        pieces: list[str] = []
        for part in message.content:
            if isinstance(part, TextPart) and part.text.strip():
                pieces.append(part.text.strip())
            elif isinstance(part, ImagePart):
                pieces.append("[image]")
        if pieces:
            lines.append(f"{message.role}: " + "\n".join(pieces))
    return "\n".join(lines)


class TitleGenerator:
    def __init__(self, provider_manager: ProviderManager) -> None:
        self.provider_manager = provider_manager

    async def generate_title(
        self,
        provider_config: ProviderConfig,
        model_id: str,
        context_messages: Sequence[Message],
        max_characters: int = DEFAULT_MAX_TITLE_CHARACTERS,
    ) -> str:
        context = [m for m in context_messages if m.content]
        if not context:
            raise TitleGenerationError("No context to generate title.")

        adapter = self.provider_manager.create_adapter(provider_config)
        instruction = (
            "Generate a concise chat title in the user's language.\n"
            "Rules:\n"
            "- Return title text only\n"
            "- No quotation marks\n"
            "- No emojis\n"
            "- Neutral and descriptive\n"
            f"- Max {max_characters} characters"
        )
        request = [
            Message.from_text("system", instruction),
            Message.from_text("user", _render_context(context)),
        ]

        logger.debug("→ LLM: requesting conversation title from %s", model_id)
        stream = await adapter.send_message(
            request,
            model_id,
            GenerationControls(temperature=0.2, max_tokens=64),
            [],
            streaming=False,
        )

        collected: list[str] = []
        async for event in stream:
            if isinstance(event, ContentDelta) and isinstance(event.part, TextPart):
                collected.append(event.part.text)

        title = normalize_title("".join(collected), max_characters)
        if not title:
            raise TitleGenerationError("Empty generated title.")
        return title
