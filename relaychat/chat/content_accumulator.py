"""
Content Accumulator

Folds streamed content deltas into an ordered list of well-formed content
parts. Consecutive text deltas extend one text part and consecutive thinking
deltas with the same signature extend one thinking block, so the resulting
list is stable regardless of how the provider chunked its output.
"""

from __future__ import annotations

from .models import (
    ContentPart,
    ImagePart,
    RedactedThinkingPart,
    TextPart,
    ThinkingDelta,
    ThinkingPart,
    VideoPart,
)


class ContentAccumulator:
    """Accumulates the content parts of a single assistant round."""

    def __init__(self) -> None:
        self._parts: list[ContentPart] = []

    def append_text(self, text: str) -> None:
        if not text:
            return

        if self._parts and isinstance(self._parts[-1], TextPart):
            last = self._parts[-1]
            self._parts[-1] = TextPart(text=last.text + text)
        else:
            self._parts.append(TextPart(text=text))

    def append_thinking(self, delta: ThinkingDelta) -> None:
        """
        Apply one thinking delta.

        Rules, in order:
        1. Redacted payloads always become their own block.
        2. An empty-text delta carrying a signature back-fills the signature
           of the trailing thinking block.
        3. Text with a signature equal to the trailing block's signature
           extends that block (``None`` equals ``None``).
        4. Anything else starts a new thinking block.
        """
        if delta.is_redacted:
            self._parts.append(RedactedThinkingPart(data=delta.redacted_data or ""))
            return

        last = self._parts[-1] if self._parts else None

        if not delta.text:
            if delta.signature is not None and isinstance(last, ThinkingPart):
                self._parts[-1] = ThinkingPart(text=last.text, signature=delta.signature)
            return

        if isinstance(last, ThinkingPart) and last.signature == delta.signature:
            self._parts[-1] = ThinkingPart(text=last.text + delta.text, signature=last.signature)
            return

        self._parts.append(ThinkingPart(text=delta.text, signature=delta.signature))

    def append_image(self, image: ImagePart) -> None:
        self._parts.append(image)

    def append_video(self, video: VideoPart) -> None:
        self._parts.append(video)

    def append_part(self, part: ContentPart) -> None:
        """Route an arbitrary content part to the matching append rule."""
        if isinstance(part, TextPart):
            self.append_text(part.text)
        elif isinstance(part, ThinkingPart):
            self.append_thinking(ThinkingDelta(text=part.text, signature=part.signature))
        elif isinstance(part, RedactedThinkingPart):
            self.append_thinking(ThinkingDelta.redacted(part.data))
        elif isinstance(part, ImagePart):
            self.append_image(part)
        elif isinstance(part, VideoPart):
            self.append_video(part)

    def parts(self) -> list[ContentPart]:
        return list(self._parts)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self._parts if isinstance(p, TextPart))

    @property
    def thinking_text(self) -> str:
        return "".join(p.text for p in self._parts if isinstance(p, ThinkingPart))

    @property
    def is_empty(self) -> bool:
        return not self._parts
