"""
UI Flush Throttler

Rate-limits how often a live snapshot of the streaming state is published.
Accumulation itself is never throttled: every delta is applied immediately
and only the publication of the accumulated state is spaced out. The
interval grows with the volume already streamed, since re-rendering a long
answer is more expensive than a short one.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .models import StreamingSnapshot

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS_MS: tuple[int, ...] = (80, 100, 120)
DEFAULT_THRESHOLDS: tuple[int, ...] = (4000, 12000)

SnapshotPublisher = Callable[[StreamingSnapshot], Awaitable[None] | None]


class FlushThrottler:
    def __init__(
        self,
        snapshot: Callable[[], StreamingSnapshot],
        publish: SnapshotPublisher,
        *,
        intervals_ms: Sequence[int] = DEFAULT_INTERVALS_MS,
        thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if len(intervals_ms) != len(thresholds) + 1:
            raise ValueError("intervals_ms must have exactly one more entry than thresholds")

        self._snapshot = snapshot
        self._publish = publish
        self._intervals_ms = tuple(intervals_ms)
        self._thresholds = tuple(thresholds)
        self._clock = clock

        self._streamed_characters = 0
        self._dirty = False
        self._last_flush: float | None = None
        self.flush_count = 0

    @classmethod
    def from_config(
        cls,
        snapshot: Callable[[], StreamingSnapshot],
        publish: SnapshotPublisher,
        flush_config: dict[str, Any],
        clock: Callable[[], float] = time.monotonic,
    ) -> FlushThrottler:
        return cls(
            snapshot,
            publish,
            intervals_ms=flush_config.get("intervals_ms", DEFAULT_INTERVALS_MS),
            thresholds=flush_config.get("thresholds", DEFAULT_THRESHOLDS),
            clock=clock,
        )

    @property
    def streamed_characters(self) -> int:
        return self._streamed_characters

    def record(self, characters: int = 0) -> None:
        """Note that state changed, adding any newly streamed text or thinking characters."""
        self._streamed_characters += max(characters, 0)
        self._dirty = True

    def interval(self) -> float:
        """Current minimum spacing between flushes, in seconds."""
        for threshold, interval_ms in zip(self._thresholds, self._intervals_ms, strict=False):
            if self._streamed_characters < threshold:
                return interval_ms / 1000.0
        return self._intervals_ms[-1] / 1000.0

    async def maybe_flush(self, force: bool = False) -> bool:
        """
        Publish a snapshot if due.

        Unforced flushes are skipped when nothing changed since the previous
        one or when the interval has not elapsed. A forced flush always
        publishes.
        """
        now = self._clock()
        if not force:
            if not self._dirty:
                return False
            if self._last_flush is not None and now - self._last_flush < self.interval():
                return False

        result = self._publish(self._snapshot())
        if inspect.isawaitable(result):
            await result

        self._dirty = False
        self._last_flush = now
        self.flush_count += 1
        logger.debug(
            "→ UI: published snapshot #%d (%d chars streamed, forced=%s)",
            self.flush_count,
            self._streamed_characters,
            force,
        )
        return True

    async def flush(self) -> None:
        await self.maybe_flush(force=True)
