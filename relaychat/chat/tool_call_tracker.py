"""
Tool Call Tracker

Merges repeated announcements of the same tool call (start, end, provider
re-sends) into one record per call id while keeping first-seen order.
"""

from __future__ import annotations

from .models import ToolCall


class ToolCallTracker:
    def __init__(self) -> None:
        self._calls: dict[str, ToolCall] = {}
        self._order: list[str] = []

    def upsert(self, call: ToolCall) -> ToolCall:
        """
        Record a tool call announcement and return the merged call.

        Later announcements merge arguments (newer wins per key), keep the
        existing name unless the newer one is non-empty, and take the newer
        signature when present.
        """
        existing = self._calls.get(call.id)
        if existing is None:
            merged = call.model_copy(deep=True)
            self._order.append(call.id)
        else:
            merged = ToolCall(
                id=existing.id,
                name=call.name or existing.name,
                arguments={**existing.arguments, **call.arguments},
                signature=call.signature if call.signature is not None else existing.signature,
            )

        self._calls[call.id] = merged
        return merged

    def calls(self) -> list[ToolCall]:
        return [self._calls[call_id] for call_id in self._order]

    def get(self, call_id: str) -> ToolCall | None:
        return self._calls.get(call_id)

    def __len__(self) -> int:
        return len(self._order)

    def __bool__(self) -> bool:
        return bool(self._order)
