"""
Streaming Session Registry

Process-wide record of which conversations currently have a turn in flight.
At most one session exists per conversation; the registry owns the handle to
the turn's task so any caller can request cancellation, and it fans out live
snapshots to subscribed observers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .models import StreamingSnapshot

logger = logging.getLogger(__name__)

SessionObserver = Callable[[str, StreamingSnapshot | None], None]


@dataclass
class StreamingSession:
    conversation_id: str
    model_label: str | None = None
    started_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = None
    cancel_requested: bool = False
    snapshot: StreamingSnapshot | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_requested


class StreamingSessionRegistry:
    """Tracks active streaming sessions keyed by conversation id."""

    def __init__(self) -> None:
        self._sessions: dict[str, StreamingSession] = {}
        self._observers: list[SessionObserver] = []

    def begin(self, conversation_id: str, model_label: str | None = None) -> StreamingSession | None:
        """
        Open a session for a conversation.

        Returns ``None`` without touching the registry when the conversation
        already has an active session.
        """
        if conversation_id in self._sessions:
            logger.warning("Conversation %s is already streaming; ignoring new turn", conversation_id)
            return None

        session = StreamingSession(conversation_id=conversation_id, model_label=model_label)
        self._sessions[conversation_id] = session
        logger.info("→ Session: started for conversation %s (model=%s)", conversation_id, model_label)
        return session

    def attach(self, task: asyncio.Task, conversation_id: str) -> None:
        session = self._sessions.get(conversation_id)
        if session is None:
            logger.warning("No active session for conversation %s; task not attached", conversation_id)
            return
        session.task = task

    def cancel(self, conversation_id: str) -> bool:
        """Request cancellation of the conversation's turn. Does not wait for it to stop."""
        session = self._sessions.get(conversation_id)
        if session is None:
            return False

        session.cancel_requested = True
        if session.task is not None and not session.task.done():
            session.task.cancel()
        logger.info("→ Session: cancellation requested for conversation %s", conversation_id)
        return True

    def end(self, conversation_id: str, session: StreamingSession | None = None) -> None:
        """
        Remove the conversation's session.

        When ``session`` is given, only that exact session is removed so a
        finishing turn never ends a newer one.
        """
        current = self._sessions.get(conversation_id)
        if current is None:
            return
        if session is not None and current is not session:
            return

        del self._sessions[conversation_id]
        logger.info("← Session: ended for conversation %s", conversation_id)
        self._notify(conversation_id, None)

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def session(self, conversation_id: str) -> StreamingSession | None:
        return self._sessions.get(conversation_id)

    def snapshot(self, conversation_id: str) -> StreamingSnapshot | None:
        session = self._sessions.get(conversation_id)
        return session.snapshot if session else None

    def active_conversations(self) -> list[str]:
        return list(self._sessions)

    def publish(self, conversation_id: str, snapshot: StreamingSnapshot) -> None:
        session = self._sessions.get(conversation_id)
        if session is None:
            return
        session.snapshot = snapshot
        self._notify(conversation_id, snapshot)

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        if observer not in self._observers:
            self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, conversation_id: str, snapshot: StreamingSnapshot | None) -> None:
        for observer in list(self._observers):
            try:
                observer(conversation_id, snapshot)
            except Exception as e:
                logger.error("Error in session observer: %s", e)


def consume_cancel_request() -> None:
    """Clear a pending ``Task.cancel()`` issued by the registry for the current task."""
    task = asyncio.current_task()
    if task is not None:
        while task.cancelling():
            task.uncancel()
