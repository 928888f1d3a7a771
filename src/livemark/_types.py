"""Type definitions for livemark preview sessions.

Defines the per-file Session record, the Subscriber handle held by each
connected browser tab, and the messages pushed over the live-update stream.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class MessageType(str, Enum):
    """Kinds of messages delivered to subscribers."""

    RENDER = "render"
    ERROR = "error"
    CLOSED = "closed"


def render_message(html: str) -> dict[str, Any]:
    return {"type": MessageType.RENDER.value, "html": html}


def error_message(message: str) -> dict[str, Any]:
    return {"type": MessageType.ERROR.value, "message": message}


def closed_message() -> dict[str, Any]:
    return {"type": MessageType.CLOSED.value}


# ---------------------------------------------------------------------------
# Subscriber
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class Subscriber:
    """One live-update listener (a browser tab) attached to a session.

    Each subscriber owns an unbounded delivery queue, so a slow consumer
    never holds up delivery to the others.
    """

    session_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)

    async def get(self) -> dict[str, Any]:
        """Wait for the next message."""
        return await self.queue.get()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class Session:
    """Live state for one previewed file.

    ``last_rendered`` holds the most recent successful render (empty until
    the first one). ``last_error`` holds the failure reported since then, if
    any, so late joiners see it too. ``digest`` is the sha1 of the bytes last processed by
    the watch loop and is used to skip no-op writes. The watch task and its
    stop event form the session's watch handle; the registry owns their
    lifecycle.

    All subscriber bookkeeping happens under ``_lock`` so that a join, a
    push and a teardown can never interleave.
    """

    id: str
    path: Path
    last_rendered: str = ""
    last_error: str | None = None
    digest: str | None = None
    subscribers: set[Subscriber] = field(default_factory=set)
    closed: bool = False
    watch_task: asyncio.Task | None = field(default=None, repr=False)
    stop_event: asyncio.Event | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def subscribe(self) -> Subscriber:
        """Attach a new subscriber.

        The current render, if any, followed by the outstanding error, if
        any, is queued before the subscriber becomes visible to ``publish``,
        so it always arrives ahead of later pushes. Subscribing to a closed
        session yields an immediate closed signal.
        """
        subscriber = Subscriber(session_id=self.id)
        with self._lock:
            if self.closed:
                subscriber.queue.put_nowait(closed_message())
                return subscriber
            if self.last_rendered:
                subscriber.queue.put_nowait(render_message(self.last_rendered))
            if self.last_error is not None:
                subscriber.queue.put_nowait(error_message(self.last_error))
            self.subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self.subscribers.discard(subscriber)

    def publish(self, message: dict[str, Any]) -> int:
        """Queue a message for every current subscriber. Returns the fan-out."""
        with self._lock:
            if self.closed:
                return 0
            for subscriber in self.subscribers:
                subscriber.queue.put_nowait(message)
            return len(self.subscribers)

    def publish_render(self, html: str) -> int:
        """Store a new render and push it, atomically with respect to joins."""
        with self._lock:
            if self.closed:
                return 0
            self.last_rendered = html
            self.last_error = None
            message = render_message(html)
            for subscriber in self.subscribers:
                subscriber.queue.put_nowait(message)
            return len(self.subscribers)

    def publish_error(self, message: str) -> int:
        """Record a failure and push it; the last good render is kept."""
        with self._lock:
            if self.closed:
                return 0
            self.last_error = message
            payload = error_message(message)
            for subscriber in self.subscribers:
                subscriber.queue.put_nowait(payload)
            return len(self.subscribers)

    def close(self) -> None:
        """Send the terminal closed signal to every subscriber and detach them."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            subscribers = list(self.subscribers)
            self.subscribers.clear()
            for subscriber in subscribers:
                subscriber.queue.put_nowait(closed_message())

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self.subscribers)
