"""Progress events for provisioning runs.

Every run owns one ``EventChannel``. Late subscribers first receive the
buffered history, then live events until the channel closes. Slow
subscribers lose their oldest queued events instead of blocking the run.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

log = structlog.get_logger()

OUTPUT_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ProgressEvent:
    """One observable step outcome or status message."""

    step: str
    message: str
    success: bool = True
    output: str | None = None
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "message": self.message,
            "success": self.success,
            "output": self.output,
            "at": self.at.isoformat(),
        }


def truncate_output(output: str | None, limit: int = OUTPUT_LIMIT) -> str | None:
    if output is None:
        return None
    return output if len(output) <= limit else output[:limit]


class EventChannel:
    """Bounded, replayable fan-out of ``ProgressEvent`` values."""

    def __init__(self, *, history: int = 200, queue_size: int = 100) -> None:
        self._history: deque[ProgressEvent] = deque(maxlen=history)
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[ProgressEvent | None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def history(self) -> list[ProgressEvent]:
        return list(self._history)

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            log.debug("event_after_close", step=event.step)
            return
        self._history.append(event)
        for queue in self._subscribers:
            self._offer(queue, event)

    def close(self) -> None:
        """Stop the channel; subscribers drain and then finish."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            self._offer(queue, None)

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """Yield buffered history, then live events until ``close``."""
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=self._queue_size)
        for event in self._history:
            self._offer(queue, event)
        if self._closed:
            self._offer(queue, None)
        self._subscribers.add(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._subscribers.discard(queue)

    @staticmethod
    def _offer(queue: asyncio.Queue[ProgressEvent | None], event: ProgressEvent | None) -> None:
        while True:
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                # Drop the oldest event to make room
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
