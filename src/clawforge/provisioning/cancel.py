"""Cooperative cancellation for provisioning runs."""

from __future__ import annotations

import asyncio

from clawforge.errors import RunCancelledError


class CancelToken:
    """Cancellation flag checked by every polling loop of a run.

    ``sleep`` is the only way run code waits: it returns after the delay or
    raises ``RunCancelledError`` as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Provisioning cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "Provisioning cancelled")

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.raise_if_cancelled()
