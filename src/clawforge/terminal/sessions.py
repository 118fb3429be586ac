"""Keyed, idle-expiring remote sessions.

A ``SessionRegistry`` is created when the process starts and drained with
``close_all`` on shutdown. Sessions expire after ``ttl`` seconds without
access; ``get`` resets the clock. Expiry and an in-flight command race, so a
caller may find its session gone once the command returns.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from clawforge.config import settings
from clawforge.execution.base import CommandResult, RemoteExecutor

log = structlog.get_logger()

ExecutorFactory = Callable[[], Awaitable[RemoteExecutor]]


@dataclass
class RemoteSession:
    id: str
    executor: RemoteExecutor
    created_at: float
    last_used: float = field(default=0.0)

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        return await self.executor.execute(command, timeout=timeout)


class SessionRegistry:
    """Owns remote sessions and their idle expiry."""

    def __init__(
        self,
        *,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = float(settings.session_ttl_seconds if ttl is None else ttl)
        self._clock = clock
        self._sessions: dict[str, RemoteSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, session_id: str, factory: ExecutorFactory) -> RemoteSession:
        """Open a new executor for ``session_id``, replacing any existing session."""
        await self.close(session_id)
        executor = await factory()
        return await self.add(session_id, executor)

    async def add(self, session_id: str, executor: RemoteExecutor) -> RemoteSession:
        async with self._lock:
            previous = self._sessions.pop(session_id, None)
            now = self._clock()
            session = RemoteSession(session_id, executor, created_at=now, last_used=now)
            self._sessions[session_id] = session
        if previous is not None and previous.executor is not executor:
            await self._close_executor(previous)
        log.debug("session_added", session_id=session_id)
        return session

    def get(self, session_id: str) -> RemoteSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session):
            return None
        session.last_used = self._clock()
        return session

    async def close(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await self._close_executor(session)
        log.debug("session_closed", session_id=session_id)
        return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await asyncio.gather(*(self._close_executor(s) for s in sessions))
        if sessions:
            log.info("sessions_drained", count=len(sessions))

    def list(self) -> list[str]:
        return list(self._sessions)

    async def cleanup_owner(self, owner_id: str) -> int:
        """Close every session whose id is ``{owner_id}-...``."""
        prefix = f"{owner_id}-"
        ids = [sid for sid in self._sessions if sid.startswith(prefix)]
        for sid in ids:
            await self.close(sid)
        return len(ids)

    async def reap_expired(self) -> list[str]:
        expired = [sid for sid, s in self._sessions.items() if self._expired(s)]
        for sid in expired:
            await self.close(sid)
        if expired:
            log.info("sessions_expired", count=len(expired))
        return expired

    async def reap_loop(self, stop: asyncio.Event, interval: float | None = None) -> None:
        """Reap expired sessions until ``stop`` is set."""
        interval = settings.session_reap_interval_seconds if interval is None else interval
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                await self.reap_expired()

    def _expired(self, session: RemoteSession) -> bool:
        return self._clock() - session.last_used >= self.ttl

    @staticmethod
    async def _close_executor(session: RemoteSession) -> None:
        try:
            await session.executor.close()
        except Exception as e:
            log.warning("session_close_failed", session_id=session.id, error=str(e))
