"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from clawforge import __version__
from clawforge.api.routes import router, terminal_router
from clawforge.db.connection import async_session_factory, close_db, init_db
from clawforge.db.store import ProvisioningStore
from clawforge.errors import (
    ClawforgeError,
    ConfigurationError,
    ProviderError,
    RecordNotFoundError,
    RecordStateError,
    RepositoryHostError,
    RunInProgressError,
    TransportError,
)
from clawforge.provisioning.orchestrator import ProvisioningService
from clawforge.terminal.sessions import SessionRegistry

log = structlog.get_logger()

ERROR_STATUS: tuple[tuple[type[ClawforgeError], int], ...] = (
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (RunInProgressError, status.HTTP_409_CONFLICT),
    (RecordStateError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (RepositoryHostError, status.HTTP_502_BAD_GATEWAY),
    (TransportError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: ClawforgeError) -> int:
    for exc_type, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_clawforge_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ClawforgeError)
    code = status_for(exc)
    if code >= 500:
        log.warning("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=code, content={"detail": exc.message})


def create_app(
    *,
    service: ProvisioningService | None = None,
    sessions: SessionRegistry | None = None,
) -> FastAPI:
    """Build the API. Passing ``service`` skips database setup in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_db = service is None
        if owns_db:
            await init_db()
            app.state.service = ProvisioningService(ProvisioningStore(async_session_factory()))
        else:
            app.state.service = service
        app.state.sessions = sessions or SessionRegistry()
        await app.state.service.recover_interrupted()

        stop = asyncio.Event()
        reaper = asyncio.create_task(app.state.sessions.reap_loop(stop))
        log.info("api_started", version=__version__)
        try:
            yield
        finally:
            stop.set()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
            await app.state.service.shutdown()
            await app.state.sessions.close_all()
            if owns_db:
                await close_db()
            log.info("api_stopped")

    app = FastAPI(title="clawforge", version=__version__, lifespan=lifespan)
    app.add_exception_handler(ClawforgeError, handle_clawforge_error)
    app.include_router(router)
    app.include_router(terminal_router)
    return app
