"""Setup endpoints. Authentication is handled in front of this service."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from clawforge.config import settings
from clawforge.db.models import Backend, ProvisioningRecord
from clawforge.errors import RecordNotFoundError
from clawforge.provisioning.orchestrator import ProvisioningService, SetupRequest
from clawforge.provisioning.runtime import ChannelConfig, RepositoryRef
from clawforge.terminal.sessions import SessionRegistry

router = APIRouter(prefix="/setup", tags=["setup"])
terminal_router = APIRouter(prefix="/terminal", tags=["terminal"])

HIDDEN_FIELDS = {"ssh_private_key"}


class ChannelBody(BaseModel):
    model_api_key: str = Field(..., min_length=1)
    bot_token: str = Field(..., min_length=1)
    allowed_user_id: str | None = None
    heartbeat_minutes: int = Field(default=30, ge=1, le=1440)


class RepositoryBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    ssh_url: str = Field(..., min_length=1)
    html_url: str | None = None
    description: str | None = None


class StartRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=255)
    backend: Backend = Backend.ORGO
    channel: ChannelBody | None = None
    model_api_key: str | None = None
    repositories: list[RepositoryBody] = Field(default_factory=list)
    git_name: str | None = None
    force: bool = False

    def to_setup(self) -> SetupRequest:
        channel = None
        if self.channel is not None:
            channel = ChannelConfig(
                model_api_key=self.channel.model_api_key,
                bot_token=self.channel.bot_token,
                allowed_user_id=self.channel.allowed_user_id,
                heartbeat_minutes=self.channel.heartbeat_minutes,
                owner_id=self.owner_id,
                api_base_url=settings.api_base_url,
            )
        return SetupRequest(
            owner_id=self.owner_id,
            backend=self.backend,
            channel=channel,
            model_api_key=self.model_api_key,
            repositories=[RepositoryRef(**repo.model_dump()) for repo in self.repositories],
            git_name=self.git_name,
        )


class GatewayRestartRequest(BaseModel):
    model_api_key: str | None = None
    bot_token: str | None = None
    allowed_user_id: str | None = None


def _service(request: Request) -> ProvisioningService:
    return request.app.state.service


def _sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def session_key(record: ProvisioningRecord) -> str:
    return f"{record.owner_id}-{record.id}"


def record_payload(record: ProvisioningRecord, *, running: bool = False) -> dict[str, Any]:
    payload = record.model_dump(mode="json", exclude=HIDDEN_FIELDS)
    payload["running"] = running
    return payload


@router.post("/start", status_code=status.HTTP_202_ACCEPTED)
async def start_setup(body: StartRequest, request: Request) -> dict[str, Any]:
    """Create or resume the owner's record and launch provisioning in the background."""
    service = _service(request)
    record = await service.start(body.to_setup(), force=body.force)
    return record_payload(record, running=service.is_running(record.id))


@router.get("/{record_id}")
async def get_setup(record_id: UUID, request: Request) -> dict[str, Any]:
    service = _service(request)
    record = await service.store.require(record_id)
    return record_payload(record, running=service.is_running(record_id))


@router.get("/{record_id}/events")
async def stream_events(record_id: UUID, request: Request) -> StreamingResponse:
    """Newline-delimited JSON progress events, replayed from the start of the run."""
    service = _service(request)
    channel = service.events(record_id)
    if channel is None:
        if await service.store.get(record_id) is None:
            raise RecordNotFoundError(str(record_id))
        raise HTTPException(status_code=404, detail="No provisioning run for this record")

    async def body() -> AsyncIterator[str]:
        async for event in channel.subscribe():
            yield json.dumps(event.to_dict()) + "\n"

    return StreamingResponse(body(), media_type="application/x-ndjson")


@router.post("/{record_id}/cancel")
async def cancel_setup(record_id: UUID, request: Request) -> dict[str, Any]:
    service = _service(request)
    await service.store.require(record_id)
    return {"cancelled": service.cancel(record_id)}


@router.post("/{record_id}/teardown")
async def teardown_setup(record_id: UUID, request: Request) -> dict[str, Any]:
    """Destroy the compute resource and reset the record; the vault repository is kept."""
    record = await _service(request).teardown(record_id)
    await _sessions(request).close(session_key(record))
    return record_payload(record)


@router.get("/{record_id}/gateway")
async def gateway_status(record_id: UUID, request: Request) -> dict[str, Any]:
    gateway = await _service(request).gateway_status(record_id)
    return {**asdict(gateway), "healthy": gateway.healthy}


@router.post("/{record_id}/gateway/restart")
async def restart_gateway(
    record_id: UUID, request: Request, body: GatewayRestartRequest | None = None
) -> dict[str, Any]:
    channel = None
    if body is not None and body.model_api_key and body.bot_token:
        channel = ChannelConfig(
            model_api_key=body.model_api_key,
            bot_token=body.bot_token,
            allowed_user_id=body.allowed_user_id,
        )
    result = await _service(request).restart_gateway(record_id, channel)
    return {"ok": result.ok, "message": result.message, "output": result.output}


class ExecuteBody(BaseModel):
    command: str = Field(..., min_length=1)
    timeout: float | None = Field(default=None, gt=0, le=3600)


@terminal_router.post("/{record_id}/execute")
async def terminal_execute(record_id: UUID, body: ExecuteBody, request: Request) -> dict[str, Any]:
    """Run a command in the record's session, opening one if none is live."""
    service = _service(request)
    sessions = _sessions(request)
    record = await service.store.require(record_id)
    key = session_key(record)

    session = sessions.get(key)
    if session is None:
        session = await sessions.create(key, lambda: service.open_executor(record))
    result = await session.execute(body.command, timeout=body.timeout)
    return {
        "session_id": key,
        "output": result.output,
        "exit_code": result.exit_code,
        "success": result.success,
    }


@terminal_router.post("/{record_id}/disconnect")
async def terminal_disconnect(record_id: UUID, request: Request) -> dict[str, Any]:
    record = await _service(request).store.require(record_id)
    return {"disconnected": await _sessions(request).close(session_key(record))}
