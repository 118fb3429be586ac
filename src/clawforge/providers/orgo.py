"""Orgo provider: VMs driven through an HTTP bash endpoint."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote as urlquote

import httpx
import structlog

from clawforge.config import settings
from clawforge.db.models import Backend
from clawforge.errors import ConfigurationError, ProviderError, TransportError
from clawforge.execution.rpc import RpcExecutor
from clawforge.provisioning.installer import PackageInstaller
from clawforge.provisioning.steps import StepResult, StepRunner
from clawforge.providers.base import (
    ComputeHandle,
    ComputeProvider,
    install_python_extras,
    random_name,
)

log = structlog.get_logger()

TRANSIENT_STATUS = {502, 503, 504}
BILLING_MARKERS = (
    "upgrade your plan",
    "plan limit",
    "payment required",
    "insufficient credits",
    "billing",
    "subscription",
)


def normalize_computer_id(computer_id: str) -> str:
    """Orgo expects computer ids with an ``orgo-`` prefix."""
    return computer_id if computer_id.startswith("orgo-") else f"orgo-{computer_id}"


class OrgoClient:
    """Thin async client for the Orgo REST API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        bash_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.orgo_api_base).rstrip("/")
        self.timeout = timeout or settings.orgo_request_timeout_seconds
        self.bash_timeout = bash_timeout or settings.orgo_bash_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        effective = timeout or self.timeout
        try:
            response = await self._client.request(method, endpoint, json=json, timeout=effective)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request to Orgo API timed out after {int(effective * 1000)}ms. "
                "The operation may still be in progress.",
                details={"endpoint": endpoint},
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Orgo API connection failed: {e}", details={"endpoint": endpoint}
            ) from e

        if response.status_code in TRANSIENT_STATUS:
            raise TransportError(
                f"Orgo API error: {response.status_code}",
                details={"endpoint": endpoint, "status_code": response.status_code},
            )
        if response.is_error:
            raise ProviderError(
                _error_message(response),
                status_code=response.status_code,
                details={"endpoint": endpoint},
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    async def list_projects(self) -> list[dict[str, Any]]:
        payload = await self.request("GET", "/projects")
        return list(payload.get("projects") or []) if isinstance(payload, dict) else []

    async def create_project(self, name: str) -> dict[str, Any]:
        return await self.request("POST", "/projects", json={"name": name})

    async def get_or_create_project(self, name: str) -> dict[str, Any]:
        for project in await self.list_projects():
            if project.get("name") == name:
                return project
        log.info("orgo_project_create", project=name)
        return await self.create_project(name)

    async def create_computer(
        self, project_id: str, name: str, *, os: str = "linux", ram: int = 4, cpu: int = 2
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/computers",
            json={"project_id": project_id, "name": name, "os": os, "ram": ram, "cpu": cpu},
        )

    async def get_computer(self, computer_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/computers/{normalize_computer_id(computer_id)}")

    async def list_computers(self, project_name: str) -> list[dict[str, Any]]:
        path = f"/projects/{urlquote(project_name, safe='')}/computers"
        payload = await self.request("GET", path)
        return list(payload.get("computers") or []) if isinstance(payload, dict) else []

    async def delete_computer(self, computer_id: str) -> None:
        await self.request("DELETE", f"/computers/{normalize_computer_id(computer_id)}")

    async def bash(
        self, computer_id: str, command: str, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            f"/computers/{normalize_computer_id(computer_id)}/bash",
            json={"command": command},
            timeout=timeout or self.bash_timeout,
        )


def _error_message(response: httpx.Response) -> str:
    fallback = f"Orgo API error: {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or fallback)
    return fallback


class OrgoProvider(ComputeProvider):
    backend = Backend.ORGO

    def __init__(
        self,
        api_key: str | None = None,
        *,
        project_name: str | None = None,
        ram: int | None = None,
        cpu: int | None = None,
        client: OrgoClient | None = None,
        boot_grace: float | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.orgo_api_key.get_secret_value()
        self.project_name = project_name or settings.orgo_project_name
        self.ram = ram or settings.orgo_ram_gb
        self.cpu = cpu or settings.orgo_cpu
        self.client = client or OrgoClient(self.api_key)
        self.boot_grace = settings.orgo_boot_grace_seconds if boot_grace is None else boot_grace

    @property
    def instance_class(self) -> str:
        return f"{self.ram}gb-{self.cpu}cpu"

    async def validate_credentials(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Orgo API key is not configured")
        try:
            await self.client.list_projects()
        except ProviderError as e:
            if e.status_code in (401, 403):
                raise ConfigurationError("Invalid Orgo API key") from e
            raise

    async def create(self, name: str) -> ComputeHandle:
        project = await self.client.get_or_create_project(self.project_name)
        computer = await self.client.create_computer(
            str(project.get("id") or ""), name, ram=self.ram, cpu=self.cpu
        )
        handle = self._handle(computer, project=project)
        log.info("orgo_computer_created", computer_id=handle.id, name=handle.name)
        return handle

    async def describe(self, compute_id: str) -> ComputeHandle | None:
        try:
            computer = await self.client.get_computer(compute_id)
        except ProviderError as e:
            if e.not_found:
                return None
            raise
        return self._handle(computer)

    async def list(self) -> list[ComputeHandle]:
        try:
            computers = await self.client.list_computers(self.project_name)
        except ProviderError as e:
            if e.not_found:
                return []
            raise
        return [self._handle(c) for c in computers]

    async def delete(self, compute_id: str) -> None:
        try:
            await self.client.delete_computer(compute_id)
        except ProviderError as e:
            if e.not_found or "not found" in e.message.lower():
                log.info("orgo_computer_already_gone", computer_id=compute_id)
                return
            raise

    async def open_executor(self, handle: ComputeHandle) -> RpcExecutor:
        return RpcExecutor(self.client, handle.id)

    async def prepare_system(self, runner: StepRunner) -> StepResult:
        base = await PackageInstaller(runner).install_base_packages()
        if not base.ok:
            return base.with_message(base.message or "Failed to install Python")
        return await install_python_extras(
            runner,
            "pip3 install anthropic langchain-anthropic requests Pillow --break-system-packages",
        )

    def is_billing_restriction(self, exc: BaseException) -> bool:
        if isinstance(exc, ProviderError) and exc.status_code == 402:
            return True
        message = str(exc).lower()
        return any(marker in message for marker in BILLING_MARKERS)

    def generate_name(self) -> str:
        return random_name()

    async def close(self) -> None:
        await self.client.close()

    def _handle(
        self, computer: dict[str, Any], project: dict[str, Any] | None = None
    ) -> ComputeHandle:
        project = project or {}
        return ComputeHandle(
            id=str(computer.get("id")),
            name=str(computer.get("name") or computer.get("id")),
            status=computer.get("status"),
            url=computer.get("url"),
            project_id=str(project["id"]) if project.get("id") else computer.get("project_id"),
            project_name=project.get("name") or computer.get("project_name") or self.project_name,
            instance_class=self.instance_class,
        )
