"""Compute provider contract."""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from clawforge.db.models import Backend, ProvisioningRecord
from clawforge.errors import TransportError
from clawforge.execution.base import RemoteExecutor
from clawforge.provisioning.steps import StepResult, StepRunner

log = structlog.get_logger()

NAME_ADJECTIVES = ("swift", "bright", "calm", "bold", "keen", "wise", "warm", "cool")
NAME_NOUNS = ("fox", "owl", "wolf", "hawk", "bear", "lion", "deer", "crow")


def random_name(prefix: str = "", nouns: tuple[str, ...] = NAME_NOUNS) -> str:
    """``adj-noun-NNN`` with an optional prefix."""
    name = f"{random.choice(NAME_ADJECTIVES)}-{random.choice(nouns)}-{random.randrange(1000)}"
    return f"{prefix}{name}"


@dataclass
class ComputeHandle:
    """Everything needed to reach a compute resource again."""

    id: str
    name: str
    status: str | None = None
    address: str | None = None
    url: str | None = None
    project_id: str | None = None
    project_name: str | None = None
    region: str | None = None
    instance_class: str | None = None
    ssh_private_key: str | None = None
    raw: Any = field(default=None, repr=False, compare=False)

    def record_fields(self) -> dict[str, Any]:
        """Record columns to persist for this handle. Unknown values are omitted."""
        fields = {
            "compute_id": self.id,
            "compute_name": self.name,
            "compute_address": self.address,
            "compute_url": self.url,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "region": self.region,
            "instance_class": self.instance_class,
            "ssh_private_key": self.ssh_private_key,
        }
        return {k: v for k, v in fields.items() if v is not None}

    @classmethod
    def from_record(cls, record: ProvisioningRecord) -> ComputeHandle:
        if not record.compute_id:
            raise ValueError(f"Record {record.id} has no compute resource")
        return cls(
            id=record.compute_id,
            name=record.compute_name or record.compute_id,
            address=record.compute_address,
            url=record.compute_url,
            project_id=record.project_id,
            project_name=record.project_name,
            region=record.region,
            instance_class=record.instance_class,
            ssh_private_key=record.ssh_private_key,
        )


class ComputeProvider(ABC):
    """One compute backend: resource CRUD plus executor construction."""

    backend: Backend
    #: Seconds to wait after creation before the resource accepts commands.
    boot_grace: float = 0.0
    #: Whether failed runs should destroy the resource instead of keeping it for resume.
    destroy_on_failure: bool = False

    @property
    @abstractmethod
    def instance_class(self) -> str:
        """Resource class requested on creation (used in billing errors)."""

    @abstractmethod
    async def validate_credentials(self) -> None:
        """Raise ``ConfigurationError`` or ``ProviderError`` if unusable."""

    @abstractmethod
    async def create(self, name: str) -> ComputeHandle: ...

    @abstractmethod
    async def describe(self, compute_id: str) -> ComputeHandle | None:
        """Current state of a resource, or ``None`` if it no longer exists."""

    @abstractmethod
    async def list(self) -> list[ComputeHandle]: ...

    async def find_by_name(self, name: str) -> ComputeHandle | None:
        for handle in await self.list():
            if handle.name == name:
                return handle
        return None

    @abstractmethod
    async def delete(self, compute_id: str) -> None:
        """Destroy a resource. Missing resources are not an error."""

    async def wait_until_addressable(self, handle: ComputeHandle) -> ComputeHandle:
        """Block until the resource can be reached; return the refreshed handle."""
        return handle

    @abstractmethod
    async def open_executor(self, handle: ComputeHandle) -> RemoteExecutor: ...

    @abstractmethod
    async def prepare_system(self, runner: StepRunner) -> StepResult:
        """Install OS-level prerequisites for the agent runtime."""

    def is_billing_restriction(self, exc: BaseException) -> bool:
        return False

    def is_timeout(self, exc: BaseException) -> bool:
        """Whether a failed create may still have succeeded server-side."""
        return isinstance(exc, TransportError) or "timed out" in str(exc).lower()

    @abstractmethod
    def generate_name(self) -> str: ...

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release client resources."""


async def install_python_extras(runner: StepRunner, command: str) -> StepResult:
    """Best-effort pip install used by every backend."""
    result = await runner.run(command, "Install Anthropic SDK and dependencies")
    if not result.ok:
        runner.emit("Install SDKs", "SDK installation had issues, continuing...")
        log.warning("python_extras_failed", output=result.output[:200])
    return StepResult.success(result.output)
