"""E2B provider: ephemeral sandboxes driven through the e2b SDK.

The SDK is an optional extra (``pip install clawforge[e2b]``) and is imported
only when an E2B provider actually talks to the service.
"""

from __future__ import annotations

from typing import Any

import structlog

from clawforge.config import settings
from clawforge.db.models import Backend
from clawforge.errors import ConfigurationError, ProviderError, TransportError
from clawforge.execution.sandbox import SandboxExecutor
from clawforge.provisioning.steps import StepResult, StepRunner
from clawforge.providers.base import (
    ComputeHandle,
    ComputeProvider,
    install_python_extras,
    random_name,
)

log = structlog.get_logger()

BILLING_MARKERS = (
    "upgrade your plan",
    "plan limit",
    "concurrent sandboxes",
    "payment required",
    "insufficient credits",
    "billing",
)


class E2BProvider(ComputeProvider):
    backend = Backend.E2B
    destroy_on_failure = True

    def __init__(
        self,
        api_key: str | None = None,
        *,
        template: str | None = None,
        timeout: int | None = None,
        owner_id: str | None = None,
        sandbox_cls: Any | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.e2b_api_key.get_secret_value()
        self.template = template or settings.e2b_template
        self.timeout = timeout or settings.e2b_timeout_seconds
        self.owner_id = owner_id
        self._sandbox_cls = sandbox_cls
        self._sandboxes: dict[str, Any] = {}

    @property
    def instance_class(self) -> str:
        return self.template

    @property
    def sandbox_cls(self) -> Any:
        if self._sandbox_cls is None:
            try:
                from e2b import AsyncSandbox
            except ImportError as e:
                raise ConfigurationError(
                    "The e2b package is not installed; install clawforge[e2b] to use E2B"
                ) from e
            self._sandbox_cls = AsyncSandbox
        return self._sandbox_cls

    async def validate_credentials(self) -> None:
        if not self.api_key:
            raise ConfigurationError("E2B API key is not configured")
        try:
            await self._list_raw()
        except ConfigurationError:
            raise
        except Exception as e:
            if "401" in str(e) or "unauthorized" in str(e).lower():
                raise ConfigurationError("Invalid E2B API key") from e
            raise ProviderError(f"E2B validation failed: {e}") from e

    async def create(self, name: str) -> ComputeHandle:
        metadata = {"name": name}
        if self.owner_id:
            metadata["owner_id"] = self.owner_id
        try:
            sandbox = await self.sandbox_cls.create(
                template=self.template,
                timeout=self.timeout,
                metadata=metadata,
                api_key=self.api_key,
            )
        except ConfigurationError:
            raise
        except TimeoutError as e:
            raise TransportError(f"E2B sandbox creation timed out: {e}") from e
        except Exception as e:
            raise ProviderError(f"E2B sandbox creation failed: {e}") from e

        sandbox_id = str(sandbox.sandbox_id)
        self._sandboxes[sandbox_id] = sandbox
        log.info("e2b_sandbox_created", sandbox_id=sandbox_id, template=self.template)
        return ComputeHandle(
            id=sandbox_id,
            name=name,
            status="running",
            instance_class=self.template,
            raw=sandbox,
        )

    async def _connect(self, sandbox_id: str) -> Any:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            sandbox = await self.sandbox_cls.connect(sandbox_id, api_key=self.api_key)
            self._sandboxes[sandbox_id] = sandbox
        return sandbox

    async def describe(self, compute_id: str) -> ComputeHandle | None:
        for handle in await self.list():
            if handle.id == compute_id:
                return handle
        return None

    async def _list_raw(self) -> list[Any]:
        result = await self.sandbox_cls.list(api_key=self.api_key)
        # SDK versions differ: a plain list or a paginator with ``next_items``
        if hasattr(result, "next_items"):
            items: list[Any] = []
            while getattr(result, "has_next", False):
                items.extend(await result.next_items())
            return items
        return list(result)

    async def list(self) -> list[ComputeHandle]:
        try:
            sandboxes = await self._list_raw()
        except ConfigurationError:
            raise
        except Exception as e:
            raise ProviderError(f"E2B list failed: {e}") from e
        handles = []
        for info in sandboxes:
            metadata = getattr(info, "metadata", None) or {}
            sandbox_id = str(getattr(info, "sandbox_id", ""))
            handles.append(
                ComputeHandle(
                    id=sandbox_id,
                    name=metadata.get("name") or sandbox_id,
                    status=str(getattr(info, "state", "running")),
                    instance_class=getattr(info, "template_id", None) or self.template,
                )
            )
        return handles

    async def delete(self, compute_id: str) -> None:
        sandbox = self._sandboxes.pop(compute_id, None)
        try:
            if sandbox is not None:
                await sandbox.kill()
            else:
                await self.sandbox_cls.kill(compute_id, api_key=self.api_key)
        except ConfigurationError:
            raise
        except Exception as e:
            if "not found" in str(e).lower() or "404" in str(e):
                log.info("e2b_sandbox_already_gone", sandbox_id=compute_id)
                return
            raise ProviderError(f"E2B kill failed: {e}") from e
        log.info("e2b_sandbox_killed", sandbox_id=compute_id)

    async def open_executor(self, handle: ComputeHandle) -> SandboxExecutor:
        sandbox = handle.raw if handle.raw is not None else await self._connect(handle.id)
        return SandboxExecutor(sandbox)

    async def prepare_system(self, runner: StepRunner) -> StepResult:
        runner.emit("Install Essentials", "Installing essential tools...")
        return await install_python_extras(runner, "pip install anthropic requests Pillow --quiet")

    def is_billing_restriction(self, exc: BaseException) -> bool:
        message = str(exc).lower()
        return any(marker in message for marker in BILLING_MARKERS)

    def generate_name(self) -> str:
        return random_name("sandbox-")
