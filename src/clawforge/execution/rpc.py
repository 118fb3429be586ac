"""Request/response executor: one HTTP call per command (Orgo)."""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from clawforge.errors import ProviderError, TransportError
from clawforge.execution.base import CommandResult, RemoteExecutor

log = structlog.get_logger()


class BashClient(Protocol):
    async def bash(
        self, computer_id: str, command: str, timeout: float | None = None
    ) -> dict[str, Any]: ...


class RpcExecutor(RemoteExecutor):
    """Executes commands through a backend's bash endpoint.

    Each call is independent, so transport failures are safe to retry.
    """

    retry_transport = True

    def __init__(
        self,
        client: BashClient,
        computer_id: str,
        *,
        default_timeout: float | None = None,
    ) -> None:
        self._client = client
        self.computer_id = computer_id
        self.default_timeout = default_timeout

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        try:
            payload = await self._client.bash(
                self.computer_id, command, timeout=timeout or self.default_timeout
            )
        except TransportError:
            raise
        except ProviderError as e:
            raise TransportError(
                f"Bash call failed: {e.message}",
                details={"computer_id": self.computer_id, "status_code": e.status_code},
            ) from e

        if not isinstance(payload, dict):
            return CommandResult(output=str(payload or ""), exit_code=0)

        output = payload.get("output")
        exit_code = payload.get("exit_code", 0)
        return CommandResult(
            output="" if output is None else str(output),
            exit_code=int(exit_code) if exit_code is not None else 0,
        )
