"""Sandbox SDK executor (E2B)."""

from __future__ import annotations

from typing import Any

import structlog

from clawforge.errors import TransportError
from clawforge.execution.base import CommandResult, RemoteExecutor

log = structlog.get_logger()


class SandboxExecutor(RemoteExecutor):
    """Runs commands through a sandbox handle's ``commands.run``.

    The SDK raises on non-zero exits; those exceptions carry ``exit_code``
    and are turned back into ordinary results here.
    """

    retry_transport = True

    def __init__(self, sandbox: Any, *, default_timeout: float = 300.0) -> None:
        self.sandbox = sandbox
        self.default_timeout = default_timeout

    @property
    def sandbox_id(self) -> str:
        return str(getattr(self.sandbox, "sandbox_id", ""))

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        try:
            result = await self.sandbox.commands.run(
                command, timeout=timeout or self.default_timeout
            )
        except Exception as e:
            exit_code = getattr(e, "exit_code", None)
            if exit_code is None:
                raise TransportError(
                    f"Sandbox command failed: {e}", details={"sandbox_id": self.sandbox_id}
                ) from e
            result = e

        return CommandResult(
            output=_combine(getattr(result, "stdout", ""), getattr(result, "stderr", "")),
            exit_code=int(getattr(result, "exit_code", 0) or 0),
        )


def _combine(stdout: str | None, stderr: str | None) -> str:
    stdout = stdout or ""
    stderr = stderr or ""
    if stdout and stderr:
        return f"{stdout}\n{stderr}"
    return stdout or stderr
