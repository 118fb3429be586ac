"""Remote command execution contract shared by every transport."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command. Only the exit code decides success."""

    output: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(ABC):
    """Runs shell commands on a compute resource.

    Implementations raise ``TransportError`` when the command could not be
    delivered or its result could not be read. A command that ran and exited
    non-zero is a normal ``CommandResult``.
    """

    #: Whether the step runner may retry transport failures on this executor.
    retry_transport: bool = False

    @abstractmethod
    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run ``command`` and wait for it to finish."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release the underlying transport."""

    async def __aenter__(self) -> RemoteExecutor:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
