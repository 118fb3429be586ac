"""Persistent-connection executor over SSH (AWS EC2)."""

from __future__ import annotations

import asyncio

import asyncssh
import structlog

from clawforge.errors import TransportError
from clawforge.execution.base import CommandResult, RemoteExecutor

log = structlog.get_logger()


class SSHExecutor(RemoteExecutor):
    """Runs commands over one lazily opened, kept-alive SSH connection.

    The connection is re-established on the next command after it drops.
    Individual commands are not retried: a command may have run before the
    connection died.
    """

    retry_transport = False

    def __init__(
        self,
        host: str,
        username: str,
        private_key: str,
        *,
        port: int = 22,
        connect_timeout: float = 30.0,
        keepalive_interval: float = 10.0,
        connect_attempts: int = 3,
    ) -> None:
        self.host = host
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.connect_attempts = connect_attempts
        self._private_key = private_key
        self._conn: asyncssh.SSHClientConnection | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> asyncssh.SSHClientConnection:
        """Open the connection, retrying with exponential backoff."""
        async with self._lock:
            if self._conn is not None:
                return self._conn

            try:
                key = asyncssh.import_private_key(self._private_key)
            except (asyncssh.KeyImportError, ValueError) as e:
                raise TransportError(f"Invalid SSH private key: {e}") from e

            last_error: BaseException | None = None
            for attempt in range(1, self.connect_attempts + 1):
                try:
                    self._conn = await asyncssh.connect(
                        self.host,
                        port=self.port,
                        username=self.username,
                        client_keys=[key],
                        known_hosts=None,
                        connect_timeout=self.connect_timeout,
                        keepalive_interval=self.keepalive_interval,
                    )
                    log.info("ssh_connected", host=self.host, attempt=attempt)
                    return self._conn
                except asyncssh.PermissionDenied as e:
                    # Authentication failures won't succeed on retry
                    raise TransportError(
                        f"SSH authentication failed for {self.username}@{self.host}",
                        details={"host": self.host},
                    ) from e
                except (asyncssh.Error, OSError, TimeoutError) as e:
                    last_error = e
                    if attempt < self.connect_attempts:
                        delay = 2 ** (attempt - 1)
                        log.warning(
                            "ssh_connect_retry",
                            host=self.host,
                            attempt=attempt,
                            delay=delay,
                            error=type(e).__name__,
                        )
                        await asyncio.sleep(delay)

            raise TransportError(
                f"Failed to connect to {self.host}:{self.port} after "
                f"{self.connect_attempts} attempts: {last_error}",
                details={"host": self.host},
            )

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        conn = await self.connect()
        try:
            result = await conn.run(command, check=False, timeout=timeout)
        except asyncssh.TimeoutError as e:
            raise TransportError(f"Command timed out after {timeout}s") from e
        except (asyncssh.Error, OSError) as e:
            await self._drop()
            raise TransportError(f"SSH command failed: {e}", details={"host": self.host}) from e

        stdout = _as_text(result.stdout)
        stderr = _as_text(result.stderr)
        output = stdout if not stderr else f"{stdout}{stderr}"
        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(output=output, exit_code=exit_code)

    async def close(self) -> None:
        await self._drop()

    async def _drop(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        try:
            await conn.wait_closed()
        except (asyncssh.Error, OSError):
            pass
        log.debug("ssh_closed", host=self.host)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
