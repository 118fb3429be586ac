"""Test doubles for executors, providers and the repository host."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from collections import deque
from typing import Any

import pytest

from clawforge.db.models import Backend
from clawforge.errors import ProviderError
from clawforge.execution.base import CommandResult, RemoteExecutor
from clawforge.github import GitHubUser, Repository
from clawforge.providers.base import ComputeHandle, ComputeProvider
from clawforge.provisioning.cancel import CancelToken
from clawforge.provisioning.gateway import PROCESS_CHECK
from clawforge.provisioning.installer import CHECK_SENTINEL, READ_VERSION, VERIFY_BINARY
from clawforge.provisioning.steps import StepResult, StepRunner

Response = CommandResult | BaseException | str


def _as_result(response: Response) -> CommandResult:
    if isinstance(response, str):
        return CommandResult(response, 0)
    assert isinstance(response, CommandResult)
    return response


class ScriptedExecutor(RemoteExecutor):
    """Executor that answers commands from registered fragments.

    The first rule whose fragment occurs in the command answers it. A rule's
    responses are consumed in order and the last one repeats. Unmatched
    commands succeed with empty output.
    """

    def __init__(self, *, retry_transport: bool = True) -> None:
        self.retry_transport = retry_transport
        self.rules: list[tuple[str, deque[Response]]] = []
        self.commands: list[str] = []
        self.timeouts: list[float | None] = []
        self.closed = False

    def on(self, fragment: str, *responses: Response) -> ScriptedExecutor:
        self.rules.append((fragment, deque(responses)))
        return self

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        self.timeouts.append(timeout)
        # File writes only match on their destination
        haystack = command.split("base64 -d", 1)[-1] if command.startswith("echo '") else command
        for fragment, responses in self.rules:
            if fragment in haystack:
                response = responses.popleft() if len(responses) > 1 else responses[0]
                if isinstance(response, BaseException):
                    raise response
                return _as_result(response)
        return CommandResult("", 0)

    async def close(self) -> None:
        self.closed = True

    def count(self, fragment: str) -> int:
        return sum(1 for command in self.commands if fragment in command)

    def ran(self, fragment: str) -> bool:
        return self.count(fragment) > 0


class RecordingToken(CancelToken):
    """Cancel token whose sleeps return immediately and are recorded."""

    def __init__(self) -> None:
        super().__init__()
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self.raise_if_cancelled()


class FakeProvider(ComputeProvider):
    """In-memory compute backend handing out one scripted executor."""

    backend = Backend.ORGO

    def __init__(
        self,
        executor: ScriptedExecutor,
        *,
        create_errors: list[Exception] | None = None,
        create_succeeds_server_side: bool = False,
        destroy_on_failure: bool = False,
    ) -> None:
        self.executor = executor
        self.create_errors = list(create_errors or [])
        self.create_succeeds_server_side = create_succeeds_server_side
        self.destroy_on_failure = destroy_on_failure
        self.resources: dict[str, ComputeHandle] = {}
        self.create_calls = 0
        self.list_calls = 0
        self.deleted: list[str] = []
        self.closed = False

    @property
    def instance_class(self) -> str:
        return "4gb-2cpu"

    async def validate_credentials(self) -> None:
        return None

    async def create(self, name: str) -> ComputeHandle:
        self.create_calls += 1
        handle = ComputeHandle(id=f"vm-{self.create_calls}", name=name, status="running")
        if self.create_errors:
            if self.create_succeeds_server_side:
                self.resources[handle.id] = handle
            raise self.create_errors.pop(0)
        self.resources[handle.id] = handle
        return handle

    async def describe(self, compute_id: str) -> ComputeHandle | None:
        return self.resources.get(compute_id)

    async def list(self) -> list[ComputeHandle]:
        self.list_calls += 1
        return list(self.resources.values())

    async def delete(self, compute_id: str) -> None:
        if compute_id == "explode":
            raise ProviderError("backend unavailable")
        self.deleted.append(compute_id)
        self.resources.pop(compute_id, None)

    async def open_executor(self, handle: ComputeHandle) -> RemoteExecutor:
        return self.executor

    async def prepare_system(self, runner: StepRunner) -> StepResult:
        return await runner.run("prepare-system-packages", "Install system packages")

    def is_billing_restriction(self, exc: BaseException) -> bool:
        return "free tier" in str(exc).lower()

    def generate_name(self) -> str:
        return "swift-fox-7"

    async def close(self) -> None:
        self.closed = True


class FakeGitHub:
    """Repository host double recording every call."""

    def __init__(self, existing: set[str] | None = None) -> None:
        self.existing = set(existing or ())
        self.created: list[str] = []
        self.deploy_keys: list[tuple[str, str]] = []
        self.files: dict[tuple[str, str], str] = {}
        self.closed = False

    async def get_user(self) -> GitHubUser:
        return GitHubUser(login="octo")

    def ssh_url(self, login: str, name: str) -> str:
        return f"git@github.com:{login}/{name}.git"

    async def repo_exists(self, name: str) -> bool:
        return name in self.existing

    async def create_repository(self, name: str, description: str | None = None) -> Repository:
        self.created.append(name)
        self.existing.add(name)
        return Repository(
            name=name,
            url=f"https://github.com/octo/{name}",
            ssh_url=self.ssh_url("octo", name),
        )

    async def create_deploy_key(self, repo_name: str, public_key: str, **kwargs: Any) -> None:
        self.deploy_keys.append((repo_name, public_key))

    async def write_file(self, repo_name: str, path: str, content: str, message: str) -> None:
        self.files[(repo_name, path)] = content

    async def close(self) -> None:
        self.closed = True


def script_happy_vm(executor: ScriptedExecutor) -> ScriptedExecutor:
    """Script a VM on which every provisioning step succeeds."""
    return (
        executor.on("which ssh-keygen", "/usr/bin/ssh-keygen")
        .on("cat ~/.ssh/id_ed25519.pub", "ssh-ed25519 AAAAC3Nza samantha-vm")
        .on("node -v", "v22.12.0")
        .on(CHECK_SENTINEL, "DONE")
        .on(VERIFY_BINARY, "/home/user/.nvm/versions/node/v22.12.0/bin/clawdbot")
        .on(READ_VERSION, "2026.2.3")
        .on("openssl rand -hex 24", "f" * 48)
        .on(PROCESS_CHECK, "PROCESS_EXISTS")
        .on("netstat -tlnp", "PORT_LISTENING")
    )


local_shell = pytest.mark.skipif(
    shutil.which("bash") is None or shutil.which("pgrep") is None,
    reason="needs bash and procps",
)


def run_local_shell(command: str) -> str:
    """Run ``command`` the way the transports do: inside ``bash -c``."""
    completed = subprocess.run(
        ["bash", "-c", command], capture_output=True, text=True, timeout=30, check=False
    )
    return completed.stdout.strip()
