"""Tests for the setup HTTP API."""

from collections.abc import Iterator
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from clawforge.api import create_app
from clawforge.db.models import Backend, ProvisioningRecord, ProvisioningStatus
from clawforge.errors import (
    ConfigurationError,
    ProviderError,
    RecordNotFoundError,
    RecordStateError,
    RunInProgressError,
)
from clawforge.provisioning.events import EventChannel, ProgressEvent
from clawforge.provisioning.gateway import GatewayStatus
from clawforge.provisioning.orchestrator import SetupRequest
from clawforge.provisioning.runtime import ChannelConfig
from clawforge.provisioning.steps import StepResult
from clawforge.terminal.sessions import SessionRegistry
from tests.fakes import ScriptedExecutor


class MemoryStore:
    def __init__(self) -> None:
        self.records: dict[UUID, ProvisioningRecord] = {}

    async def get(self, record_id: UUID | str) -> ProvisioningRecord | None:
        return self.records.get(UUID(str(record_id)))

    async def require(self, record_id: UUID | str) -> ProvisioningRecord:
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFoundError(str(record_id))
        return record


class StubService:
    """Stands in for ProvisioningService without a database or event loop ties."""

    def __init__(self) -> None:
        self.store = MemoryStore()
        self.started: list[SetupRequest] = []
        self.channels: dict[str, EventChannel] = {}
        self.running: set[str] = set()
        self.restarts: list[ChannelConfig | None] = []
        self.forced: list[bool] = []
        self.executors: list[ScriptedExecutor] = []
        self.recovered = False
        self.shut_down = False

    def add(self, **fields: object) -> ProvisioningRecord:
        record = ProvisioningRecord(owner_id="user-1", backend=Backend.ORGO.value, **fields)
        self.store.records[record.id] = record
        return record

    async def start(self, request: SetupRequest, *, force: bool = False) -> ProvisioningRecord:
        if any(r.owner_id == request.owner_id for r in self.store.records.values()):
            raise RunInProgressError("existing", "run-1")
        self.started.append(request)
        self.forced.append(force)
        record = self.add(status=ProvisioningStatus.PROVISIONING.value)
        self.running.add(str(record.id))
        return record

    def is_running(self, record_id: UUID | str) -> bool:
        return str(record_id) in self.running

    def cancel(self, record_id: UUID | str) -> bool:
        return str(record_id) in self.running

    def events(self, record_id: UUID | str) -> EventChannel | None:
        return self.channels.get(str(record_id))

    async def teardown(self, record_id: UUID | str) -> ProvisioningRecord:
        record = await self.store.require(record_id)
        record.compute_id = None
        record.status = ProvisioningStatus.PENDING.value
        return record

    async def gateway_status(self, record_id: UUID | str) -> GatewayStatus:
        record = await self.store.require(record_id)
        if record.compute_id == "down":
            raise ProviderError("backend unavailable")
        return GatewayStatus(running=True, port_listening=True, log_tail="ok")

    async def restart_gateway(
        self, record_id: UUID | str, channel: ChannelConfig | None = None
    ) -> StepResult:
        await self.store.require(record_id)
        if channel is None:
            raise ConfigurationError("Model credential and bot token are required")
        self.restarts.append(channel)
        return StepResult.success("running")

    async def open_executor(self, record: ProvisioningRecord) -> ScriptedExecutor:
        if not record.compute_id:
            raise RecordStateError(f"Record {record.id} has no compute resource")
        executor = ScriptedExecutor().on("whoami", "user")
        self.executors.append(executor)
        return executor

    async def recover_interrupted(self) -> list[ProvisioningRecord]:
        self.recovered = True
        return []

    async def shutdown(self) -> None:
        self.shut_down = True


@pytest.fixture
def service() -> StubService:
    return StubService()


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sessions(clock: Clock) -> SessionRegistry:
    return SessionRegistry(ttl=60, clock=clock)


@pytest.fixture
def client(service: StubService, sessions: SessionRegistry) -> Iterator[TestClient]:
    app = create_app(service=service, sessions=sessions)  # type: ignore[arg-type]
    with TestClient(app) as test_client:
        yield test_client


class TestSetupRoutes:
    """Tests for the /setup endpoints."""

    def test_start(self, client: TestClient, service: StubService) -> None:
        """Starting returns 202 with the record and builds the setup request."""
        response = client.post(
            "/setup/start",
            json={
                "owner_id": "user-1",
                "backend": "aws",
                "channel": {"model_api_key": "sk", "bot_token": "1:t", "allowed_user_id": "9"},
                "repositories": [{"name": "notes", "ssh_url": "git@github.com:o/notes.git"}],
            },
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "provisioning"
        assert body["running"] is True
        assert "ssh_private_key" not in body
        (request,) = service.started
        assert request.backend is Backend.AWS
        assert request.channel is not None
        assert request.channel.owner_id == "user-1"
        assert request.repositories[0].name == "notes"
        assert service.forced == [False]

    def test_start_conflict(self, client: TestClient, service: StubService) -> None:
        """A run in progress is a 409."""
        service.add()
        response = client.post("/setup/start", json={"owner_id": "user-1"})
        assert response.status_code == 409
        assert "already in progress" in response.json()["detail"]

    def test_start_force(self, client: TestClient, service: StubService) -> None:
        """The force flag reaches the service."""
        response = client.post("/setup/start", json={"owner_id": "user-2", "force": True})
        assert response.status_code == 202
        assert service.forced == [True]

    def test_start_validation(self, client: TestClient) -> None:
        """Unknown backends are rejected."""
        response = client.post("/setup/start", json={"owner_id": "u", "backend": "gcp"})
        assert response.status_code == 422

    def test_get(self, client: TestClient, service: StubService) -> None:
        """Records are returned without the private key."""
        record = service.add(compute_id="i-1", ssh_private_key="SECRET")

        response = client.get(f"/setup/{record.id}")

        assert response.status_code == 200
        assert response.json()["compute_id"] == "i-1"
        assert "SECRET" not in response.text

    def test_get_missing(self, client: TestClient) -> None:
        """Unknown ids are 404."""
        assert client.get(f"/setup/{uuid4()}").status_code == 404

    def test_events_replay(self, client: TestClient, service: StubService) -> None:
        """Events stream as NDJSON from the start of the run."""
        record = service.add()
        channel = EventChannel()
        channel.publish(ProgressEvent(step="Create VM", message="Created swift-fox-7"))
        channel.publish(ProgressEvent(step="Complete", message="Provisioning complete"))
        channel.close()
        service.channels[str(record.id)] = channel

        response = client.get(f"/setup/{record.id}/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        lines = response.text.strip().splitlines()
        assert len(lines) == 2
        assert '"Provisioning complete"' in lines[1]

    def test_events_without_run(self, client: TestClient, service: StubService) -> None:
        """A record with no run in this process has no event stream."""
        record = service.add()
        response = client.get(f"/setup/{record.id}/events")
        assert response.status_code == 404
        assert client.get(f"/setup/{uuid4()}/events").status_code == 404

    def test_cancel(self, client: TestClient, service: StubService) -> None:
        """Cancel reports whether a run was signalled."""
        record = service.add()
        assert client.post(f"/setup/{record.id}/cancel").json() == {"cancelled": False}
        service.running.add(str(record.id))
        assert client.post(f"/setup/{record.id}/cancel").json() == {"cancelled": True}

    def test_teardown(self, client: TestClient, service: StubService) -> None:
        """Teardown returns the reset record."""
        record = service.add(compute_id="vm-1", status="ready")

        response = client.post(f"/setup/{record.id}/teardown")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["compute_id"] is None

    def test_gateway_status(self, client: TestClient, service: StubService) -> None:
        """Gateway status includes the healthy flag; backend errors are 502."""
        record = service.add(compute_id="vm-1")
        body = client.get(f"/setup/{record.id}/gateway").json()
        assert body["healthy"] is True
        assert body["log_tail"] == "ok"

        broken = service.add(compute_id="down")
        assert client.get(f"/setup/{broken.id}/gateway").status_code == 502

    def test_restart_gateway(self, client: TestClient, service: StubService) -> None:
        """Supplied credentials are used; missing defaults are a 400."""
        record = service.add(compute_id="vm-1")

        ok = client.post(
            f"/setup/{record.id}/gateway/restart",
            json={"model_api_key": "sk", "bot_token": "1:t"},
        )
        assert ok.json() == {"ok": True, "message": None, "output": "running"}
        assert service.restarts[0].bot_token == "1:t"

        assert client.post(f"/setup/{record.id}/gateway/restart").status_code == 400


def test_lifespan_shuts_service_down(service: StubService) -> None:
    with TestClient(create_app(service=service)):  # type: ignore[arg-type]
        pass
    assert service.shut_down


def test_lifespan_recovers_interrupted_runs(service: StubService) -> None:
    with TestClient(create_app(service=service)):  # type: ignore[arg-type]
        assert service.recovered


class TestTerminalRoutes:
    """Tests for the /terminal endpoints."""

    def _execute(self, client: TestClient, record: ProvisioningRecord, command: str) -> dict:
        response = client.post(f"/terminal/{record.id}/execute", json={"command": command})
        assert response.status_code == 200
        return response.json()

    def test_execute_reuses_session(self, client: TestClient, service: StubService) -> None:
        """The first command opens a session; later ones reuse it."""
        record = service.add(compute_id="vm-1")

        first = self._execute(client, record, "whoami")
        second = self._execute(client, record, "ls")

        assert first == {
            "session_id": f"user-1-{record.id}",
            "output": "user",
            "exit_code": 0,
            "success": True,
        }
        assert second["session_id"] == first["session_id"]
        (executor,) = service.executors
        assert executor.commands == ["whoami", "ls"]

    def test_disconnect(self, client: TestClient, service: StubService) -> None:
        """Disconnecting closes the executor; the next command opens a new one."""
        record = service.add(compute_id="vm-1")
        self._execute(client, record, "whoami")

        assert client.post(f"/terminal/{record.id}/disconnect").json() == {"disconnected": True}
        assert client.post(f"/terminal/{record.id}/disconnect").json() == {"disconnected": False}
        self._execute(client, record, "whoami")

        first, second = service.executors
        assert first.closed
        assert not second.closed

    def test_expired_session_is_reopened(
        self, client: TestClient, service: StubService, sessions: SessionRegistry, clock: Clock
    ) -> None:
        """An idle-expired session is replaced instead of being used."""
        record = service.add(compute_id="vm-1")
        self._execute(client, record, "whoami")

        clock.now += 61
        self._execute(client, record, "whoami")

        first, second = service.executors
        assert first.closed
        assert second.commands == ["whoami"]
        assert len(sessions) == 1

    def test_teardown_closes_session(
        self, client: TestClient, service: StubService, sessions: SessionRegistry
    ) -> None:
        """Tearing a record down closes its terminal session."""
        record = service.add(compute_id="vm-1", status="ready")
        self._execute(client, record, "whoami")

        assert client.post(f"/setup/{record.id}/teardown").status_code == 200

        assert len(sessions) == 0
        assert service.executors[0].closed

    def test_errors(self, client: TestClient, service: StubService) -> None:
        """Missing resources are 409, unknown records 404, empty commands 422."""
        bare = service.add()
        record = service.add(compute_id="vm-1")

        missing_compute = client.post(f"/terminal/{bare.id}/execute", json={"command": "ls"})
        unknown = client.post(f"/terminal/{uuid4()}/execute", json={"command": "ls"})
        empty = client.post(f"/terminal/{record.id}/execute", json={"command": ""})

        assert missing_compute.status_code == 409
        assert unknown.status_code == 404
        assert empty.status_code == 422
        assert service.executors == []
