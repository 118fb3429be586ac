"""Tests for the in-process provisioning service."""

import asyncio

import pytest
from pydantic import SecretStr

from clawforge.config import settings
from clawforge.db.models import Backend, ProvisioningStatus
from clawforge.db.store import ProvisioningStore
from clawforge.errors import ConfigurationError, RecordStateError, RunInProgressError
from clawforge.providers.base import ComputeHandle
from clawforge.provisioning import orchestrator, steps
from clawforge.provisioning.gateway import KILL_GATEWAY
from clawforge.provisioning.orchestrator import (
    INTERRUPTED_MESSAGE,
    ProvisioningService,
    SetupRequest,
)
from clawforge.provisioning.runtime import ChannelConfig
from tests.fakes import FakeGitHub, FakeProvider, RecordingToken, ScriptedExecutor, script_happy_vm

REQUEST = SetupRequest(owner_id="user-1", backend=Backend.ORGO, model_api_key="sk-ant-test")
CHANNEL = ChannelConfig(model_api_key="sk-ant-test", bot_token="123:bot")


class SlowBootProvider(FakeProvider):
    """Provider whose new resources take a minute to boot."""

    boot_grace = 60.0


class BlockedCreateProvider(FakeProvider):
    """Provider whose create call waits until ``release`` is set."""

    def __init__(self, executor: ScriptedExecutor) -> None:
        super().__init__(executor)
        self.release = asyncio.Event()

    async def create(self, name: str) -> ComputeHandle:
        await self.release.wait()
        return await super().create(name)


@pytest.fixture
def instant_sleeps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(orchestrator, "CancelToken", RecordingToken)
    monkeypatch.setattr(steps, "CancelToken", RecordingToken)


def _service(
    store: ProvisioningStore, provider: FakeProvider, github: FakeGitHub
) -> ProvisioningService:
    return ProvisioningService(
        store,
        provider_factory=lambda backend, owner_id: provider,
        github_factory=lambda: github,  # type: ignore[arg-type,return-value]
    )


@pytest.mark.usefixtures("instant_sleeps")
class TestServiceRuns:
    """Tests for starting and awaiting runs."""

    @pytest.mark.asyncio
    async def test_start_and_wait(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A started run reaches ready and releases its clients."""
        script_happy_vm(executor)
        provider, github = FakeProvider(executor), FakeGitHub()
        service = _service(store, provider, github)

        record = await service.start(REQUEST)
        result = await service.wait(record.id)

        assert result.status == ProvisioningStatus.READY
        assert result.run_id is None
        assert not service.is_running(record.id)
        assert provider.closed
        assert github.closed

        channel = service.events(record.id)
        assert channel is not None
        assert channel.closed
        assert channel.history()[-1].message == "Provisioning complete"

    @pytest.mark.asyncio
    async def test_restart_gateway(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Restarting the gateway records liveness and frees the run marker."""
        script_happy_vm(executor)
        service = _service(store, FakeProvider(executor), FakeGitHub())
        record = await service.start(REQUEST)
        await service.wait(record.id)

        result = await service.restart_gateway(record.id, CHANNEL)

        assert result.ok
        updated = await store.require(record.id)
        assert updated.gateway_started
        assert updated.run_id is None
        assert executor.ran(KILL_GATEWAY)

    @pytest.mark.asyncio
    async def test_gateway_status(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Status inspects the resource of an existing record."""
        script_happy_vm(executor)
        service = _service(store, FakeProvider(executor), FakeGitHub())
        record = await service.start(REQUEST)
        await service.wait(record.id)

        status = await service.gateway_status(record.id)

        assert status.healthy

    @pytest.mark.asyncio
    async def test_restart_without_compute(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A record without a resource cannot restart its gateway."""
        service = _service(store, FakeProvider(executor), FakeGitHub())
        record = await store.create("user-1", Backend.ORGO)

        with pytest.raises(RecordStateError):
            await service.restart_gateway(record.id, CHANNEL)

        assert (await store.require(record.id)).run_id is None

    @pytest.mark.asyncio
    async def test_restart_needs_credentials(
        self,
        store: ProvisioningStore,
        executor: ScriptedExecutor,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Without a channel and configured defaults the restart is refused."""
        monkeypatch.setattr(settings, "anthropic_api_key", SecretStr(""))
        monkeypatch.setattr(settings, "telegram_bot_token", SecretStr(""))
        service = _service(store, FakeProvider(executor), FakeGitHub())
        record = await store.create("user-1", Backend.ORGO, compute_id="vm-1")

        with pytest.raises(ConfigurationError):
            await service.restart_gateway(record.id)

    @pytest.mark.asyncio
    async def test_teardown(self, store: ProvisioningStore, executor: ScriptedExecutor) -> None:
        """Teardown after a finished run deletes the resource."""
        script_happy_vm(executor)
        provider = FakeProvider(executor)
        service = _service(store, provider, FakeGitHub())
        record = await service.start(REQUEST)
        await service.wait(record.id)

        result = await service.teardown(record.id)

        assert provider.deleted == ["vm-1"]
        assert result.status == ProvisioningStatus.PENDING


class TestServiceControl:
    """Tests for concurrency, cancellation and shutdown."""

    @pytest.mark.asyncio
    async def test_second_start_refused(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A record with a live run refuses another start and a teardown."""
        service = _service(store, SlowBootProvider(executor), FakeGitHub())
        record = await service.start(REQUEST)

        with pytest.raises(RunInProgressError):
            await service.start(REQUEST)
        with pytest.raises(RunInProgressError):
            await service.teardown(record.id)

        assert service.cancel(record.id)
        await service.wait(record.id)

    @pytest.mark.asyncio
    async def test_cancel(self, store: ProvisioningStore, executor: ScriptedExecutor) -> None:
        """Cancelling a run interrupts its waits and records the cancellation."""
        provider = SlowBootProvider(executor)
        service = _service(store, provider, FakeGitHub())
        record = await service.start(REQUEST)

        assert service.cancel(record.id)
        result = await service.wait(record.id)

        assert result.status == ProvisioningStatus.FAILED
        assert result.error_message == "Provisioning cancelled"
        assert result.run_id is None
        assert not service.cancel(record.id)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_runs(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Shutdown cancels in-flight runs and waits for their final status."""
        service = _service(store, SlowBootProvider(executor), FakeGitHub())
        record = await service.start(REQUEST)

        await service.shutdown()

        result = await store.require(record.id)
        assert result.status == ProvisioningStatus.FAILED
        assert not service.is_running(record.id)

    @pytest.mark.asyncio
    async def test_unknown_record(self, store: ProvisioningStore) -> None:
        """Unknown records have no run and no events."""
        service = ProvisioningService(store)
        assert not service.is_running("nope")
        assert not service.cancel("nope")
        assert service.events("nope") is None


@pytest.mark.usefixtures("instant_sleeps")
class TestLeftoverRunMarkers:
    """Tests for run markers left behind by a process that died mid-run."""

    @staticmethod
    async def _abandoned(store: ProvisioningStore, status: ProvisioningStatus) -> str:
        record = await store.create("user-1", Backend.ORGO)
        await store.claim_run(record.id, "dead-run", 3600)
        await store.update(record.id, status=status)
        return str(record.id)

    @pytest.mark.asyncio
    async def test_leftover_marker_blocks_start(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A fresh marker from another process refuses a plain start."""
        await self._abandoned(store, ProvisioningStatus.PROVISIONING)
        service = _service(store, FakeProvider(executor), FakeGitHub())

        with pytest.raises(RunInProgressError):
            await service.start(REQUEST)

    @pytest.mark.asyncio
    async def test_recover_interrupted(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Recovery fails the orphaned run and frees the record for a new start."""
        record_id = await self._abandoned(store, ProvisioningStatus.PROVISIONING)
        script_happy_vm(executor)
        service = _service(store, FakeProvider(executor), FakeGitHub())

        [recovered] = await service.recover_interrupted()

        assert str(recovered.id) == record_id
        assert recovered.status == ProvisioningStatus.FAILED
        assert recovered.error_message == INTERRUPTED_MESSAGE
        assert recovered.run_id is None

        record = await service.start(REQUEST)
        result = await service.wait(record.id)
        assert result.status == ProvisioningStatus.READY

    @pytest.mark.asyncio
    async def test_recover_keeps_terminal_status(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A marker left on a finished record is released without touching the status."""
        await self._abandoned(store, ProvisioningStatus.READY)
        service = _service(store, FakeProvider(executor), FakeGitHub())

        [recovered] = await service.recover_interrupted()

        assert recovered.status == ProvisioningStatus.READY
        assert recovered.error_message is None
        assert recovered.run_id is None

    @pytest.mark.asyncio
    async def test_recover_skips_live_runs(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Runs alive in this process keep their marker."""
        provider = BlockedCreateProvider(executor)
        service = _service(store, provider, FakeGitHub())
        record = await service.start(REQUEST)

        assert await service.recover_interrupted() == []
        assert (await store.require(record.id)).run_id is not None

        service.cancel(record.id)
        provider.release.set()
        await service.wait(record.id)

    @pytest.mark.asyncio
    async def test_forced_start_takes_over(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A forced start replaces a leftover marker and runs to completion."""
        await self._abandoned(store, ProvisioningStatus.PROVISIONING)
        script_happy_vm(executor)
        service = _service(store, FakeProvider(executor), FakeGitHub())

        record = await service.start(REQUEST, force=True)

        assert record.run_id not in (None, "dead-run")
        result = await service.wait(record.id)
        assert result.status == ProvisioningStatus.READY
        assert result.run_id is None

    @pytest.mark.asyncio
    async def test_forced_start_refuses_live_run(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Force never takes over a run alive in this process."""
        provider = BlockedCreateProvider(executor)
        service = _service(store, provider, FakeGitHub())
        record = await service.start(REQUEST)

        with pytest.raises(RunInProgressError):
            await service.start(REQUEST, force=True)

        service.cancel(record.id)
        provider.release.set()
        await service.wait(record.id)


@pytest.mark.usefixtures("instant_sleeps")
class TestEventRetention:
    """Tests for how many finished event channels the service keeps."""

    @pytest.mark.asyncio
    async def test_old_channels_dropped(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """Only the most recent finished channels are kept."""
        script_happy_vm(executor)
        provider = FakeProvider(executor)
        service = ProvisioningService(
            store,
            provider_factory=lambda backend, owner_id: provider,
            github_factory=lambda: FakeGitHub(),  # type: ignore[arg-type,return-value]
            retained_channels=1,
        )

        first = await service.start(REQUEST)
        await service.wait(first.id)
        second = await service.start(
            SetupRequest(owner_id="user-2", backend=Backend.ORGO, model_api_key="sk-ant-test")
        )
        await service.wait(second.id)

        assert service.events(first.id) is None
        assert service.events(second.id) is not None

    @pytest.mark.asyncio
    async def test_rerun_replaces_channel(
        self, store: ProvisioningStore, executor: ScriptedExecutor
    ) -> None:
        """A new run of the same record replaces its previous channel."""
        script_happy_vm(executor)
        service = _service(store, FakeProvider(executor), FakeGitHub())

        record = await service.start(REQUEST)
        await service.wait(record.id)
        previous = service.events(record.id)
        await service.start(REQUEST)
        await service.wait(record.id)

        assert service.events(record.id) is not previous
        assert len(service._channels) == 1
