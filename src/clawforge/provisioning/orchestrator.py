"""Provisioning state machine.

``Provisioner`` drives one record from nothing to ``ready``: compute resource,
vault repository, deploy key, clone, sync, runtime, optional channel and
gateway. Every completed step is persisted immediately, so a later run picks
up where a crashed or failed one stopped. ``ProvisioningService`` owns the
detached run tasks, their event channels and cancel tokens.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import UUID, uuid4

import structlog

from clawforge.config import settings
from clawforge.db.models import (
    TERMINAL_STATUSES,
    Backend,
    ProvisioningRecord,
    ProvisioningStatus,
)
from clawforge.db.store import ProvisioningStore
from clawforge.errors import (
    BillingRestrictionError,
    ClawforgeError,
    ConfigurationError,
    ProviderError,
    RecordStateError,
    RepositoryHostError,
    RunCancelledError,
    RunInProgressError,
)
from clawforge.execution.base import CommandResult, RemoteExecutor
from clawforge.github import GitHubClient, vault_repository_name
from clawforge.providers import ComputeHandle, ComputeProvider, get_provider
from clawforge.provisioning.cancel import CancelToken
from clawforge.provisioning.events import EventChannel, ProgressEvent
from clawforge.provisioning.gateway import GatewayStatus, GatewayVerifier
from clawforge.provisioning.installer import BackgroundInstaller
from clawforge.provisioning.runtime import (
    ChannelConfig,
    RepositoryRef,
    RuntimeBootstrap,
    repositories_index,
)
from clawforge.provisioning.steps import StepResult, StepRunner

log = structlog.get_logger()

CANCELLED_MESSAGE = "Provisioning cancelled"
INTERRUPTED_MESSAGE = "Provisioning interrupted"
REPOSITORIES_INDEX_PATH = "integrations/github/repositories.md"

ProviderFactory = Callable[[Backend, str], ComputeProvider]
GitHubFactory = Callable[[], GitHubClient]


@dataclass
class SetupRequest:
    """What a caller asks for when starting a provisioning run."""

    owner_id: str
    backend: Backend
    channel: ChannelConfig | None = None
    model_api_key: str | None = None
    repositories: list[RepositoryRef] = field(default_factory=list)
    git_name: str | None = None


class Provisioner:
    """Runs the provisioning pipeline for one record."""

    def __init__(
        self,
        store: ProvisioningStore,
        provider: ComputeProvider,
        github: GitHubClient | None = None,
        *,
        token: CancelToken | None = None,
        events: EventChannel | None = None,
        run_id: str | None = None,
        create_attempts: int | None = None,
        create_retry_delay: float | None = None,
        race_recovery_delay: float = 5.0,
    ) -> None:
        self.store = store
        self.provider = provider
        self.github = github
        self.token = token or CancelToken()
        self.events = events
        self.run_id = run_id
        self.create_attempts = create_attempts or settings.create_attempts
        self.create_retry_delay = (
            settings.create_retry_delay_seconds
            if create_retry_delay is None
            else create_retry_delay
        )
        self.race_recovery_delay = race_recovery_delay
        self._executor: RemoteExecutor | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, record_id: UUID | str, request: SetupRequest) -> ProvisioningRecord:
        """Drive the record to a terminal status. Never raises for step failures."""
        log.info("provisioning_started", record_id=str(record_id), backend=request.backend)
        try:
            await self._pipeline(record_id, request)
        except RunCancelledError as e:
            log.info("provisioning_cancelled", record_id=str(record_id))
            await self._fail(record_id, e.message or CANCELLED_MESSAGE)
        except BillingRestrictionError as e:
            log.warning(
                "provisioning_requires_payment",
                record_id=str(record_id),
                instance_class=e.instance_class,
            )
            await self._finish(
                record_id,
                ProvisioningStatus.REQUIRES_PAYMENT,
                f"BILLING_REQUIRED:{e.instance_class}",
            )
        except ClawforgeError as e:
            log.warning("provisioning_failed", record_id=str(record_id), error=e.message)
            await self._fail(record_id, e.message)
        except asyncio.CancelledError:
            await self._fail(record_id, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            log.exception("provisioning_crashed", record_id=str(record_id))
            await self._fail(record_id, str(e) or type(e).__name__)
        finally:
            await self._close_executor()
            if self.run_id is not None:
                await self.store.release_run(record_id, self.run_id)
        return await self.store.require(record_id)

    async def teardown(self, record_id: UUID | str) -> ProvisioningRecord:
        """Destroy the compute resource and reset the record to ``pending``."""
        record = await self.store.require(record_id)
        if record.compute_id:
            try:
                await self.provider.delete(record.compute_id)
                log.info("compute_deleted", record_id=str(record.id), compute_id=record.compute_id)
            except ClawforgeError as e:
                log.warning(
                    "compute_delete_failed",
                    record_id=str(record.id),
                    compute_id=record.compute_id,
                    error=e.message,
                )
        return await self.store.reset(record.id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _pipeline(self, record_id: UUID | str, request: SetupRequest) -> None:
        if self.github is None:
            raise ConfigurationError("A repository host client is required to provision")
        record = await self.store.update(
            record_id, status=ProvisioningStatus.PROVISIONING, error_message=None
        )

        self._emit("Validate credentials", "Validating backend credentials...")
        await self.provider.validate_credentials()
        self.token.raise_if_cancelled()

        record, runner, fresh_vm = await self._ensure_compute(record)
        record, fresh_repo = await self._ensure_repository(record)
        record = await self.store.update(record.id, status=ProvisioningStatus.CONFIGURING_VM)

        bootstrap = RuntimeBootstrap(runner)
        needs_clone = fresh_vm or fresh_repo or not record.repository_cloned
        needs_runtime = fresh_vm or not record.runtime_installed

        if needs_clone or needs_runtime:
            system = await self.provider.prepare_system(runner)
            system.raise_for_failure()

        if needs_clone:
            record = await self._clone_vault(record, bootstrap, request, fresh_vm)
        else:
            runner.emit("Clone vault", "Vault already cloned, skipping")

        if fresh_vm or not record.sync_configured:
            (await bootstrap.install_sync()).raise_for_failure()
            record = await self.store.update(record.id, sync_configured=True)

        if needs_runtime:
            outcome = await BackgroundInstaller(runner).install()
            outcome.result.raise_for_failure()
            record = await self.store.update(
                record.id, runtime_installed=True, runtime_version=outcome.version
            )
        else:
            runner.emit("Install Clawdbot", "Clawdbot already installed, skipping")
        version = record.runtime_version or settings.runtime_fallback_version

        (await bootstrap.link_vault()).raise_for_failure()

        if request.repositories:
            await self._link_repositories(record, bootstrap, request.repositories)

        record = await self._configure_channel(
            record, runner, bootstrap, request, version, fresh_vm
        )

        await self._finish(record.id, ProvisioningStatus.READY, None)
        runner.emit("Complete", "Provisioning complete")
        log.info("provisioning_ready", record_id=str(record.id))

    async def _ensure_compute(
        self, record: ProvisioningRecord
    ) -> tuple[ProvisioningRecord, StepRunner, bool]:
        handle: ComputeHandle | None = None
        fresh = False
        if record.resource_created and record.compute_id:
            existing = await self.provider.describe(record.compute_id)
            if existing is not None:
                handle = dataclasses.replace(
                    existing,
                    ssh_private_key=existing.ssh_private_key or record.ssh_private_key,
                    project_id=existing.project_id or record.project_id,
                    project_name=existing.project_name or record.project_name,
                )
                self._emit("Create VM", f"Reusing existing VM {handle.name}")
                log.info("compute_reused", record_id=str(record.id), compute_id=handle.id)
            else:
                log.warning(
                    "compute_missing", record_id=str(record.id), compute_id=record.compute_id
                )

        if handle is None:
            handle = await self._create_compute()
            fresh = True
            record = await self.store.update(
                record.id, resource_created=True, **handle.record_fields()
            )
            self._emit("Create VM", f"Created {handle.name}")
            log.info("compute_created", record_id=str(record.id), compute_id=handle.id)
            if self.provider.boot_grace:
                await self.token.sleep(self.provider.boot_grace)

        handle = await self.provider.wait_until_addressable(handle)
        record = await self.store.update(record.id, **handle.record_fields())

        self._executor = await self.provider.open_executor(handle)
        runner = StepRunner(self._executor, token=self.token, events=self.events)
        (await runner.wait_until_ready()).raise_for_failure()
        return record, runner, fresh

    async def _create_compute(self) -> ComputeHandle:
        name = self.provider.generate_name()
        last_error: ClawforgeError | None = None
        for attempt in range(1, self.create_attempts + 1):
            self.token.raise_if_cancelled()
            self._emit("Create VM", f"Creating {name} (attempt {attempt}/{self.create_attempts})")
            try:
                return await self.provider.create(name)
            except ClawforgeError as e:
                if self.provider.is_billing_restriction(e):
                    raise BillingRestrictionError(self.provider.instance_class, e.message) from e
                last_error = e
                log.warning("compute_create_failed", attempt=attempt, name=name, error=e.message)

                if self.provider.is_timeout(e):
                    # Creation may have completed server-side
                    await self.token.sleep(self.race_recovery_delay)
                    found = await self.provider.find_by_name(name)
                    if found is not None:
                        self._emit("Create VM", f"Recovered {name} after client-side timeout")
                        log.info("compute_recovered", name=name, compute_id=found.id)
                        return found

            if attempt < self.create_attempts:
                await self.token.sleep(self.create_retry_delay)

        assert last_error is not None
        raise ProviderError(
            f"Failed to create compute resource after {self.create_attempts} attempts: "
            f"{last_error.message}"
        ) from last_error

    async def _ensure_repository(
        self, record: ProvisioningRecord
    ) -> tuple[ProvisioningRecord, bool]:
        assert self.github is not None
        # Teardown clears repository_ready but keeps the name for reuse
        if record.repository_name:
            if await self.github.repo_exists(record.repository_name):
                self._emit("Create repository", f"Reusing repository {record.repository_name}")
                if not record.repository_ready:
                    record = await self.store.update(record.id, repository_ready=True)
                return record, False
            log.warning(
                "repository_missing", record_id=str(record.id), name=record.repository_name
            )

        record = await self.store.update(record.id, status=ProvisioningStatus.CREATING_REPO)
        repo = await self.github.create_repository(vault_repository_name())
        self._emit("Create repository", f"Created repository {repo.name}")
        record = await self.store.update(
            record.id,
            repository_ready=True,
            repository_name=repo.name,
            repository_url=repo.url,
        )
        return record, True

    async def _clone_vault(
        self,
        record: ProvisioningRecord,
        bootstrap: RuntimeBootstrap,
        request: SetupRequest,
        fresh_vm: bool,
    ) -> ProvisioningRecord:
        assert self.github is not None
        assert record.repository_name is not None
        key_result, public_key = await bootstrap.generate_deploy_key(reuse_existing=not fresh_vm)
        key_result.raise_for_failure()
        await self.github.create_deploy_key(
            record.repository_name,
            public_key,
            title=f"clawdbot-{record.compute_name or record.compute_id}",
        )
        bootstrap.runner.emit("Register deploy key", "Deploy key added to repository")

        user = await self.github.get_user()
        git = await bootstrap.configure_git(request.git_name or user.login, user.commit_email)
        git.raise_for_failure()

        ssh_url = self.github.ssh_url(user.login, record.repository_name)
        (await bootstrap.clone_vault(ssh_url)).raise_for_failure()
        return await self.store.update(record.id, repository_cloned=True)

    async def _link_repositories(
        self,
        record: ProvisioningRecord,
        bootstrap: RuntimeBootstrap,
        repositories: list[RepositoryRef],
    ) -> None:
        """Best effort: failures are reported, never raised."""
        assert self.github is not None
        errors = await bootstrap.clone_repositories(repositories)
        for name, error in errors.items():
            log.warning("repository_link_failed", record_id=str(record.id), repo=name, error=error)

        linked = [repo for repo in repositories if repo.name not in errors]
        if not linked or not record.repository_name:
            return
        try:
            await self.github.write_file(
                record.repository_name,
                REPOSITORIES_INDEX_PATH,
                repositories_index(linked),
                "Update connected repositories",
            )
        except RepositoryHostError as e:
            bootstrap.runner.emit(
                "Knowledge Setup", f"Could not write repositories index: {e.message}", success=False
            )
            log.warning("repositories_index_failed", record_id=str(record.id), error=e.message)

    async def _configure_channel(
        self,
        record: ProvisioningRecord,
        runner: StepRunner,
        bootstrap: RuntimeBootstrap,
        request: SetupRequest,
        version: str,
        fresh_vm: bool,
    ) -> ProvisioningRecord:
        channel = request.channel
        if channel is None:
            key = request.model_api_key or settings.anthropic_api_key.get_secret_value()
            if key:
                (await bootstrap.store_model_key(key)).raise_for_failure()
            else:
                runner.emit("Store Claude API key", "No model credential supplied, skipping")
            return record

        if fresh_vm or not record.channel_configured:
            (await bootstrap.configure_channel(channel, version)).raise_for_failure()
            record = await self.store.update(record.id, channel_configured=True)
        elif record.gateway_started:
            runner.emit("Setup Clawdbot", "Channel already configured, skipping")
            return record

        started = await GatewayVerifier(runner).start(channel.model_api_key, channel.bot_token)
        if started.ok:
            record = await self.store.update(record.id, gateway_started=True)
        else:
            # Gateway may still come up later; the run itself succeeded
            log.warning("gateway_not_started", record_id=str(record.id), error=started.message)
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fail(self, record_id: UUID | str, message: str) -> None:
        await self._finish(record_id, ProvisioningStatus.FAILED, message)
        if not self.provider.destroy_on_failure:
            return
        record = await self.store.get(record_id)
        if record is None or not record.compute_id:
            return
        try:
            await self.provider.delete(record.compute_id)
            log.info("compute_destroyed_on_failure", compute_id=record.compute_id)
        except ClawforgeError as e:
            log.warning("compute_destroy_failed", compute_id=record.compute_id, error=e.message)

    async def _finish(
        self, record_id: UUID | str, status: ProvisioningStatus, message: str | None
    ) -> None:
        try:
            await self.store.update(record_id, status=status, error_message=message)
        except Exception:
            log.exception("status_persist_failed", record_id=str(record_id), status=status)
        if message:
            self._emit("Provisioning", message, success=False)

    async def _close_executor(self) -> None:
        if self._executor is None:
            return
        try:
            await self._executor.close()
        except Exception as e:
            log.debug("executor_close_failed", error=str(e))
        self._executor = None

    def _emit(self, step: str, message: str, success: bool = True) -> None:
        if self.events is not None:
            self.events.publish(ProgressEvent(step=step, message=message, success=success))


def default_provider_factory(backend: Backend, owner_id: str) -> ComputeProvider:
    if backend is Backend.E2B:
        return get_provider(backend, owner_id=owner_id)
    return get_provider(backend)


@dataclass
class _Run:
    run_id: str
    task: asyncio.Task[ProvisioningRecord]
    token: CancelToken
    events: EventChannel


class ProvisioningService:
    """Starts, tracks and controls provisioning runs in this process."""

    def __init__(
        self,
        store: ProvisioningStore,
        *,
        provider_factory: ProviderFactory | None = None,
        github_factory: GitHubFactory | None = None,
        stale_after: float | None = None,
        retained_channels: int = 100,
    ) -> None:
        self.store = store
        self.provider_factory = provider_factory or default_provider_factory
        self.github_factory = github_factory or GitHubClient
        self.stale_after = settings.run_marker_stale_seconds if stale_after is None else stale_after
        self.retained_channels = retained_channels
        self._runs: dict[str, _Run] = {}
        self._channels: dict[str, EventChannel] = {}

    async def start(self, request: SetupRequest, *, force: bool = False) -> ProvisioningRecord:
        """Claim the record and launch the pipeline in the background.

        ``force`` takes over a run marker left by another process; a run live
        in this process is never taken over.
        """
        record = await self.store.get_or_create(request.owner_id, request.backend)
        if self.is_running(record.id):
            raise RunInProgressError(str(record.id), self._runs[str(record.id)].run_id)

        provider = self.provider_factory(request.backend, request.owner_id)
        github = self.github_factory()
        run_id = uuid4().hex
        try:
            record = await self.store.claim_run(
                record.id, run_id, 0.0 if force else self.stale_after
            )
        except RunInProgressError:
            await provider.close()
            await github.close()
            raise
        if force:
            log.warning("run_marker_taken_over", record_id=str(record.id), run_id=run_id)

        token = CancelToken()
        events = EventChannel()
        provisioner = Provisioner(
            self.store, provider, github, token=token, events=events, run_id=run_id
        )
        task = asyncio.create_task(
            self._execute(provisioner, record.id, request, events),
            name=f"provision-{record.id}",
        )
        self._runs[str(record.id)] = _Run(run_id, task, token, events)
        self._channels.pop(str(record.id), None)
        self._channels[str(record.id)] = events
        log.info("provisioning_scheduled", record_id=str(record.id), run_id=run_id)
        return record

    async def _execute(
        self,
        provisioner: Provisioner,
        record_id: UUID,
        request: SetupRequest,
        events: EventChannel,
    ) -> ProvisioningRecord:
        try:
            return await provisioner.run(record_id, request)
        finally:
            events.close()
            await provisioner.provider.close()
            if provisioner.github is not None:
                await provisioner.github.close()
            run = self._runs.get(str(record_id))
            if run is not None and run.run_id == provisioner.run_id:
                del self._runs[str(record_id)]
            self._drop_old_channels()

    def _drop_old_channels(self) -> None:
        """Keep only the most recent ``retained_channels`` finished channels."""
        finished = [key for key in self._channels if key not in self._runs]
        for key in finished[: max(0, len(finished) - self.retained_channels)]:
            del self._channels[key]

    async def recover_interrupted(self) -> list[ProvisioningRecord]:
        """Fail records whose run marker has no live run in this process.

        Call once when the process that owns provisioning runs starts; markers
        left by a crashed process would otherwise block the record until they
        go stale.
        """
        recovered = []
        for record in await self.store.list():
            if record.run_id is None or self.is_running(record.id):
                continue
            if record.status not in TERMINAL_STATUSES:
                record = await self.store.update(
                    record.id,
                    status=ProvisioningStatus.FAILED,
                    error_message=INTERRUPTED_MESSAGE,
                )
            await self.store.release_run(record.id, record.run_id)
            log.warning("provisioning_interrupted", record_id=str(record.id))
            recovered.append(await self.store.require(record.id))
        return recovered

    def is_running(self, record_id: UUID | str) -> bool:
        return str(record_id) in self._runs

    def cancel(self, record_id: UUID | str) -> bool:
        run = self._runs.get(str(record_id))
        if run is None:
            return False
        run.token.cancel(CANCELLED_MESSAGE)
        log.info("provisioning_cancel_requested", record_id=str(record_id))
        return True

    async def wait(self, record_id: UUID | str) -> ProvisioningRecord:
        run = self._runs.get(str(record_id))
        if run is not None:
            await asyncio.shield(run.task)
        return await self.store.require(record_id)

    def events(self, record_id: UUID | str) -> EventChannel | None:
        """Channel of the current or most recent run of the record, if any."""
        return self._channels.get(str(record_id))

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to record their status."""
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel(CANCELLED_MESSAGE)
        if runs:
            await asyncio.gather(*(run.task for run in runs), return_exceptions=True)
        log.info("provisioning_service_stopped", cancelled=len(runs))

    async def teardown(self, record_id: UUID | str) -> ProvisioningRecord:
        record = await self.store.require(record_id)
        if self.is_running(record.id):
            raise RunInProgressError(str(record.id), self._runs[str(record.id)].run_id)
        provider = self.provider_factory(Backend(record.backend), record.owner_id)
        try:
            return await Provisioner(self.store, provider).teardown(record.id)
        finally:
            await provider.close()

    async def restart_gateway(
        self, record_id: UUID | str, channel: ChannelConfig | None = None
    ) -> StepResult:
        """Restart the gateway on an existing resource and persist its liveness."""
        channel = channel or self._default_channel()
        run_id = uuid4().hex
        record = await self.store.require(record_id)
        record = await self.store.claim_run(record.id, run_id, self.stale_after)
        try:
            async with self.remote(record) as runner:
                result = await GatewayVerifier(runner).start(
                    channel.model_api_key, channel.bot_token
                )
            if result.ok:
                await self.store.update(record.id, gateway_started=True)
            log.info("gateway_restarted", record_id=str(record.id), ok=result.ok)
            return result
        finally:
            await self.store.release_run(record.id, run_id)

    async def gateway_status(self, record_id: UUID | str) -> GatewayStatus:
        record = await self.store.require(record_id)
        async with self.remote(record) as runner:
            return await GatewayVerifier(runner).status()

    def _default_channel(self) -> ChannelConfig:
        model_key = settings.anthropic_api_key.get_secret_value()
        bot_token = settings.telegram_bot_token.get_secret_value()
        if not model_key or not bot_token:
            raise ConfigurationError("Model credential and bot token are required for the gateway")
        return ChannelConfig(
            model_api_key=model_key,
            bot_token=bot_token,
            allowed_user_id=settings.telegram_user_id or None,
        )

    def remote(self, record: ProvisioningRecord) -> _RemoteRunner:
        """Async context yielding a ``StepRunner`` on the record's resource."""
        if not record.compute_id:
            raise RecordStateError(f"Record {record.id} has no compute resource")
        provider = self.provider_factory(Backend(record.backend), record.owner_id)
        return _RemoteRunner(provider, ComputeHandle.from_record(record))

    async def open_executor(self, record: ProvisioningRecord) -> RemoteExecutor:
        """Long-lived executor on the record's resource; closing it closes the provider."""
        if not record.compute_id:
            raise RecordStateError(f"Record {record.id} has no compute resource")
        provider = self.provider_factory(Backend(record.backend), record.owner_id)
        try:
            executor = await provider.open_executor(ComputeHandle.from_record(record))
        except BaseException:
            await provider.close()
            raise
        return _ProviderBoundExecutor(executor, provider)


class _ProviderBoundExecutor(RemoteExecutor):
    """Delegates to an executor and closes its provider along with it."""

    def __init__(self, executor: RemoteExecutor, provider: ComputeProvider) -> None:
        self.executor = executor
        self.provider = provider
        self.retry_transport = executor.retry_transport

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        return await self.executor.execute(command, timeout=timeout)

    async def close(self) -> None:
        try:
            await self.executor.close()
        finally:
            await self.provider.close()


class _RemoteRunner:
    """Async context yielding a ``StepRunner`` on an existing resource."""

    def __init__(self, provider: ComputeProvider, handle: ComputeHandle) -> None:
        self.provider = provider
        self.handle = handle
        self._executor: RemoteExecutor | None = None

    async def __aenter__(self) -> StepRunner:
        try:
            self._executor = await self.provider.open_executor(self.handle)
        except BaseException:
            await self.provider.close()
            raise
        return StepRunner(self._executor)

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            if self._executor is not None:
                await self._executor.close()
        finally:
            await self.provider.close()
