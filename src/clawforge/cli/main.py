"""Main CLI application.

This is the entry point for the clawforge CLI.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
import typer

from clawforge.cli.common import (
    CORAL,
    ELECTRIC_PURPLE,
    NEON_CYAN,
    console,
    create_panel,
    create_table,
    error,
    format_status,
    info,
    run_async,
    success,
    warn,
    yes_no,
)
from clawforge.config import settings
from clawforge.db.models import PROGRESS_FLAGS, Backend, ProvisioningRecord
from clawforge.errors import ClawforgeError
from clawforge.execution.base import CommandResult
from clawforge.provisioning.gateway import GatewayStatus
from clawforge.provisioning.orchestrator import ProvisioningService, SetupRequest
from clawforge.provisioning.runtime import ChannelConfig, RepositoryRef
from clawforge.provisioning.steps import StepResult

app = typer.Typer(
    name="clawforge",
    help="clawforge - provision and bootstrap clawdbot agent hosts",
    add_completion=False,
    no_args_is_help=True,
)


@asynccontextmanager
async def open_service() -> AsyncIterator[ProvisioningService]:
    """Service bound to the configured database for the duration of a command."""
    from clawforge.db.connection import async_session_factory, close_db, init_db
    from clawforge.db.store import ProvisioningStore

    await init_db()
    service = ProvisioningService(ProvisioningStore(async_session_factory()))
    try:
        yield service
    finally:
        await service.shutdown()
        await close_db()


def print_record(record: ProvisioningRecord) -> None:
    table = create_table(f"Provisioning {record.id}", "Field", "Value")
    table.add_row("Owner", record.owner_id)
    table.add_row("Backend", record.backend)
    table.add_row("Status", format_status(record.status))
    for flag in PROGRESS_FLAGS:
        table.add_row(flag.replace("_", " ").title(), yes_no(getattr(record, flag)))
    if record.compute_id:
        table.add_row("Compute", f"{record.compute_name or ''} ({record.compute_id})")
    if record.compute_address:
        table.add_row("Address", record.compute_address)
    if record.repository_name:
        table.add_row("Repository", record.repository_url or record.repository_name)
    if record.runtime_version:
        table.add_row("Runtime", record.runtime_version)
    if record.error_message:
        table.add_row("Error", f"[{CORAL}]{record.error_message}[/{CORAL}]")
    console.print(table)


def _parse_repo(value: str) -> RepositoryRef:
    name, sep, ssh_url = value.partition("=")
    if not sep or not name or not ssh_url:
        raise typer.BadParameter(f"Expected NAME=SSH_URL, got {value!r}")
    return RepositoryRef(name=name, ssh_url=ssh_url)


@app.command("init-db")
def init_db_command() -> None:
    """Create the provisioning tables."""

    @run_async
    async def _init() -> None:
        from clawforge.db.connection import close_db, init_db

        await init_db()
        await close_db()

    _init()
    success("Database initialized")


@app.command()
def provision(
    owner: Annotated[str, typer.Argument(help="Owner identifier")],
    backend: Annotated[
        Backend, typer.Option("--backend", "-b", help="Compute backend")
    ] = Backend.ORGO,
    bot_token: Annotated[
        str | None, typer.Option("--bot-token", help="Telegram bot token (enables the gateway)")
    ] = None,
    telegram_user: Annotated[
        str | None, typer.Option("--telegram-user", help="Allowlisted Telegram user id")
    ] = None,
    model_key: Annotated[
        str | None, typer.Option("--model-key", help="Model API key (defaults to settings)")
    ] = None,
    repos: Annotated[
        list[str] | None, typer.Option("--repo", help="Extra repository NAME=SSH_URL")
    ] = None,
    git_name: Annotated[str | None, typer.Option("--git-name", help="Git user.name")] = None,
    force: Annotated[
        bool, typer.Option("--force", help="Take over a run marker left by a dead process")
    ] = False,
) -> None:
    """Provision (or resume provisioning) an agent host and follow its progress."""
    model_key = model_key or settings.anthropic_api_key.get_secret_value() or None
    bot_token = bot_token or settings.telegram_bot_token.get_secret_value() or None
    channel = None
    if bot_token:
        if not model_key:
            error("A model API key is required when a bot token is given")
            raise typer.Exit(code=1)
        channel = ChannelConfig(
            model_api_key=model_key,
            bot_token=bot_token,
            allowed_user_id=telegram_user or settings.telegram_user_id or None,
            heartbeat_minutes=settings.heartbeat_interval_minutes,
            owner_id=owner,
        )
    request = SetupRequest(
        owner_id=owner,
        backend=backend,
        channel=channel,
        model_api_key=model_key,
        repositories=[_parse_repo(r) for r in repos or []],
        git_name=git_name,
    )

    @run_async
    async def _provision() -> ProvisioningRecord | None:
        async with open_service() as service:
            try:
                record = await service.start(request, force=force)
            except ClawforgeError as e:
                error(e.message)
                return None
            console.print(
                create_panel(f"Provisioning {owner} on {backend.value}", title=str(record.id))
            )
            channel_events = service.events(record.id)
            if channel_events is not None:
                async for event in channel_events.subscribe():
                    color = NEON_CYAN if event.success else CORAL
                    console.print(
                        f"[{ELECTRIC_PURPLE}]{event.step}[/{ELECTRIC_PURPLE}] "
                        f"[{color}]{event.message}[/{color}]"
                    )
            return await service.wait(record.id)

    try:
        record = _provision()
    except KeyboardInterrupt:
        warn("Interrupted; the run was cancelled and can be resumed")
        raise typer.Exit(code=130) from None
    if record is None:
        raise typer.Exit(code=1)
    print_record(record)
    if record.status != "ready":
        raise typer.Exit(code=1)


@app.command()
def status(
    record_id: Annotated[str | None, typer.Argument(help="Record id")] = None,
    owner: Annotated[str | None, typer.Option("--owner", "-o", help="List an owner")] = None,
) -> None:
    """Show one provisioning record, or list records."""

    @run_async
    async def _status() -> list[ProvisioningRecord]:
        async with open_service() as service:
            if record_id:
                return [await service.store.require(record_id)]
            return await service.store.list(owner_id=owner)

    try:
        records = _status()
    except (ClawforgeError, ValueError) as e:
        error(getattr(e, "message", str(e)))
        raise typer.Exit(code=1) from None

    if record_id:
        print_record(records[0])
        return
    if not records:
        info("No provisioning records")
        return
    table = create_table("Provisioning records", "ID", "Owner", "Backend", "Status", "Compute")
    for record in records:
        table.add_row(
            str(record.id),
            record.owner_id,
            record.backend,
            format_status(record.status),
            record.compute_id or "-",
        )
    console.print(table)


@app.command()
def cancel(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    api_url: Annotated[
        str | None, typer.Option("--api", help="clawforge API base URL running the job")
    ] = None,
) -> None:
    """Cancel a run that is executing inside the API server."""
    base = api_url or f"http://{settings.server_host}:{settings.server_port}"
    try:
        response = httpx.post(f"{base.rstrip('/')}/setup/{record_id}/cancel", timeout=10.0)
    except httpx.HTTPError as e:
        error(f"Could not reach {base}: {e}")
        raise typer.Exit(code=1) from None
    if response.is_error:
        error(f"Cancel failed: {response.status_code} {response.text}")
        raise typer.Exit(code=1)
    if response.json().get("cancelled"):
        success("Cancellation requested")
    else:
        warn("No run in progress for this record")


@app.command()
def teardown(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete the compute resource and reset the record (the vault repository is kept)."""
    if not yes:
        typer.confirm(f"Destroy the compute resource of {record_id}?", abort=True)

    @run_async
    async def _teardown() -> ProvisioningRecord:
        async with open_service() as service:
            return await service.teardown(record_id)

    try:
        record = _teardown()
    except (ClawforgeError, ValueError) as e:
        error(getattr(e, "message", str(e)))
        raise typer.Exit(code=1) from None
    success("Compute resource removed")
    print_record(record)


@app.command("gateway-status")
def gateway_status(record_id: Annotated[str, typer.Argument(help="Record id")]) -> None:
    """Inspect the gateway process, port and logs on a provisioned resource."""

    @run_async
    async def _inspect() -> GatewayStatus:
        async with open_service() as service:
            return await service.gateway_status(record_id)

    try:
        gateway = _inspect()
    except (ClawforgeError, ValueError) as e:
        error(getattr(e, "message", str(e)))
        raise typer.Exit(code=1) from None

    table = create_table("Gateway", "Check", "Value")
    table.add_row("Process running", yes_no(gateway.running))
    table.add_row("Port listening", yes_no(gateway.port_listening))
    table.add_row("Startup script", yes_no(gateway.startup_script_exists))
    console.print(table)
    if gateway.process_details:
        console.print(create_panel(gateway.process_details, title="Process"))
    if gateway.log_tail:
        console.print(create_panel(gateway.log_tail, title="Log tail"))
    if not gateway.healthy:
        raise typer.Exit(code=1)


@app.command("restart-gateway")
def restart_gateway(record_id: Annotated[str, typer.Argument(help="Record id")]) -> None:
    """Restart the gateway with the configured credentials."""

    @run_async
    async def _restart() -> StepResult:
        async with open_service() as service:
            return await service.restart_gateway(record_id)

    try:
        result = _restart()
    except (ClawforgeError, ValueError) as e:
        error(getattr(e, "message", str(e)))
        raise typer.Exit(code=1) from None
    if result.ok:
        success("Gateway restarted")
    else:
        error(result.message or "Gateway did not start")
        if result.output:
            console.print(create_panel(result.output, title="Log tail"))
        raise typer.Exit(code=1)


@app.command("exec")
def exec_command(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    command: Annotated[str, typer.Argument(help="Shell command to run on the resource")],
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Per-command timeout (seconds)")
    ] = None,
) -> None:
    """Run one command on a provisioned resource."""

    @run_async
    async def _exec() -> CommandResult:
        async with open_service() as service:
            record = await service.store.require(record_id)
            async with service.remote(record) as runner:
                return await runner.executor.execute(command, timeout=timeout)

    try:
        result = _exec()
    except (ClawforgeError, ValueError) as e:
        error(getattr(e, "message", str(e)))
        raise typer.Exit(code=1) from None
    if result.output:
        console.print(result.output, markup=False, highlight=False)
    raise typer.Exit(code=result.exit_code)


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Start the clawforge HTTP API."""
    from clawforge.main import run_server

    try:
        run_server(host=host, port=port)
    except KeyboardInterrupt:
        console.print(f"\n[{NEON_CYAN}]Shutting down...[/{NEON_CYAN}]")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
