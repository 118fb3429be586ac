"""Tests for the clawforge CLI."""

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest
from pydantic import SecretStr
from typer.testing import CliRunner

from clawforge.cli import app
from clawforge.config import settings
from clawforge.db.connection import async_session_factory, close_db, init_db
from clawforge.db.models import Backend
from clawforge.db.store import ProvisioningStore
from clawforge.errors import RunInProgressError
from clawforge.provisioning.orchestrator import ProvisioningService

runner = CliRunner()


@pytest.fixture
def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(settings, "database_url", url)
    return url


def _seed(**fields: Any) -> str:
    async def seed() -> str:
        await init_db()
        try:
            store = ProvisioningStore(async_session_factory())
            record = await store.create("user-1", Backend.AWS, **fields)
            return str(record.id)
        finally:
            await close_db()

    return asyncio.run(seed())


class TestCLI:
    """Tests for CLI commands."""

    def test_help(self) -> None:
        """Every command is listed."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("provision", "status", "cancel", "teardown", "gateway-status", "exec"):
            assert command in result.output

    @pytest.mark.usefixtures("database")
    def test_init_db(self) -> None:
        """init-db creates the tables."""
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Database initialized" in result.output

    @pytest.mark.usefixtures("database")
    def test_status_empty(self) -> None:
        """Listing an empty database says so."""
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "No provisioning records" in result.output

    @pytest.mark.usefixtures("database")
    def test_status_record(self) -> None:
        """A single record is shown with its progress."""
        record_id = _seed(compute_id="i-123", error_message="Failed to clone vault repository")

        result = runner.invoke(app, ["status", record_id])

        assert result.exit_code == 0
        assert "i-123" in result.output
        assert "aws" in result.output

    @pytest.mark.usefixtures("database")
    def test_status_unknown(self) -> None:
        """Unknown and malformed ids fail."""
        missing = runner.invoke(app, ["status", "00000000-0000-0000-0000-000000000000"])
        assert missing.exit_code == 1
        assert "not found" in missing.output

        malformed = runner.invoke(app, ["status", "not-a-uuid"])
        assert malformed.exit_code == 1

    def test_provision_needs_model_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A bot token without a model key is refused before anything starts."""
        monkeypatch.setattr(settings, "anthropic_api_key", SecretStr(""))
        result = runner.invoke(app, ["provision", "user-1", "--bot-token", "1:t"])
        assert result.exit_code == 1
        assert "model API key" in result.output

    def test_provision_bad_repo(self) -> None:
        """Extra repositories must be NAME=SSH_URL."""
        result = runner.invoke(app, ["provision", "user-1", "--repo", "just-a-name"])
        assert result.exit_code == 2

    @pytest.mark.usefixtures("database")
    def test_provision_force(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """--force is passed to the service; a refused start exits non-zero."""
        calls: list[bool] = []

        async def start(self: ProvisioningService, request: Any, *, force: bool = False) -> Any:
            calls.append(force)
            raise RunInProgressError("record-1", "run-1")

        monkeypatch.setattr(ProvisioningService, "start", start)

        result = runner.invoke(app, ["provision", "user-1", "--force"])

        assert result.exit_code == 1
        assert "already in progress" in result.output
        assert calls == [True]

    def test_cancel(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Cancel asks the API server that owns the run."""
        calls: list[str] = []

        def fake_post(url: str, **kwargs: Any) -> httpx.Response:
            calls.append(url)
            return httpx.Response(200, json={"cancelled": True}, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx, "post", fake_post)

        result = runner.invoke(app, ["cancel", "abc", "--api", "http://api.test/"])

        assert result.exit_code == 0
        assert calls == ["http://api.test/setup/abc/cancel"]
        assert "Cancellation requested" in result.output

    def test_cancel_unreachable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An unreachable API server fails the command."""

        def fake_post(url: str, **kwargs: Any) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(httpx, "post", fake_post)

        result = runner.invoke(app, ["cancel", "abc", "--api", "http://api.test"])

        assert result.exit_code == 1

    def test_teardown_requires_confirmation(self) -> None:
        """Declining the prompt aborts without touching anything."""
        result = runner.invoke(app, ["teardown", "abc"], input="n\n")
        assert result.exit_code == 1
