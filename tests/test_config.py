"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from clawforge.config import Settings


class TestSettings:
    """Tests for Settings defaults and validation."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults describe a local development setup."""
        monkeypatch.delenv("CLAWFORGE_ENVIRONMENT", raising=False)
        config = Settings(_env_file=None)  # type: ignore[call-arg]
        assert config.environment == "development"
        assert config.database_url.startswith("sqlite+aiosqlite")
        assert config.gateway_port == 18789
        assert config.session_ttl_seconds == 1800
        assert config.run_marker_stale_seconds == 7200

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Values are read from CLAWFORGE_ variables and secrets stay wrapped."""
        monkeypatch.setenv("CLAWFORGE_AWS_REGION", "eu-west-1")
        monkeypatch.setenv("CLAWFORGE_GITHUB_TOKEN", "ghp_secret")
        config = Settings(_env_file=None)  # type: ignore[call-arg]
        assert config.aws_region == "eu-west-1"
        assert config.github_token.get_secret_value() == "ghp_secret"
        assert "ghp_secret" not in repr(config)

    def test_production_rejects_sqlite(self) -> None:
        """Production needs a server database."""
        with pytest.raises(ValidationError, match="SQLite is not supported"):
            Settings(  # type: ignore[call-arg]
                _env_file=None, environment="production", api_base_url="https://app.example.com"
            )

    def test_production_rejects_localhost_callback(self) -> None:
        """Production needs a public callback URL."""
        with pytest.raises(ValidationError, match="localhost"):
            Settings(  # type: ignore[call-arg]
                _env_file=None,
                environment="production",
                database_url="postgresql+asyncpg://db/clawforge",
            )

    def test_production_ok(self) -> None:
        config = Settings(  # type: ignore[call-arg]
            _env_file=None,
            environment="production",
            database_url="postgresql+asyncpg://db/clawforge",
            api_base_url="https://app.example.com",
        )
        assert config.environment == "production"

    def test_bounds(self) -> None:
        """Out-of-range knobs are rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, step_retries=50)  # type: ignore[call-arg]
