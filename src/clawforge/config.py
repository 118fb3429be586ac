"""Configuration management for clawforge."""

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLAWFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server configuration
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Runtime environment (development, staging, production)",
    )
    server_host: str = Field(default="localhost", description="API bind host")
    server_port: int = Field(default=3340, description="API bind port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./clawforge.db",
        description="SQLAlchemy async URL for provisioning records",
    )
    api_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL the agent's communication helper calls back into",
    )

    # Orgo
    orgo_api_key: SecretStr = Field(default=SecretStr(""), description="Orgo API key")
    orgo_api_base: str = Field(default="https://www.orgo.ai/api", description="Orgo API base URL")
    orgo_request_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Default timeout for Orgo API calls"
    )
    orgo_bash_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Timeout for a single remote bash call"
    )
    orgo_project_name: str = Field(default="claude-brain", description="Orgo project to use")
    orgo_ram_gb: Literal[1, 2, 4, 8, 16, 32, 64] = Field(default=4, description="VM RAM (GB)")
    orgo_cpu: Literal[1, 2, 4, 8, 16] = Field(default=2, description="VM CPU cores")
    orgo_boot_grace_seconds: float = Field(
        default=10.0, ge=0, description="Wait after computer creation before configuring it"
    )

    # AWS
    aws_access_key_id: SecretStr = Field(default=SecretStr(""), description="AWS access key id")
    aws_secret_access_key: SecretStr = Field(
        default=SecretStr(""), description="AWS secret access key"
    )
    aws_region: str = Field(default="us-east-1", description="AWS region for new instances")
    aws_instance_type: str = Field(default="t3.micro", description="EC2 instance type")
    aws_volume_size_gb: int = Field(default=30, ge=8, le=1024, description="Root volume size")
    aws_ssh_user: str = Field(default="ubuntu", description="Login user on the Ubuntu AMI")
    aws_running_timeout_seconds: int = Field(
        default=300, ge=30, description="Max wait for an instance to reach 'running'"
    )

    # E2B
    e2b_api_key: SecretStr = Field(default=SecretStr(""), description="E2B API key")
    e2b_template: str = Field(default="base", description="E2B sandbox template")
    e2b_timeout_seconds: int = Field(
        default=3600, ge=60, description="Sandbox lifetime before E2B kills it"
    )

    # Repository host
    github_token: SecretStr = Field(default=SecretStr(""), description="GitHub access token")
    github_api_base: str = Field(default="https://api.github.com", description="GitHub API URL")
    vault_repo_prefix: str = Field(
        default="samantha-vault", description="Prefix for newly created vault repositories"
    )

    # Agent runtime
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""), description="Model credential handed to the agent runtime"
    )
    telegram_bot_token: SecretStr = Field(
        default=SecretStr(""), description="Default Telegram bot token for the gateway"
    )
    telegram_user_id: str = Field(default="", description="Default Telegram allowlisted user")
    heartbeat_interval_minutes: int = Field(
        default=30, ge=1, le=1440, description="Agent heartbeat interval"
    )
    gateway_port: int = Field(default=18789, description="Local gateway control port")
    runtime_fallback_version: str = Field(
        default="2026.1.22", description="Runtime version assumed when package.json is unreadable"
    )

    # Step runner / polling knobs
    step_retries: int = Field(default=2, ge=0, le=10, description="Transport retries per step")
    step_backoff_seconds: float = Field(
        default=2.0, ge=0, description="Linear backoff base between transport retries"
    )
    readiness_attempts: int = Field(default=15, ge=1, description="VM readiness check attempts")
    readiness_interval_seconds: float = Field(default=5.0, ge=0, description="Readiness interval")
    apt_lock_attempts: int = Field(default=30, ge=1, description="Package-manager lock attempts")
    apt_lock_interval_seconds: float = Field(
        default=10.0, ge=0, description="Delay between package-manager lock attempts"
    )
    install_poll_interval_seconds: float = Field(
        default=10.0, ge=0, description="Background install poll interval"
    )
    install_poll_attempts: int = Field(default=60, ge=1, description="Background install polls")
    install_poll_extension: int = Field(
        default=30, ge=0, description="Extra polls granted while the installer is still alive"
    )
    gateway_check_attempts: int = Field(default=5, ge=1, description="Gateway liveness checks")
    gateway_check_interval_seconds: float = Field(
        default=5.0, ge=0, description="Delay between gateway liveness checks"
    )
    create_attempts: int = Field(default=3, ge=1, description="Compute creation attempts")
    create_retry_delay_seconds: float = Field(
        default=3.0, ge=0, description="Delay between compute creation attempts"
    )

    # Sessions / runs
    session_ttl_seconds: int = Field(
        default=1800, ge=60, description="Idle TTL for interactive remote sessions"
    )
    session_reap_interval_seconds: int = Field(
        default=60, ge=1, description="How often expired sessions are reaped"
    )
    run_marker_stale_seconds: int = Field(
        default=7200, ge=60, description="Age after which a run-in-progress marker is ignored"
    )

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Prevent development defaults from leaking into production."""
        if self.environment == "production":
            if self.database_url.startswith("sqlite"):
                raise ValueError(
                    "CRITICAL: SQLite is not supported in production. "
                    "Set CLAWFORGE_DATABASE_URL to a server database."
                )
            if "localhost" in self.api_base_url:
                raise ValueError(
                    "CRITICAL: api_base_url points at localhost in production. "
                    "Set CLAWFORGE_API_BASE_URL to the public callback URL."
                )
        return self


# Global settings instance
settings = Settings()
