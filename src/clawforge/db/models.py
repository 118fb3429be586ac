"""SQLModel schema for provisioning state.

One ``ProvisioningRecord`` exists per (owner, backend) pair. It is the only
durable state of a provisioning run: progress flags, the handles needed to
reach the compute resource again, and the advisory run marker.
"""

from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID, uuid4

from sqlalchemy import Column, Index, String, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================


class Backend(StrEnum):
    """Compute backends a record can be provisioned on."""

    ORGO = "orgo"
    AWS = "aws"
    E2B = "e2b"


class ProvisioningStatus(StrEnum):
    """Lifecycle status of a provisioning record."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    CREATING_REPO = "creating_repo"
    CONFIGURING_VM = "configuring_vm"
    READY = "ready"
    FAILED = "failed"
    REQUIRES_PAYMENT = "requires_payment"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ProvisioningStatus.READY, ProvisioningStatus.FAILED, ProvisioningStatus.REQUIRES_PAYMENT}
)

# Progress flags in pipeline order. Only ``reset`` may clear them.
PROGRESS_FLAGS: tuple[str, ...] = (
    "resource_created",
    "repository_ready",
    "repository_cloned",
    "sync_configured",
    "runtime_installed",
    "channel_configured",
    "gateway_started",
)

# Compute handles dropped when the resource is torn down.
COMPUTE_HANDLES: tuple[str, ...] = (
    "compute_id",
    "compute_name",
    "compute_address",
    "compute_url",
    "project_id",
    "project_name",
    "region",
    "instance_class",
    "ssh_private_key",
    "runtime_version",
)


# =============================================================================
# Base Model
# =============================================================================


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was last updated",
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# ProvisioningRecord
# =============================================================================


class ProvisioningRecord(TimestampMixin, table=True):
    """Durable provisioning state for one owner on one backend."""

    __tablename__ = "provisioning_records"
    __table_args__ = (
        UniqueConstraint("owner_id", "backend", name="ix_provisioning_owner_backend_unique"),
        Index("ix_provisioning_status", "status"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True, description="Owning user identifier")
    backend: str = Field(max_length=16, description="Compute backend (orgo, aws, e2b)")
    status: str = Field(
        default=ProvisioningStatus.PENDING.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'pending'")),
        description="Current provisioning status",
    )

    # Progress flags
    resource_created: bool = Field(default=False)
    repository_ready: bool = Field(default=False)
    repository_cloned: bool = Field(default=False)
    sync_configured: bool = Field(default=False)
    runtime_installed: bool = Field(default=False)
    channel_configured: bool = Field(default=False)
    gateway_started: bool = Field(default=False)

    # Compute handles
    compute_id: str | None = Field(default=None, max_length=255, description="Backend resource id")
    compute_name: str | None = Field(default=None, max_length=255)
    compute_address: str | None = Field(
        default=None, max_length=255, description="Public address (AWS)"
    )
    compute_url: str | None = Field(default=None, max_length=1024)
    project_id: str | None = Field(default=None, max_length=255, description="Orgo project id")
    project_name: str | None = Field(default=None, max_length=255)
    region: str | None = Field(default=None, max_length=64)
    instance_class: str | None = Field(default=None, max_length=64)
    ssh_private_key: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Private half of the backend login key (AWS)",
    )

    # Repository
    repository_name: str | None = Field(default=None, max_length=255)
    repository_url: str | None = Field(default=None, max_length=1024)

    runtime_version: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    # Advisory run marker
    run_id: str | None = Field(default=None, max_length=64)
    run_started_at: datetime | None = Field(default=None)

    def flags(self) -> dict[str, bool]:
        """Snapshot of the progress flags."""
        return {name: bool(getattr(self, name)) for name in PROGRESS_FLAGS}
