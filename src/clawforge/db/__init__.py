"""clawforge database module - provisioning records on async SQLAlchemy.

Usage:
    from clawforge.db import ProvisioningStore, async_session_factory

    store = ProvisioningStore(async_session_factory())
    record = await store.get_or_create("user-1", "orgo")
"""

from clawforge.db.connection import (
    async_session_factory,
    close_db,
    create_engine,
    init_db,
)
from clawforge.db.models import (
    PROGRESS_FLAGS,
    TERMINAL_STATUSES,
    Backend,
    ProvisioningRecord,
    ProvisioningStatus,
)
from clawforge.db.store import ProvisioningStore

__all__ = [
    # Connection
    "init_db",
    "close_db",
    "create_engine",
    "async_session_factory",
    # Models
    "Backend",
    "ProvisioningRecord",
    "ProvisioningStatus",
    "PROGRESS_FLAGS",
    "TERMINAL_STATUSES",
    # Store
    "ProvisioningStore",
]
