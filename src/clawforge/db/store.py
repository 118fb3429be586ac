"""Persistence operations for provisioning records."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from clawforge.db.models import (
    COMPUTE_HANDLES,
    PROGRESS_FLAGS,
    Backend,
    ProvisioningRecord,
    ProvisioningStatus,
    utcnow_naive,
)
from clawforge.errors import RecordNotFoundError, RecordStateError, RunInProgressError

log = structlog.get_logger()

_IMMUTABLE_FIELDS = frozenset({"id", "owner_id", "backend", "created_at", "updated_at"})
_RUN_FIELDS = frozenset({"run_id", "run_started_at"})


def _coerce_id(record_id: UUID | str) -> UUID:
    return record_id if isinstance(record_id, UUID) else UUID(str(record_id))


def _normalize(field: str, value: Any) -> Any:
    if field == "status" and value is not None:
        return ProvisioningStatus(value).value
    return value


class ProvisioningStore:
    """CRUD plus the advisory run marker for ``ProvisioningRecord``.

    Every method opens its own short session; records handed back are detached
    snapshots and never written through.
    """

    def __init__(
        self,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]],
    ) -> None:
        self._session_factory = session_factory
        self._columns = set(ProvisioningRecord.model_fields)

    async def get(self, record_id: UUID | str) -> ProvisioningRecord | None:
        async with self._session_factory() as session:
            return await session.get(ProvisioningRecord, _coerce_id(record_id))

    async def require(self, record_id: UUID | str) -> ProvisioningRecord:
        """Like ``get`` but raises ``RecordNotFoundError``."""
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFoundError(str(record_id))
        return record

    async def find(self, owner_id: str, backend: Backend | str) -> ProvisioningRecord | None:
        async with self._session_factory() as session:
            stmt = select(ProvisioningRecord).where(
                ProvisioningRecord.owner_id == owner_id,
                ProvisioningRecord.backend == Backend(backend).value,
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list(self, owner_id: str | None = None) -> list[ProvisioningRecord]:
        async with self._session_factory() as session:
            stmt = select(ProvisioningRecord)
            if owner_id is not None:
                stmt = stmt.where(ProvisioningRecord.owner_id == owner_id)
            result = await session.execute(stmt.order_by(ProvisioningRecord.created_at))
            return list(result.scalars().all())

    async def create(
        self, owner_id: str, backend: Backend | str, **fields: Any
    ) -> ProvisioningRecord:
        self._check_fields(fields)
        values = {k: _normalize(k, v) for k, v in fields.items()}
        record = ProvisioningRecord(owner_id=owner_id, backend=Backend(backend).value, **values)
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        log.info(
            "record_created", record_id=str(record.id), owner_id=owner_id, backend=record.backend
        )
        return record

    async def get_or_create(self, owner_id: str, backend: Backend | str) -> ProvisioningRecord:
        record = await self.find(owner_id, backend)
        if record is not None:
            return record
        return await self.create(owner_id, backend)

    async def update(self, record_id: UUID | str, **fields: Any) -> ProvisioningRecord:
        """Apply a partial update.

        Writing values identical to the stored ones does not touch the row.
        Raises ``RecordStateError`` if a set progress flag would go back to false.
        """
        self._check_fields(fields)
        async with self._session_factory() as session:
            record = await session.get(ProvisioningRecord, _coerce_id(record_id))
            if record is None:
                raise RecordNotFoundError(str(record_id))

            changes: dict[str, Any] = {}
            for field, raw in fields.items():
                value = _normalize(field, raw)
                current = getattr(record, field)
                if field in PROGRESS_FLAGS and current and not value:
                    raise RecordStateError(
                        f"Flag {field} cannot be cleared outside reset",
                        details={"record_id": str(record.id), "flag": field},
                    )
                if current != value:
                    changes[field] = value

            if not changes:
                return record

            for field, value in changes.items():
                setattr(record, field, value)
            record.updated_at = utcnow_naive()
            session.add(record)
            await session.commit()
            await session.refresh(record)

        log.debug("record_updated", record_id=str(record.id), fields=sorted(changes))
        return record

    async def claim_run(
        self,
        record_id: UUID | str,
        run_id: str,
        stale_after: timedelta | float,
    ) -> ProvisioningRecord:
        """Atomically set the run marker unless a fresh one is present."""
        if not isinstance(stale_after, timedelta):
            stale_after = timedelta(seconds=stale_after)
        rid = _coerce_id(record_id)
        now = utcnow_naive()
        cutoff = now - stale_after

        async with self._session_factory() as session:
            stmt = (
                update(ProvisioningRecord)
                .where(ProvisioningRecord.id == rid)
                .where(
                    or_(
                        ProvisioningRecord.run_id.is_(None),
                        ProvisioningRecord.run_started_at.is_(None),
                        ProvisioningRecord.run_started_at < cutoff,
                    )
                )
                .values(run_id=run_id, run_started_at=now, updated_at=now)
            )
            result = await session.execute(stmt)
            await session.commit()

            record = await session.get(ProvisioningRecord, rid, populate_existing=True)
            if record is None:
                raise RecordNotFoundError(str(record_id))
            if result.rowcount == 0:
                raise RunInProgressError(str(rid), record.run_id)

        log.info("run_claimed", record_id=str(rid), run_id=run_id)
        return record

    async def release_run(self, record_id: UUID | str, run_id: str) -> bool:
        """Clear the run marker if ``run_id`` still owns it."""
        rid = _coerce_id(record_id)
        async with self._session_factory() as session:
            stmt = (
                update(ProvisioningRecord)
                .where(ProvisioningRecord.id == rid, ProvisioningRecord.run_id == run_id)
                .values(run_id=None, run_started_at=None, updated_at=utcnow_naive())
            )
            result = await session.execute(stmt)
            await session.commit()
        released = bool(result.rowcount)
        log.debug("run_released", record_id=str(rid), run_id=run_id, released=released)
        return released

    async def reset(self, record_id: UUID | str) -> ProvisioningRecord:
        """Clear flags, compute handles and errors; keep the repository."""
        async with self._session_factory() as session:
            record = await session.get(ProvisioningRecord, _coerce_id(record_id))
            if record is None:
                raise RecordNotFoundError(str(record_id))
            for flag in PROGRESS_FLAGS:
                setattr(record, flag, False)
            for handle in COMPUTE_HANDLES:
                setattr(record, handle, None)
            record.status = ProvisioningStatus.PENDING.value
            record.error_message = None
            record.updated_at = utcnow_naive()
            session.add(record)
            await session.commit()
            await session.refresh(record)
        log.info("record_reset", record_id=str(record.id))
        return record

    async def delete(self, record_id: UUID | str) -> bool:
        async with self._session_factory() as session:
            record = await session.get(ProvisioningRecord, _coerce_id(record_id))
            if record is None:
                return False
            await session.delete(record)
            await session.commit()
        log.info("record_deleted", record_id=str(record_id))
        return True

    def _check_fields(self, fields: dict[str, Any]) -> None:
        unknown = set(fields) - self._columns
        if unknown:
            raise ValueError(f"Unknown record fields: {', '.join(sorted(unknown))}")
        protected = set(fields) & (_IMMUTABLE_FIELDS | _RUN_FIELDS)
        if protected:
            raise ValueError(f"Fields cannot be set directly: {', '.join(sorted(protected))}")
