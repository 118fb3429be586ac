"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clawforge.db.connection import init_db
from clawforge.db.store import ProvisioningStore
from clawforge.provisioning.events import EventChannel
from clawforge.provisioning.steps import StepRunner
from tests.fakes import RecordingToken, ScriptedExecutor


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> ProvisioningStore:
    return ProvisioningStore(async_sessionmaker(engine, expire_on_commit=False))


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def token() -> RecordingToken:
    return RecordingToken()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def runner(executor: ScriptedExecutor, token: RecordingToken, events: EventChannel) -> StepRunner:
    return StepRunner(executor, token=token, events=events, retries=2, backoff=2.0)
