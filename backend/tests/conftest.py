"""
Transmute - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from transmute.core.config import Settings
from transmute.core.database import create_engine, create_session_factory, init_db
from transmute.core.models import Project
from transmute.core.pipeline import CheckpointStore, ConfidenceAggregator, EventSink

from fakes import create_project, make_settings


# ==========================================================================
# Settings
# ==========================================================================

@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so concurrent sessions see the same data.
    """
    test_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'transmute-test.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ==========================================================================
# Pipeline Fixtures
# ==========================================================================

@pytest.fixture
def aggregator(session_factory, test_settings) -> ConfidenceAggregator:
    return ConfidenceAggregator(session_factory, test_settings)


@pytest.fixture
def events(session_factory, aggregator, test_settings) -> EventSink:
    return EventSink(session_factory, aggregator, test_settings)


@pytest.fixture
def checkpoints(session_factory, events) -> CheckpointStore:
    return CheckpointStore(session_factory, events)


# ==========================================================================
# Data Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def project(session_factory) -> Project:
    return await create_project(session_factory)
