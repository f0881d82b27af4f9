"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Make _helpers importable from test files
sys.path.insert(0, str(Path(__file__).parent))

from training_camp.lineage.store.memory import InMemoryLineageStore  # noqa: E402
from training_camp.lineage.store.sqlite import SQLiteLineageStore  # noqa: E402
from training_camp.persistence.db import DatabaseManager  # noqa: E402
from training_camp.tools.registry import ToolRegistry  # noqa: E402


@pytest.fixture
def memory_store() -> InMemoryLineageStore:
    return InMemoryLineageStore()


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    manager = DatabaseManager(tmp_path / ".training-camp" / "lineage.db")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def sqlite_store(db: DatabaseManager) -> SQLiteLineageStore:
    return SQLiteLineageStore(db)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path: Path):
    """Both store implementations, for tests of shared behaviour."""
    if request.param == "memory":
        yield InMemoryLineageStore()
        return
    manager = DatabaseManager(tmp_path / "store.db")
    await manager.initialize()
    yield SQLiteLineageStore(manager)
    await manager.close()


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()
