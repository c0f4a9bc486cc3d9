"""
Shared pytest fixtures for refspine tests.

This module provides:
- Both store backends (in-memory and SQLite-in-memory through SQLAlchemy)
- A manual clock so expiry and backoff are deterministic
- Stores pre-seeded with the sample UCUM units and their hierarchies
"""

import sys
from pathlib import Path

import pytest

# Ensure refspine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from refspine.core.timestamps import ManualClock
from refspine.hierarchy import HierarchyBuilder
from refspine.store import InMemoryReferenceStore, SqlReferenceStore

from _support import RecordingSleep, all_units, seed


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        if "service" in Path(item.fspath).parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def memory_store() -> InMemoryReferenceStore:
    return InMemoryReferenceStore()


@pytest.fixture
def sql_store() -> SqlReferenceStore:
    return SqlReferenceStore.from_url("sqlite://")


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Each backend in turn."""
    if request.param == "memory":
        return InMemoryReferenceStore()
    return SqlReferenceStore.from_url("sqlite://")


@pytest.fixture
def seeded_store(clock):
    """In-memory store holding every sample unit, hierarchies built."""
    store = InMemoryReferenceStore()
    seed(store, all_units(), clock.now())
    HierarchyBuilder(store, clock).rebuild_all()
    return store
