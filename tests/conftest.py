"""Shared fixtures: a temporary store and settings pointing at it."""

from __future__ import annotations

import pytest

from noisegate.config import Settings
from noisegate.storage.db import DatabaseManager


@pytest.fixture
def tmp_db(tmp_path):
    """Return a path to a temporary database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
def settings(tmp_db):
    return Settings(db_path=tmp_db)


@pytest.fixture
async def db(tmp_db):
    """Return an initialized DatabaseManager."""
    manager = DatabaseManager(tmp_db)
    await manager.initialize()
    yield manager
    await manager.close()
