"""Shared fixtures: an async SQLite database per test."""

import pytest

from market_data.stores.postgres import close_db, create_tables, init_db


@pytest.fixture
async def db(tmp_path):
    """Fresh schema in a throwaway SQLite file (aiosqlite)."""
    await init_db(database_url=f"sqlite+aiosqlite:///{tmp_path / 'market_data.db'}")
    await create_tables()
    yield
    await close_db()
