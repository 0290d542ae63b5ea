import pytest_asyncio

from directive_engine.db import configure_engine, dispose_engine, init_models


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database with both tables."""
    configure_engine("sqlite+aiosqlite://", echo=False)
    await init_models()
    yield
    await dispose_engine()


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """File-backed SQLite database; each session gets its own connection."""
    configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", echo=False)
    await init_models()
    yield
    await dispose_engine()
