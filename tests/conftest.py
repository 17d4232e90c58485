"""Shared fixtures."""

import pytest
import pytest_asyncio

from src.db.session import create_engine, create_session_factory, init_db
from src.proxy.types import QuotaReading

from tests.fakes import GB, MB


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def reading():
    def _reading(used_mb: int, quota_bytes: int = GB) -> QuotaReading:
        return QuotaReading(used_bytes=used_mb * MB, quota_bytes=quota_bytes)

    return _reading
