import logging
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TELEGRAM_BOT_TOKEN"] = "test:token"
os.environ["BOT_ADMIN_ID"] = "1"

from ghostwatch.core.database import create_engine_for  # noqa: E402
from ghostwatch.models.base import Base  # noqa: E402


@pytest.fixture(autouse=True)
def _strip_file_handlers():
    """Remove file handlers from root logger so tests never write to logs/app.log."""
    root = logging.getLogger()
    saved = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    for h in saved:
        root.removeHandler(h)
    yield
    for h in list(root.handlers):
        if isinstance(h, logging.FileHandler):
            root.removeHandler(h)
    for h in saved:
        root.addHandler(h)


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions really run concurrently."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory services accept in place of get_db_session()."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def mock_notifier():
    """Notifier double; notify_owner returns a message id."""
    notifier = MagicMock()
    notifier.notify_owner = AsyncMock(return_value=1000)
    notifier.alert_operator = AsyncMock()
    notifier.delete_message = AsyncMock()
    return notifier


@pytest.fixture
def mock_deliverer():
    """Deliverer double; deliver reports every item as sent."""
    deliverer = MagicMock()
    deliverer.deliver = AsyncMock(side_effect=lambda items, destination, caption=None: list(items))
    deliverer.deliver_profile_photo = AsyncMock()
    return deliverer


class FakeClock:
    """Manually advanced clock for time-window logic."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
