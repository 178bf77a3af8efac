from pathlib import Path

from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / ".env.test"
load_dotenv(env_file)

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from bridge.database import Base  # noqa: E402
from bridge.models import models  # noqa: E402,F401
from bridge.services.attachments import AttachmentPipeline  # noqa: E402
from bridge.services.mapping_store import MappingStore  # noqa: E402
from bridge.services.status_manager import StatusManager  # noqa: E402
from bridge.services.sync_ledger import SyncLedger  # noqa: E402
from bridge.services.sync_service import SyncService  # noqa: E402
from tests.utils.fakes import FakeDiscord, FakeWhmcs  # noqa: E402


@pytest.fixture
async def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return MappingStore(session_factory)


@pytest.fixture
def ledger(session_factory):
    return SyncLedger(session_factory)


@pytest.fixture
def whmcs():
    return FakeWhmcs()


@pytest.fixture
def discord():
    return FakeDiscord()


@pytest.fixture
def statuses(whmcs):
    return StatusManager(whmcs, closed_statuses=["Closed"])


@pytest.fixture
def attachments(whmcs, tmp_path):
    return AttachmentPipeline(whmcs, temp_dir=str(tmp_path / "staged"), retries=2, backoff=0)


@pytest.fixture
def sync_service(whmcs, discord, store, ledger, statuses, attachments):
    return SyncService(whmcs, discord, store, ledger, statuses, attachments)
