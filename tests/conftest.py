import pytest
import pytest_asyncio

from extraction_queue.config import Settings, get_settings
from extraction_queue.database import build_engine, build_session_maker, init_db
from extraction_queue.services import ProgressStore


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    """Settings rooted in a temporary directory, also served by get_settings()."""
    monkeypatch.setenv("STORAGE_PATH", str(tmp_path / "data"))
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    monkeypatch.setenv("TEMPLATE_DIR", str(tmp_path / "templates"))
    monkeypatch.setenv("PROGRESS_FLUSH_INTERVAL", "0")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def store(settings) -> ProgressStore:
    return ProgressStore.from_settings(settings)
