"""
Pytest fixtures for vidstream tests.

Every test gets its own SQLite database file, so tests never share state.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator

import pytest
from databases import Database

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VIDSTREAM_TEST_MODE"] = "1"
os.environ["VIDSTREAM_STORAGE_PATH"] = _test_temp_dir
os.environ["VIDSTREAM_DATABASE_URL"] = f"sqlite:///{_test_temp_dir}/vidstream.db"
os.environ["VIDSTREAM_REDIS_URL"] = ""
os.environ["VIDSTREAM_ALERT_WEBHOOK_URL"] = ""
os.environ["VIDSTREAM_THUMBNAIL_ENABLED"] = "false"

from api.database import create_tables, users, utcnow  # noqa: E402
from api.redis_client import RedisClient  # noqa: E402
from api.video_store import VideoStore  # noqa: E402
from worker.alerts import reset_metrics  # noqa: E402


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Drop process-wide singletons between tests (Redis is never connected here)."""
    reset_metrics()
    yield
    RedisClient._instance = None
    RedisClient._lock = None
    reset_metrics()


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a fresh SQLite database with all tables."""
    db_url = f"sqlite:///{tmp_path / 'test.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    database = Database(test_db_url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create upload and HLS output directories."""
    uploads_dir = tmp_path / "uploads"
    hls_dir = tmp_path / "hls"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    hls_dir.mkdir(parents=True, exist_ok=True)
    return {"uploads": uploads_dir, "hls": hls_dir}


@pytest.fixture(scope="function")
async def sample_users(test_database: Database) -> dict:
    """One uploader and two administrators."""
    ids = {}
    for username, role in (("uploader", "user"), ("admin1", "admin"), ("admin2", "admin")):
        ids[username] = await test_database.execute(
            users.insert().values(username=username, role=role, created_at=utcnow())
        )
    return ids


@pytest.fixture(scope="function")
async def sample_video(test_database: Database, sample_users: dict):
    """A pending video record owned by the uploader."""
    store = VideoStore(test_database)
    return await store.create("test-video", "Test Video", uploader_id=sample_users["uploader"], doc_id="doc-1")


@pytest.fixture(scope="function")
def sample_input(test_storage: dict) -> Path:
    """A stand-in upload file."""
    path = test_storage["uploads"] / "test-video.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return path
