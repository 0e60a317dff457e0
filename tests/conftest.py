import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Modules that read configuration at import time, in dependency order.
# roomdrop.models and roomdrop.core.exceptions are left alone: reloading them
# would redefine the tables and the exception classes other modules hold.
MODULE_ORDER = [
    "roomdrop.config",
    "roomdrop.core.metrics",
    "roomdrop.core.rate_limit",
    "roomdrop.db",
    "roomdrop.storage",
    "roomdrop.services.files",
    "roomdrop.services.rooms",
    "roomdrop.services.sweeper",
    "roomdrop.services.stats",
    "roomdrop.cleaner",
    "roomdrop.api.routes",
    "roomdrop.main",
]


def prepare_client(tmp_path, monkeypatch, *, rate_limit="1000", max_size=str(10 * 1024 * 1024), **extra_env):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    upload_dir = tmp_path / "uploads"
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("UPLOAD_DIR", str(upload_dir))
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("SIGNING_SECRET", "test-secret")
    monkeypatch.setenv("PUBLIC_BASE_URL", "")
    monkeypatch.setenv("ENABLE_CLEANER", "false")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", rate_limit)
    monkeypatch.setenv("MAX_FILE_SIZE_BYTES", max_size)
    monkeypatch.delenv("CLEANUP_API_KEY", raising=False)
    for name, value in extra_env.items():
        monkeypatch.setenv(name, value)

    # Reload modules so configuration changes take effect cleanly.
    for module_name in MODULE_ORDER:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["roomdrop.main"]

    test_client = TestClient(main.app)
    test_client.upload_dir = upload_dir  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c
    test_client.app.dependency_overrides.clear()


@pytest.fixture
def make_room(client):
    def _make():
        response = client.post("/rooms")
        assert response.status_code == 201
        return response.json()

    return _make


def expire_room(room_id, minutes_ago=1):
    """Push a room's expiry into the past without sweeping it."""
    from datetime import timedelta

    from roomdrop.db import session_scope
    from roomdrop.models import Room, utcnow

    with session_scope() as session:
        room = session.get(Room, room_id)
        room.expires_at = utcnow() - timedelta(minutes=minutes_ago)
        session.add(room)
        session.commit()


def png_bytes(size):
    header = b"\x89PNG\r\n\x1a\n"
    return header + b"\0" * (size - len(header))
