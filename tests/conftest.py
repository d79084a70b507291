from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image
from redis.exceptions import ConnectionError as RedisConnectionError
from werkzeug.security import generate_password_hash

# app.py initializes the database at import time
_BOOT_ROOT = tempfile.mkdtemp(prefix="photodesk-tests-")
os.environ.setdefault("DATA_ROOT", os.path.join(_BOOT_ROOT, "data"))
os.environ.setdefault("UPLOAD_ROOT", os.path.join(_BOOT_ROOT, "uploads"))
os.environ.setdefault("CACHE_ROOT", os.path.join(_BOOT_ROOT, "cache"))
os.environ.setdefault("ARCHIVE_ROOT", os.path.join(_BOOT_ROOT, "archives"))
os.environ.setdefault("SECRET_KEY", "test-secret")

import config  # noqa: E402
import jobs  # noqa: E402
import store  # noqa: E402

ADMIN_EMAIL = "admin@localhost"
ADMIN_PASSWORD = "admin123456"
USER_PASSWORD = "secret-pass"


class RecordingQueue:
    """Stands in for rq.Queue: remembers every enqueue call."""

    def __init__(self):
        self.calls = []

    def for_name(self, name):
        queue = self

        class _Bound:
            def enqueue(self, func, *args, **kwargs):
                queue.calls.append(SimpleNamespace(queue=name, func=func, args=args, kwargs=kwargs))
                return SimpleNamespace(id=f"rq-{len(queue.calls)}")

        return _Bound()

    def job_ids(self):
        return [c.args[0] for c in self.calls]


class FailingQueue:
    def enqueue(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


def make_image_bytes(size=(64, 48), color=(200, 60, 60), fmt="JPEG"):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    data = tmp_path / "data"
    monkeypatch.setattr(config, "DATA_ROOT", str(data))
    monkeypatch.setattr(config, "DB_PATH", str(data / "photodesk.db"))
    monkeypatch.setattr(config, "UPLOAD_ROOT", str(tmp_path / "uploads"))
    monkeypatch.setattr(config, "CACHE_ROOT", str(tmp_path / "cache"))
    monkeypatch.setattr(config, "ARCHIVE_ROOT", str(tmp_path / "archives"))
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    store.init_db()
    return tmp_path


@pytest.fixture
def queue(monkeypatch: pytest.MonkeyPatch):
    recorder = RecordingQueue()
    monkeypatch.setattr(jobs, "get_queue", recorder.for_name)
    return recorder


@pytest.fixture
def broken_queue(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(jobs, "get_queue", lambda name: FailingQueue())


@pytest.fixture
def create_user(env):
    def _create(email="user@example.com", role="user", password=USER_PASSWORD, active=True):
        with store.get_db_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO users(email, name, password_hash, role, active)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, email.split("@")[0], generate_password_hash(password), role, 1 if active else 0),
            )
            return cur.lastrowid

    return _create


@pytest.fixture
def admin_id(env):
    with store.get_db_conn() as conn:
        return conn.execute("SELECT id FROM users WHERE email = ?", (ADMIN_EMAIL,)).fetchone()["id"]


@pytest.fixture
def stored_image(env):
    """Write a real image under UPLOAD_ROOT and insert its row."""

    def _store(user_id, size=(120, 80), color=(30, 120, 200), name="photo.jpg", gallery_id=None, **meta):
        rel = f"{user_id}/2024/05/{name}"
        path = Path(config.UPLOAD_ROOT) / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, color).save(path, "JPEG")
        with store.get_db_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO images(
                    user_id, gallery_id, filename, original_name, rel_path, size, mime_type,
                    width, height, mtime, title, description, tags
                )
                VALUES (?, ?, ?, ?, ?, ?, 'image/jpeg', ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    gallery_id,
                    name,
                    name,
                    rel,
                    path.stat().st_size,
                    size[0],
                    size[1],
                    path.stat().st_mtime,
                    meta.get("title"),
                    meta.get("description"),
                    meta.get("tags"),
                ),
            )
            return cur.lastrowid

    return _store


@pytest.fixture
def flask_app(env, queue):
    import app as app_module

    app_module.app.config["TESTING"] = True
    return app_module.app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


def login(client, email, password):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def admin_client(client):
    login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    return client


@pytest.fixture
def user_id(create_user):
    return create_user()


@pytest.fixture
def user_client(flask_app, user_id):
    c = flask_app.test_client()
    login(c, "user@example.com", USER_PASSWORD)
    return c
