from __future__ import annotations

from pathlib import Path

import pytest
from werkzeug.security import check_password_hash

import config
import store


def test_init_db_creates_admin_and_settings(env):
    with store.get_db_conn() as conn:
        admin = conn.execute("SELECT * FROM users WHERE role = 'admin'").fetchone()
        keys = {r["key"] for r in conn.execute("SELECT key FROM settings").fetchall()}

    assert admin["email"] == "admin@localhost"
    assert check_password_hash(admin["password_hash"], "admin123456")
    assert set(config.DEFAULT_SETTINGS) <= keys
    assert Path(config.UPLOAD_ROOT).is_dir()
    assert (Path(config.CACHE_ROOT) / "thumb").is_dir()


def test_init_db_is_idempotent(env):
    store.set_setting("thumb_quality", "60")
    store.init_db()

    with store.get_db_conn() as conn:
        admins = conn.execute("SELECT COUNT(*) AS c FROM users").fetchone()["c"]
    assert admins == 1
    assert store.get_setting("thumb_quality") == "60"


def test_set_setting_invalidates_cache(env):
    before = store.get_runtime_settings()
    assert before["upload_resize_edge"] == "1024"

    store.set_setting("upload_resize_edge", 0)
    assert store.get_runtime_settings()["upload_resize_edge"] == "0"


def test_get_int_setting_clamps_and_falls_back():
    assert store.get_int_setting({"thumb_quality": "200"}, "thumb_quality") == 92
    assert store.get_int_setting({"thumb_quality": "10"}, "thumb_quality") == 50
    assert store.get_int_setting({"thumb_quality": "nope"}, "thumb_quality") == config.THUMB_QUALITY_DEFAULT
    assert store.get_int_setting({}, "custom", 7, 0, 5) == 5


def test_parse_helpers():
    assert store.parse_csv(" a, b ,,c ") == ["a", "b", "c"]
    assert store.parse_csv(None) == []
    assert store.parse_bool("Yes") is True
    assert store.parse_bool("off") is False
    assert store.parse_bool(0) is False
    assert store.parse_bool(None) is False


def test_safe_join_rejects_escape(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    assert store.safe_join(root, "a/b.jpg") == (root / "a" / "b.jpg").resolve()
    with pytest.raises(ValueError):
        store.safe_join(root, "../outside.jpg")
    with pytest.raises(ValueError):
        store.safe_join(root, "a/../../x")


def test_deleting_gallery_cascades_to_images(env, admin_id, stored_image):
    with store.get_db_conn() as conn:
        gid = conn.execute(
            "INSERT INTO galleries(user_id, name) VALUES (?, 'Trip')", (admin_id,)
        ).lastrowid
    image_id = stored_image(admin_id, gallery_id=gid)

    with store.get_db_conn() as conn:
        conn.execute("DELETE FROM galleries WHERE id = ?", (gid,))
        row = conn.execute("SELECT id FROM images WHERE id = ?", (image_id,)).fetchone()
    assert row is None
