"""
SQLite storage: schema, connections, runtime settings and path helpers.

Shared by the Flask app and the worker process, so nothing here touches
request state.
"""

import logging
import os
import sqlite3
import threading
import time
from pathlib import Path

from werkzeug.security import generate_password_hash

import config

logger = logging.getLogger("photodesk")

runtime_settings_lock = threading.Lock()
runtime_settings_cache = None
runtime_settings_cache_expires_at = 0.0


def ensure_dir(path_str):
    os.makedirs(path_str, exist_ok=True)


def get_db_conn():
    conn = sqlite3.connect(config.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('admin', 'user')),
    active INTEGER NOT NULL DEFAULT 1,
    preferences TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS galleries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    gallery_id INTEGER,
    filename TEXT NOT NULL,
    original_name TEXT NOT NULL,
    rel_path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    width INTEGER,
    height INTEGER,
    mtime REAL NOT NULL DEFAULT 0,
    title TEXT,
    description TEXT,
    alt TEXT,
    caption TEXT,
    tags TEXT,
    uploaded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(gallery_id) REFERENCES galleries(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS image_variants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    filename TEXT NOT NULL,
    rel_path TEXT NOT NULL,
    width INTEGER NOT NULL DEFAULT 0,
    height INTEGER NOT NULL DEFAULT 0,
    size INTEGER NOT NULL DEFAULT 0,
    mime_type TEXT NOT NULL,
    variant_type TEXT NOT NULL,
    parameters TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(image_id) REFERENCES images(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    gallery_id INTEGER,
    filename TEXT NOT NULL,
    original_name TEXT NOT NULL,
    rel_path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    duration REAL,
    width INTEGER,
    height INTEGER,
    uploaded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(gallery_id) REFERENCES galleries(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS video_variants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id INTEGER NOT NULL,
    filename TEXT NOT NULL,
    rel_path TEXT NOT NULL,
    poster_rel_path TEXT,
    width INTEGER,
    height INTEGER,
    duration REAL,
    size INTEGER NOT NULL DEFAULT 0,
    mime_type TEXT NOT NULL,
    variant_type TEXT NOT NULL,
    parameters TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS publications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    scheduled_at TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS publication_images (
    publication_id INTEGER NOT NULL,
    image_id INTEGER NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    added_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY(publication_id, image_id),
    FOREIGN KEY(publication_id) REFERENCES publications(id) ON DELETE CASCADE,
    FOREIGN KEY(image_id) REFERENCES images(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')),
    data TEXT NOT NULL,
    result TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    queue_job_id TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_galleries_user ON galleries(user_id);
CREATE INDEX IF NOT EXISTS idx_images_user ON images(user_id);
CREATE INDEX IF NOT EXISTS idx_images_gallery ON images(gallery_id);
CREATE INDEX IF NOT EXISTS idx_variants_image ON image_variants(image_id);
CREATE INDEX IF NOT EXISTS idx_videos_user ON videos(user_id);
CREATE INDEX IF NOT EXISTS idx_publications_user ON publications(user_id);
CREATE INDEX IF NOT EXISTS idx_pub_images_image ON publication_images(image_id);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""


def init_db():
    ensure_dir(os.path.dirname(config.DB_PATH) or ".")
    ensure_dir(config.DATA_ROOT)

    with get_db_conn() as conn:
        conn.executescript(SCHEMA)

    with get_db_conn() as conn:
        for key, value in config.DEFAULT_SETTINGS.items():
            conn.execute(
                "INSERT OR IGNORE INTO settings(key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                (key, value),
            )

    invalidate_runtime_settings_cache()
    ensure_default_admin()
    ensure_runtime_dirs()


def ensure_default_admin():
    with get_db_conn() as conn:
        count = conn.execute("SELECT COUNT(*) AS c FROM users").fetchone()["c"]
        if count > 0:
            return

        admin_email = os.environ.get("ADMIN_EMAIL", "admin@localhost").strip().lower() or "admin@localhost"
        admin_pass = os.environ.get("ADMIN_PASSWORD", "admin123456")
        if admin_pass == "admin123456":
            logger.warning("Using default admin password. Please change it via the admin API.")

        conn.execute(
            """
            INSERT INTO users(email, name, password_hash, role, active, created_at, updated_at)
            VALUES (?, 'Administrator', ?, 'admin', 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (admin_email, generate_password_hash(admin_pass)),
        )
        logger.info("Created initial admin user: %s", admin_email)


def ensure_runtime_dirs():
    ensure_dir(config.UPLOAD_ROOT)
    ensure_dir(config.ARCHIVE_ROOT)
    ensure_dir(os.path.join(config.CACHE_ROOT, "thumb"))
    ensure_dir(os.path.join(config.CACHE_ROOT, "preview"))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def get_setting(key, default=None):
    with get_db_conn() as conn:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    with get_db_conn() as conn:
        conn.execute(
            """
            INSERT INTO settings(key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = CURRENT_TIMESTAMP
            """,
            (key, str(value)),
        )
    invalidate_runtime_settings_cache()


def invalidate_runtime_settings_cache():
    global runtime_settings_cache, runtime_settings_cache_expires_at
    with runtime_settings_lock:
        runtime_settings_cache = None
        runtime_settings_cache_expires_at = 0.0


def get_runtime_settings(force_refresh=False):
    global runtime_settings_cache, runtime_settings_cache_expires_at
    now = time.time()

    with runtime_settings_lock:
        if (
            not force_refresh
            and runtime_settings_cache is not None
            and now < runtime_settings_cache_expires_at
        ):
            return dict(runtime_settings_cache)

    with get_db_conn() as conn:
        rows = conn.execute("SELECT key, value FROM settings").fetchall()
    merged = dict(config.DEFAULT_SETTINGS)
    merged.update({r["key"]: r["value"] for r in rows})

    with runtime_settings_lock:
        runtime_settings_cache = dict(merged)
        runtime_settings_cache_expires_at = time.time() + max(1.0, config.SETTINGS_CACHE_TTL)

    return merged


def get_int_setting(settings, key, default=None, min_value=None, max_value=None):
    known_default, known_min, known_max = config.INT_SETTINGS.get(key, (0, None, None))
    default = known_default if default is None else default
    min_value = known_min if min_value is None else min_value
    max_value = known_max if max_value is None else max_value

    try:
        value = int(settings.get(key, default))
    except (TypeError, ValueError):
        value = default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def parse_csv(value):
    return [p.strip() for p in str(value or "").split(",") if p.strip()]


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def safe_join(root, rel_path):
    root_path = Path(root).resolve()
    target = (root_path / rel_path).resolve()
    if target == root_path or root_path in target.parents:
        return target
    raise ValueError("path escapes root")


def upload_path(rel_path):
    return safe_join(config.UPLOAD_ROOT, rel_path)


def to_upload_rel(path):
    return Path(path).resolve().relative_to(Path(config.UPLOAD_ROOT).resolve()).as_posix()


def remove_quietly(path):
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
