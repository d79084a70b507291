#!/usr/bin/env python3
"""
PhotoDesk
- Session auth with admin-managed users
- Uploads, galleries and scheduled publications
- Crop / smart crop / resize / zip export / video transcode jobs handed to rq
- Cache-first image serving (thumb/preview)
"""

import json
import logging
import mimetypes
import os
import secrets
import sqlite3
import time
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path

from flask import Flask, abort, g, jsonify, request, send_file, session
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

import config
import imaging
import jobs
import video
from processors import archive_target
from store import (
    ensure_runtime_dirs,
    get_db_conn,
    get_int_setting,
    get_runtime_settings,
    init_db,
    parse_bool,
    parse_csv,
    remove_quietly,
    safe_join,
    set_setting,
    upload_path,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("photodesk")

if config.SECRET_KEY == "photodesk-change-me":
    logger.warning("SECRET_KEY is default. Set SECRET_KEY in production.")

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.secret_key = config.SECRET_KEY
app.config["JSON_AS_ASCII"] = False
app.config["MAX_CONTENT_LENGTH"] = max(config.MAX_UPLOAD_MB, config.MAX_VIDEO_MB) * 1024 * 1024

DEFAULT_PREFERENCES = {
    "theme": "light",
    "language": "fr",
    "notifications": True,
    "auto_save": True,
    "items_per_page": 20,
    "timezone": "Europe/Paris",
    "date_format": "DD/MM/YYYY",
    "time_format": "24h",
}

PREFERENCE_CHOICES = {
    "theme": {"light", "dark", "auto"},
    "language": {"fr", "en", "es", "de"},
    "date_format": {"DD/MM/YYYY", "MM/DD/YYYY", "YYYY-MM-DD"},
    "time_format": {"12h", "24h"},
}

METADATA_FIELDS = ("title", "description", "alt", "caption", "tags")
METADATA_MAX_LENGTH = {"title": 200, "alt": 500}

MAX_TARGET_EDGE = 4000
MAX_RESIZE_EDGE = 10000

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


def is_api_request():
    return request.path.startswith("/api/")


def is_admin():
    return bool(g.user) and g.user["role"] == "admin"


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not g.user:
            return jsonify({"error": "auth_required"}), 401
        return fn(*args, **kwargs)

    return wrapper


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not g.user:
            return jsonify({"error": "auth_required"}), 401
        if g.user["role"] != "admin":
            return jsonify({"error": "admin_required"}), 403
        return fn(*args, **kwargs)

    return wrapper


@app.before_request
def load_user():
    g.user = None
    uid = session.get("uid")
    if not uid:
        return

    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT id, email, name, role, active FROM users WHERE id = ?",
            (uid,),
        ).fetchone()

    if not row or not row["active"]:
        session.clear()
        return

    g.user = {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "role": row["role"],
        "active": bool(row["active"]),
    }


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_int(value, default=None):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("not an integer")
        return int(value)
    return int(str(value).strip())


def parse_int_list(values):
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError("expected a list")
    return [parse_int(v) for v in values]


def parse_iso_datetime(value):
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_tags(value):
    if value is None:
        return None
    if isinstance(value, list):
        items = [str(v).strip() for v in value]
    else:
        items = str(value).split(",")
    tags = []
    for item in items:
        tag = item.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return ",".join(tags) or None


def pagination_args(default_limit=50, max_limit=100):
    limit = parse_int(request.args.get("limit"), default_limit)
    offset = parse_int(request.args.get("offset"), 0)
    return max(1, min(max_limit, limit)), max(0, offset)


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def load_json(raw, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def serialize_user(row):
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "role": row["role"],
        "active": bool(row["active"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def serialize_image(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "gallery_id": row["gallery_id"],
        "filename": row["filename"],
        "original_name": row["original_name"],
        "path": row["rel_path"],
        "size": row["size"],
        "mime_type": row["mime_type"],
        "width": row["width"],
        "height": row["height"],
        "title": row["title"],
        "description": row["description"],
        "alt": row["alt"],
        "caption": row["caption"],
        "tags": parse_csv(row["tags"]),
        "uploaded_at": row["uploaded_at"],
        "updated_at": row["updated_at"],
        "url": f"/api/files/{row['rel_path']}",
        "thumb_url": f"/api/images/{row['id']}/thumb",
        "preview_url": f"/api/images/{row['id']}/preview",
    }


def serialize_variant(row):
    return {
        "id": row["id"],
        "variant_type": row["variant_type"],
        "filename": row["filename"],
        "path": row["rel_path"],
        "width": row["width"],
        "height": row["height"],
        "size": row["size"],
        "mime_type": row["mime_type"],
        "parameters": load_json(row["parameters"], {}),
        "created_at": row["created_at"],
        "url": f"/api/files/{row['rel_path']}",
    }


def serialize_gallery(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "description": row["description"],
        "color": row["color"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def publication_state(scheduled_at, now=None):
    if not scheduled_at:
        return "draft"
    try:
        when = parse_iso_datetime(scheduled_at)
    except ValueError:
        return "draft"
    now = now or datetime.now(timezone.utc)
    return "scheduled" if when > now else "due"


def serialize_publication(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "description": row["description"],
        "scheduled_at": row["scheduled_at"],
        "state": publication_state(row["scheduled_at"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def serialize_video(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "gallery_id": row["gallery_id"],
        "filename": row["filename"],
        "original_name": row["original_name"],
        "path": row["rel_path"],
        "size": row["size"],
        "mime_type": row["mime_type"],
        "duration": row["duration"],
        "width": row["width"],
        "height": row["height"],
        "uploaded_at": row["uploaded_at"],
        "updated_at": row["updated_at"],
        "url": f"/api/files/{row['rel_path']}",
    }


def serialize_video_variant(row):
    return {
        "id": row["id"],
        "variant_type": row["variant_type"],
        "filename": row["filename"],
        "path": row["rel_path"],
        "poster_path": row["poster_rel_path"],
        "width": row["width"],
        "height": row["height"],
        "duration": row["duration"],
        "size": row["size"],
        "mime_type": row["mime_type"],
        "parameters": load_json(row["parameters"], {}),
        "created_at": row["created_at"],
        "url": f"/api/files/{row['rel_path']}",
    }


# ---------------------------------------------------------------------------
# Access helpers
# ---------------------------------------------------------------------------


def get_gallery_for_user(gallery_id):
    with get_db_conn() as conn:
        return conn.execute(
            "SELECT * FROM galleries WHERE id = ? AND user_id = ?",
            (gallery_id, g.user["id"]),
        ).fetchone()


def get_image_for_user(image_id):
    with get_db_conn() as conn:
        if is_admin():
            return conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        return conn.execute(
            "SELECT * FROM images WHERE id = ? AND user_id = ?",
            (image_id, g.user["id"]),
        ).fetchone()


def get_publication_for_user(publication_id):
    with get_db_conn() as conn:
        return conn.execute(
            "SELECT * FROM publications WHERE id = ? AND user_id = ?",
            (publication_id, g.user["id"]),
        ).fetchone()


def get_video_for_user(video_id):
    with get_db_conn() as conn:
        if is_admin():
            return conn.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        return conn.execute(
            "SELECT * FROM videos WHERE id = ? AND user_id = ?",
            (video_id, g.user["id"]),
        ).fetchone()


def get_job_for_user(job_id):
    row = jobs.get_job(job_id)
    if row is None:
        return None
    if row["user_id"] != g.user["id"] and not is_admin():
        return None
    return row


def compact_positions(conn, publication_id):
    rows = conn.execute(
        """
        SELECT image_id FROM publication_images
        WHERE publication_id = ?
        ORDER BY position ASC, added_at ASC, image_id ASC
        """,
        (publication_id,),
    ).fetchall()
    for position, r in enumerate(rows):
        conn.execute(
            "UPDATE publication_images SET position = ? WHERE publication_id = ? AND image_id = ?",
            (position, publication_id, r["image_id"]),
        )


def remove_image_files(image_rows, variant_rows):
    for r in image_rows:
        try:
            remove_quietly(upload_path(r["rel_path"]))
            imaging.drop_cached_variants(r["rel_path"])
        except ValueError:
            logger.warning("Image %s has an invalid path: %s", r["id"], r["rel_path"])
    for r in variant_rows:
        try:
            remove_quietly(upload_path(r["rel_path"]))
        except ValueError:
            logger.warning("Variant %s has an invalid path: %s", r["id"], r["rel_path"])


def remove_video_files(video_rows, variant_rows):
    paths = [r["rel_path"] for r in video_rows]
    for r in variant_rows:
        paths.append(r["rel_path"])
        if r["poster_rel_path"]:
            paths.append(r["poster_rel_path"])
    for rel in paths:
        try:
            remove_quietly(upload_path(rel))
        except ValueError:
            logger.warning("Invalid stored video path: %s", rel)


def submit_or_503(job_type, payload):
    try:
        return jobs.submit_job(g.user["id"], job_type, payload), None
    except jobs.QueueUnavailable as exc:
        return None, (jsonify({"error": "queue_unavailable", "detail": str(exc)}), 503)


# ---------------------------------------------------------------------------
# Auth APIs
# ---------------------------------------------------------------------------


@app.route("/api/health")
def api_health():
    return jsonify({"ok": True, "queue": jobs.queue_available()})


@app.route("/api/auth/login", methods=["POST"])
def api_login():
    data = json_body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "missing_credentials"}), 400

    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT id, email, name, password_hash, role, active FROM users WHERE email = ?",
            (email,),
        ).fetchone()

    if not row or not row["active"] or not check_password_hash(row["password_hash"], password):
        return jsonify({"error": "invalid_credentials"}), 401

    session.clear()
    session["uid"] = row["id"]
    logger.info("User %s logged in", row["email"])

    return jsonify(
        {
            "ok": True,
            "user": {"id": row["id"], "email": row["email"], "name": row["name"], "role": row["role"]},
        }
    )


@app.route("/api/auth/logout", methods=["POST"])
def api_logout():
    session.clear()
    return jsonify({"ok": True})


@app.route("/api/auth/me")
@login_required
def api_me():
    return jsonify(g.user)


@app.route("/api/me/preferences", methods=["GET", "PUT"])
@login_required
def api_preferences():
    with get_db_conn() as conn:
        raw = conn.execute("SELECT preferences FROM users WHERE id = ?", (g.user["id"],)).fetchone()["preferences"]
    prefs = dict(DEFAULT_PREFERENCES)
    prefs.update(load_json(raw, {}))

    if request.method == "GET":
        return jsonify({"preferences": prefs})

    data = json_body()
    for key, choices in PREFERENCE_CHOICES.items():
        if key in data:
            if data[key] not in choices:
                return jsonify({"error": f"invalid_{key}", "allowed": sorted(choices)}), 400
            prefs[key] = data[key]

    for key in ("notifications", "auto_save"):
        if key in data:
            if not isinstance(data[key], bool):
                return jsonify({"error": f"{key}_must_be_boolean"}), 400
            prefs[key] = data[key]

    if "items_per_page" in data:
        try:
            value = parse_int(data["items_per_page"])
        except (TypeError, ValueError):
            return jsonify({"error": "items_per_page_must_be_integer"}), 400
        if value is None or value < 5 or value > 100:
            return jsonify({"error": "items_per_page_out_of_range", "min": 5, "max": 100}), 400
        prefs["items_per_page"] = value

    if "timezone" in data:
        tz = str(data["timezone"] or "").strip()
        if not tz:
            return jsonify({"error": "timezone_empty"}), 400
        prefs["timezone"] = tz

    with get_db_conn() as conn:
        conn.execute(
            "UPDATE users SET preferences = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (json.dumps(prefs, ensure_ascii=False), g.user["id"]),
        )

    return jsonify({"ok": True, "preferences": prefs})


# ---------------------------------------------------------------------------
# Gallery APIs
# ---------------------------------------------------------------------------


@app.route("/api/galleries", methods=["GET", "POST"])
@login_required
def api_galleries():
    if request.method == "GET":
        with get_db_conn() as conn:
            rows = conn.execute(
                """
                SELECT g.*, COUNT(i.id) AS image_count
                FROM galleries g
                LEFT JOIN images i ON i.gallery_id = g.id
                WHERE g.user_id = ?
                GROUP BY g.id
                ORDER BY g.created_at DESC, g.id DESC
                """,
                (g.user["id"],),
            ).fetchall()

            galleries = []
            for r in rows:
                previews = conn.execute(
                    "SELECT id FROM images WHERE gallery_id = ? ORDER BY uploaded_at DESC, id DESC LIMIT 4",
                    (r["id"],),
                ).fetchall()
                item = serialize_gallery(r)
                item["image_count"] = r["image_count"]
                item["preview_image_ids"] = [p["id"] for p in previews]
                galleries.append(item)

        return jsonify({"galleries": galleries})

    data = json_body()
    name = str(data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "name_required"}), 400

    with get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO galleries(user_id, name, description, color, created_at, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (g.user["id"], name, data.get("description"), data.get("color")),
        )
        row = conn.execute("SELECT * FROM galleries WHERE id = ?", (cur.lastrowid,)).fetchone()

    return jsonify({"gallery": serialize_gallery(row)}), 201


@app.route("/api/galleries/<int:gallery_id>", methods=["GET", "PUT", "DELETE"])
@login_required
def api_gallery(gallery_id):
    gallery = get_gallery_for_user(gallery_id)
    if not gallery:
        return jsonify({"error": "gallery_not_found"}), 404

    if request.method == "GET":
        with get_db_conn() as conn:
            count = conn.execute(
                "SELECT COUNT(*) AS c FROM images WHERE gallery_id = ?", (gallery_id,)
            ).fetchone()["c"]
        item = serialize_gallery(gallery)
        item["image_count"] = count
        return jsonify({"gallery": item})

    if request.method == "PUT":
        data = json_body()
        name = gallery["name"]
        if "name" in data:
            name = str(data["name"] or "").strip()
            if not name:
                return jsonify({"error": "name_required"}), 400
        description = data["description"] if "description" in data else gallery["description"]
        color = data["color"] if "color" in data else gallery["color"]

        with get_db_conn() as conn:
            conn.execute(
                """
                UPDATE galleries
                SET name = ?, description = ?, color = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (name, description, color, gallery_id),
            )
            row = conn.execute("SELECT * FROM galleries WHERE id = ?", (gallery_id,)).fetchone()
        return jsonify({"gallery": serialize_gallery(row)})

    with get_db_conn() as conn:
        image_rows = conn.execute("SELECT id, rel_path FROM images WHERE gallery_id = ?", (gallery_id,)).fetchall()
        variant_rows = conn.execute(
            """
            SELECT v.id, v.rel_path FROM image_variants v
            JOIN images i ON i.id = v.image_id
            WHERE i.gallery_id = ?
            """,
            (gallery_id,),
        ).fetchall()
        video_rows = conn.execute("SELECT id, rel_path FROM videos WHERE gallery_id = ?", (gallery_id,)).fetchall()
        video_variant_rows = conn.execute(
            """
            SELECT vv.rel_path, vv.poster_rel_path FROM video_variants vv
            JOIN videos v ON v.id = vv.video_id
            WHERE v.gallery_id = ?
            """,
            (gallery_id,),
        ).fetchall()
        publication_ids = [
            r["publication_id"]
            for r in conn.execute(
                """
                SELECT DISTINCT pi.publication_id FROM publication_images pi
                JOIN images i ON i.id = pi.image_id
                WHERE i.gallery_id = ?
                """,
                (gallery_id,),
            ).fetchall()
        ]

        conn.execute("DELETE FROM galleries WHERE id = ?", (gallery_id,))
        for pid in publication_ids:
            compact_positions(conn, pid)

    remove_image_files(image_rows, variant_rows)
    remove_video_files(video_rows, video_variant_rows)
    logger.info("Gallery %s deleted with %s images", gallery_id, len(image_rows))
    return jsonify({"ok": True, "deleted_images": len(image_rows)})


@app.route("/api/galleries/<int:gallery_id>/images", methods=["GET", "POST", "DELETE"])
@login_required
def api_gallery_images(gallery_id):
    gallery = get_gallery_for_user(gallery_id)
    if not gallery:
        return jsonify({"error": "gallery_not_found"}), 404

    if request.method == "GET":
        with get_db_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM images WHERE gallery_id = ? ORDER BY uploaded_at DESC, id DESC",
                (gallery_id,),
            ).fetchall()
        return jsonify({"gallery": serialize_gallery(gallery), "images": [serialize_image(r) for r in rows]})

    if request.method == "DELETE":
        with get_db_conn() as conn:
            cur = conn.execute(
                "UPDATE images SET gallery_id = NULL, updated_at = CURRENT_TIMESTAMP WHERE gallery_id = ?",
                (gallery_id,),
            )
        return jsonify({"ok": True, "detached": cur.rowcount})

    data = json_body()
    try:
        image_id = parse_int(data.get("image_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_image_id"}), 400
    if image_id is None:
        return jsonify({"error": "image_id_required"}), 400

    with get_db_conn() as conn:
        image = conn.execute(
            "SELECT * FROM images WHERE id = ? AND user_id = ?",
            (image_id, g.user["id"]),
        ).fetchone()
        if not image:
            return jsonify({"error": "image_not_found"}), 404
        if image["gallery_id"] == gallery_id:
            return jsonify({"error": "image_already_in_gallery"}), 400
        conn.execute(
            "UPDATE images SET gallery_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (gallery_id, image_id),
        )
        row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()

    return jsonify({"ok": True, "image": serialize_image(row)})


# ---------------------------------------------------------------------------
# Image APIs
# ---------------------------------------------------------------------------


@app.route("/api/images")
@login_required
def api_images():
    try:
        gallery_id = parse_int(request.args.get("gallery_id"))
        limit, offset = pagination_args()
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_query"}), 400

    where = "WHERE user_id = ?"
    params = [g.user["id"]]
    if gallery_id is not None:
        if not get_gallery_for_user(gallery_id):
            return jsonify({"error": "gallery_not_found"}), 404
        where += " AND gallery_id = ?"
        params.append(gallery_id)

    with get_db_conn() as conn:
        total = conn.execute(f"SELECT COUNT(*) AS c FROM images {where}", params).fetchone()["c"]
        rows = conn.execute(
            f"SELECT * FROM images {where} ORDER BY uploaded_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()

    return jsonify(
        {
            "images": [serialize_image(r) for r in rows],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }
    )


@app.route("/api/images/<int:image_id>", methods=["GET", "DELETE"])
@login_required
def api_image(image_id):
    image = get_image_for_user(image_id)
    if not image:
        return jsonify({"error": "image_not_found"}), 404

    if request.method == "GET":
        with get_db_conn() as conn:
            variants = conn.execute(
                "SELECT * FROM image_variants WHERE image_id = ? ORDER BY created_at DESC, id DESC",
                (image_id,),
            ).fetchall()
            gallery = None
            if image["gallery_id"]:
                gallery = conn.execute(
                    "SELECT id, name FROM galleries WHERE id = ?", (image["gallery_id"],)
                ).fetchone()
            publications = conn.execute(
                """
                SELECT p.id, p.name, pi.position
                FROM publication_images pi
                JOIN publications p ON p.id = pi.publication_id
                WHERE pi.image_id = ?
                ORDER BY p.id ASC
                """,
                (image_id,),
            ).fetchall()

        item = serialize_image(image)
        item["variants"] = [serialize_variant(v) for v in variants]
        item["gallery"] = {"id": gallery["id"], "name": gallery["name"]} if gallery else None
        item["publications"] = [
            {"id": p["id"], "name": p["name"], "position": p["position"]} for p in publications
        ]
        return jsonify({"image": item})

    with get_db_conn() as conn:
        variants = conn.execute("SELECT id, rel_path FROM image_variants WHERE image_id = ?", (image_id,)).fetchall()
        publication_ids = [
            r["publication_id"]
            for r in conn.execute(
                "SELECT publication_id FROM publication_images WHERE image_id = ?", (image_id,)
            ).fetchall()
        ]
        conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
        for pid in publication_ids:
            compact_positions(conn, pid)

    remove_image_files([image], variants)
    logger.info("Image %s deleted", image_id)
    return jsonify({"ok": True})


@app.route("/api/images/<int:image_id>/metadata", methods=["GET", "PUT", "DELETE"])
@login_required
def api_image_metadata(image_id):
    image = get_image_for_user(image_id)
    if not image:
        return jsonify({"error": "image_not_found"}), 404

    if request.method == "GET":
        meta = {k: image[k] for k in METADATA_FIELDS}
        meta["tags"] = parse_csv(image["tags"])
        return jsonify({"image_id": image_id, "metadata": meta})

    if request.method == "DELETE":
        values = {k: None for k in METADATA_FIELDS}
    else:
        data = json_body()
        values = {k: image[k] for k in METADATA_FIELDS}
        for key in METADATA_FIELDS:
            if key not in data:
                continue
            if key == "tags":
                values["tags"] = parse_tags(data["tags"])
                continue
            value = data[key]
            if value is not None and not isinstance(value, str):
                return jsonify({"error": f"{key}_must_be_string"}), 400
            value = (value or "").strip() or None
            max_len = METADATA_MAX_LENGTH.get(key, 2000)
            if value and len(value) > max_len:
                return jsonify({"error": f"{key}_too_long", "max": max_len}), 400
            values[key] = value

    with get_db_conn() as conn:
        conn.execute(
            """
            UPDATE images
            SET title = ?, description = ?, alt = ?, caption = ?, tags = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (values["title"], values["description"], values["alt"], values["caption"], values["tags"], image_id),
        )

    meta = dict(values)
    meta["tags"] = parse_csv(values["tags"])
    return jsonify({"ok": True, "image_id": image_id, "metadata": meta})


def send_cached(image_id, variant):
    image = get_image_for_user(image_id)
    if not image:
        abort(404)

    try:
        local, _generated = imaging.ensure_cached_variant(image["rel_path"], image["mtime"], variant)
    except (FileNotFoundError, ValueError):
        abort(404)
    except imaging.ImageProcessingError as exc:
        logger.warning("Could not render %s for image %s: %s", variant, image_id, exc)
        return jsonify({"error": "render_failed"}), 422

    return send_file(local, mimetype="image/webp", max_age=86400 * 7)


@app.route("/api/images/<int:image_id>/thumb")
@login_required
def api_thumb(image_id):
    return send_cached(image_id, "thumb")


@app.route("/api/images/<int:image_id>/preview")
@login_required
def api_preview(image_id):
    return send_cached(image_id, "preview")


@app.route("/api/files/<path:rel_path>")
@login_required
def api_files(rel_path):
    parts = [p for p in rel_path.replace("\\", "/").split("/") if p]
    if not parts or ".." in parts:
        return jsonify({"error": "invalid_path"}), 400
    if not is_admin() and parts[0] != str(g.user["id"]):
        abort(403)

    try:
        local = safe_join(config.UPLOAD_ROOT, "/".join(parts))
    except ValueError:
        return jsonify({"error": "invalid_path"}), 400
    if not local.is_file():
        abort(404)

    mimetype = mimetypes.guess_type(local.name)[0] or "application/octet-stream"
    return send_file(str(local), mimetype=mimetype, max_age=86400)


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def upload_limit_mb():
    if request.path.startswith("/api/upload/video"):
        return config.MAX_VIDEO_MB
    return config.MAX_UPLOAD_MB


def declared_too_large(max_mb):
    length = request.content_length
    return length is not None and length > max_mb * 1024 * 1024


def save_upload(file_storage, max_mb):
    """Store an upload under <user>/<yyyy>/<mm>/. Returns (path, size) or (None, size) when too big."""
    now = datetime.now()
    original = secure_filename(file_storage.filename or "") or "upload"
    ext = os.path.splitext(original)[1].lower()
    if not ext:
        ext = mimetypes.guess_extension(file_storage.mimetype or "") or ".bin"

    target_dir = Path(config.UPLOAD_ROOT) / str(g.user["id"]) / f"{now:%Y}" / f"{now:%m}"
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}{ext}"
    target = target_dir / filename

    file_storage.save(str(target))
    size = target.stat().st_size
    if size > max_mb * 1024 * 1024:
        remove_quietly(target)
        return None, size
    return target, size


def upload_gallery_id():
    raw = request.form.get("gallery_id")
    gallery_id = parse_int(raw)
    if gallery_id is not None and not get_gallery_for_user(gallery_id):
        raise LookupError(gallery_id)
    return gallery_id


@app.route("/api/upload", methods=["POST"])
@login_required
def api_upload():
    if declared_too_large(config.MAX_UPLOAD_MB):
        return jsonify({"error": "file_too_large", "max_mb": config.MAX_UPLOAD_MB}), 413

    file = request.files.get("file")
    if file is None or not file.filename:
        return jsonify({"error": "file_required"}), 400

    settings = get_runtime_settings()
    allowed = parse_csv(settings["allowed_image_types"])
    mime = (file.mimetype or "").lower()
    if mime not in allowed:
        return jsonify({"error": "invalid_file_type", "allowed": allowed}), 400

    try:
        gallery_id = upload_gallery_id()
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_gallery_id"}), 400
    except LookupError:
        return jsonify({"error": "gallery_not_found"}), 404

    target, size = save_upload(file, config.MAX_UPLOAD_MB)
    if target is None:
        return jsonify({"error": "file_too_large", "max_mb": config.MAX_UPLOAD_MB}), 413

    try:
        width, height = imaging.read_dimensions(target)
    except imaging.ImageProcessingError as exc:
        logger.warning("Rejected upload %s: %s", file.filename, exc)
        remove_quietly(target)
        return jsonify({"error": "invalid_image"}), 400

    rel = target.relative_to(Path(config.UPLOAD_ROOT)).as_posix()
    with get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO images(
                user_id, gallery_id, filename, original_name, rel_path, size, mime_type,
                width, height, mtime, uploaded_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (
                g.user["id"],
                gallery_id,
                target.name,
                file.filename,
                rel,
                size,
                mime,
                width,
                height,
                target.stat().st_mtime,
            ),
        )
        image_id = cur.lastrowid
        row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()

    logger.info("Image %s uploaded by user %s (%sx%s, %s bytes)", image_id, g.user["id"], width, height, size)

    job = None
    edge = get_int_setting(settings, "upload_resize_edge")
    if edge > 0:
        payload = {
            "image_id": image_id,
            "operations": {"resize": {"width": edge, "height": edge}, "format": "jpeg", "quality": 90},
        }
        try:
            job = jobs.submit_job(g.user["id"], jobs.IMAGE_RESIZE, payload)
        except jobs.QueueUnavailable:
            logger.warning("Upload %s stored without a resize job, queue unavailable", image_id)

    return jsonify({"ok": True, "image": serialize_image(row), "job": job}), 201


@app.route("/api/upload/video", methods=["POST"])
@login_required
def api_upload_video():
    if declared_too_large(config.MAX_VIDEO_MB):
        return jsonify({"error": "file_too_large", "max_mb": config.MAX_VIDEO_MB}), 413

    file = request.files.get("file")
    if file is None or not file.filename:
        return jsonify({"error": "file_required"}), 400

    settings = get_runtime_settings()
    allowed = parse_csv(settings["allowed_video_types"])
    mime = (file.mimetype or "").lower()
    if mime not in allowed:
        return jsonify({"error": "invalid_file_type", "allowed": allowed}), 400

    try:
        gallery_id = upload_gallery_id()
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_gallery_id"}), 400
    except LookupError:
        return jsonify({"error": "gallery_not_found"}), 404

    target, size = save_upload(file, config.MAX_VIDEO_MB)
    if target is None:
        return jsonify({"error": "file_too_large", "max_mb": config.MAX_VIDEO_MB}), 413

    rel = target.relative_to(Path(config.UPLOAD_ROOT)).as_posix()
    with get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO videos(
                user_id, gallery_id, filename, original_name, rel_path, size, mime_type,
                uploaded_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (g.user["id"], gallery_id, target.name, file.filename, rel, size, mime),
        )
        video_id = cur.lastrowid
        row = conn.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()

    logger.info("Video %s uploaded by user %s (%s bytes)", video_id, g.user["id"], size)

    job = None
    try:
        job = jobs.submit_job(
            g.user["id"],
            jobs.VIDEO_TRANSCODE,
            {"video_id": video_id, "operations": {"format": "mp4"}, "poster": True},
        )
    except jobs.QueueUnavailable:
        logger.warning("Video %s stored without a transcode job, queue unavailable", video_id)

    return jsonify({"ok": True, "video": serialize_video(row), "job": job}), 201


# ---------------------------------------------------------------------------
# Publication APIs
# ---------------------------------------------------------------------------


def publication_images(conn, publication_id):
    return conn.execute(
        """
        SELECT i.*, pi.position
        FROM publication_images pi
        JOIN images i ON i.id = pi.image_id
        WHERE pi.publication_id = ?
        ORDER BY pi.position ASC, pi.image_id ASC
        """,
        (publication_id,),
    ).fetchall()


def publication_payload(row, conn):
    item = serialize_publication(row)
    images = []
    for r in publication_images(conn, row["id"]):
        image = serialize_image(r)
        image["position"] = r["position"]
        images.append(image)
    item["images"] = images
    item["image_count"] = len(images)
    return item


def normalize_schedule(data):
    """Return (present, value) for scheduled_at in a request body."""
    if "scheduled_at" not in data:
        return False, None
    raw = data["scheduled_at"]
    if raw is None or raw == "":
        return True, None
    return True, parse_iso_datetime(raw).isoformat()


@app.route("/api/publications", methods=["GET", "POST"])
@login_required
def api_publications():
    if request.method == "GET":
        where = "WHERE p.user_id = ?"
        params = [g.user["id"]]
        try:
            if request.args.get("from"):
                where += " AND p.scheduled_at >= ?"
                params.append(parse_iso_datetime(request.args["from"]).isoformat())
            if request.args.get("to"):
                where += " AND p.scheduled_at <= ?"
                params.append(parse_iso_datetime(request.args["to"]).isoformat())
        except ValueError:
            return jsonify({"error": "invalid_date_range"}), 400

        with get_db_conn() as conn:
            rows = conn.execute(
                f"""
                SELECT p.*, COUNT(pi.image_id) AS image_count
                FROM publications p
                LEFT JOIN publication_images pi ON pi.publication_id = p.id
                {where}
                GROUP BY p.id
                ORDER BY p.scheduled_at IS NULL, p.scheduled_at ASC, p.id DESC
                """,
                params,
            ).fetchall()

        items = []
        for r in rows:
            item = serialize_publication(r)
            item["image_count"] = r["image_count"]
            items.append(item)
        return jsonify({"publications": items})

    data = json_body()
    name = str(data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "name_required"}), 400
    try:
        _, scheduled_at = normalize_schedule(data)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_scheduled_at"}), 400

    with get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO publications(user_id, name, description, scheduled_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (g.user["id"], name, data.get("description"), scheduled_at),
        )
        row = conn.execute("SELECT * FROM publications WHERE id = ?", (cur.lastrowid,)).fetchone()
        item = publication_payload(row, conn)

    return jsonify({"publication": item}), 201


@app.route("/api/publications/<int:publication_id>", methods=["GET", "PUT", "DELETE"])
@login_required
def api_publication(publication_id):
    publication = get_publication_for_user(publication_id)
    if not publication:
        return jsonify({"error": "publication_not_found"}), 404

    if request.method == "GET":
        with get_db_conn() as conn:
            return jsonify({"publication": publication_payload(publication, conn)})

    if request.method == "DELETE":
        with get_db_conn() as conn:
            conn.execute("DELETE FROM publications WHERE id = ?", (publication_id,))
        return jsonify({"ok": True})

    data = json_body()
    name = publication["name"]
    if "name" in data:
        name = str(data["name"] or "").strip()
        if not name:
            return jsonify({"error": "name_required"}), 400
    description = data["description"] if "description" in data else publication["description"]
    try:
        present, scheduled_at = normalize_schedule(data)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_scheduled_at"}), 400
    if not present:
        scheduled_at = publication["scheduled_at"]

    with get_db_conn() as conn:
        conn.execute(
            """
            UPDATE publications
            SET name = ?, description = ?, scheduled_at = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (name, description, scheduled_at, publication_id),
        )
        row = conn.execute("SELECT * FROM publications WHERE id = ?", (publication_id,)).fetchone()
        item = publication_payload(row, conn)

    return jsonify({"publication": item})


@app.route("/api/publications/<int:publication_id>/images", methods=["POST"])
@login_required
def api_publication_add_image(publication_id):
    if not get_publication_for_user(publication_id):
        return jsonify({"error": "publication_not_found"}), 404

    data = json_body()
    try:
        image_id = parse_int(data.get("image_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_image_id"}), 400
    if image_id is None:
        return jsonify({"error": "image_id_required"}), 400

    with get_db_conn() as conn:
        owned = conn.execute(
            "SELECT id FROM images WHERE id = ? AND user_id = ?", (image_id, g.user["id"])
        ).fetchone()
        if not owned:
            return jsonify({"error": "image_not_found"}), 404

        next_position = conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) AS p FROM publication_images WHERE publication_id = ?",
            (publication_id,),
        ).fetchone()["p"]
        try:
            conn.execute(
                """
                INSERT INTO publication_images(publication_id, image_id, position, added_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (publication_id, image_id, next_position),
            )
        except sqlite3.IntegrityError:
            return jsonify({"error": "image_already_in_publication"}), 409
        conn.execute(
            "UPDATE publications SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (publication_id,)
        )

    return jsonify({"ok": True, "image_id": image_id, "position": next_position}), 201


@app.route("/api/publications/<int:publication_id>/images/<int:image_id>", methods=["DELETE"])
@login_required
def api_publication_remove_image(publication_id, image_id):
    if not get_publication_for_user(publication_id):
        return jsonify({"error": "publication_not_found"}), 404

    with get_db_conn() as conn:
        cur = conn.execute(
            "DELETE FROM publication_images WHERE publication_id = ? AND image_id = ?",
            (publication_id, image_id),
        )
        if cur.rowcount == 0:
            return jsonify({"error": "image_not_in_publication"}), 404
        compact_positions(conn, publication_id)
        conn.execute(
            "UPDATE publications SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (publication_id,)
        )

    return jsonify({"ok": True})


@app.route("/api/publications/<int:publication_id>/reorder", methods=["POST"])
@login_required
def api_publication_reorder(publication_id):
    if not get_publication_for_user(publication_id):
        return jsonify({"error": "publication_not_found"}), 404

    orders = json_body().get("image_orders")
    if not isinstance(orders, list) or not orders:
        return jsonify({"error": "image_orders_required"}), 400

    requested = []
    try:
        for item in orders:
            image_id = parse_int(item["image_id"])
            position = parse_int(item["position"])
            if image_id is None or position is None or position < 0:
                raise ValueError(item)
            requested.append((image_id, position))
    except (KeyError, TypeError, ValueError):
        return jsonify({"error": "invalid_image_orders"}), 400

    if len({p for _, p in requested}) != len(requested):
        return jsonify({"error": "duplicate_positions"}), 400
    if len({i for i, _ in requested}) != len(requested):
        return jsonify({"error": "duplicate_image_ids"}), 400

    with get_db_conn() as conn:
        current = [
            r["image_id"]
            for r in conn.execute(
                "SELECT image_id FROM publication_images WHERE publication_id = ? ORDER BY position ASC, image_id ASC",
                (publication_id,),
            ).fetchall()
        ]
        missing = [i for i, _ in requested if i not in current]
        if missing:
            return jsonify({"error": "images_not_in_publication", "missing_image_ids": missing}), 400

        # images left out of the request keep their relative order after the requested ones
        mentioned = {i for i, _ in requested}
        order = [i for i, _ in sorted(requested, key=lambda t: t[1])]
        order += [i for i in current if i not in mentioned]

        for position, image_id in enumerate(order):
            conn.execute(
                "UPDATE publication_images SET position = ? WHERE publication_id = ? AND image_id = ?",
                (position, publication_id, image_id),
            )
        conn.execute(
            "UPDATE publications SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (publication_id,)
        )

    return jsonify({"ok": True, "order": [{"image_id": i, "position": p} for p, i in enumerate(order)]})


# ---------------------------------------------------------------------------
# Job APIs
# ---------------------------------------------------------------------------


@app.route("/api/jobs")
@login_required
def api_jobs():
    status = (request.args.get("status") or "").strip().upper()
    job_type = (request.args.get("type") or "").strip().upper()
    if status and status not in jobs.STATUSES:
        return jsonify({"error": "invalid_status", "allowed": list(jobs.STATUSES)}), 400
    if job_type and job_type not in jobs.JOB_POLICIES:
        return jsonify({"error": "invalid_type", "allowed": sorted(jobs.JOB_POLICIES)}), 400
    try:
        limit, offset = pagination_args(default_limit=50, max_limit=200)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_query"}), 400

    where = "WHERE user_id = ?"
    params = [g.user["id"]]
    if status:
        where += " AND status = ?"
        params.append(status)
    if job_type:
        where += " AND type = ?"
        params.append(job_type)

    with get_db_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()

    return jsonify({"jobs": [jobs.serialize_job(r) for r in rows]})


@app.route("/api/jobs/<int:job_id>")
@login_required
def api_job(job_id):
    row = get_job_for_user(job_id)
    if not row:
        return jsonify({"error": "job_not_found"}), 404
    return jsonify({"job": jobs.serialize_job(row)})


def parse_output_options(data):
    """Return (format, quality) or raise ValueError with an error code."""
    output_format = str(data.get("output_format") or "jpeg").strip().lower()
    if output_format not in imaging.OUTPUT_FORMATS:
        raise ValueError("invalid_output_format")
    try:
        quality = parse_int(data.get("quality"), 90)
    except (TypeError, ValueError):
        raise ValueError("quality_must_be_integer") from None
    if quality < 1 or quality > 100:
        raise ValueError("quality_out_of_range")
    return output_format, quality


def rotated_size(width, height, degrees):
    turns = float(degrees) % 360
    if turns in (90.0, 270.0):
        return height, width
    if turns in (0.0, 180.0):
        return width, height
    return None


@app.route("/api/crop", methods=["POST"])
@login_required
def api_crop():
    data = json_body()
    try:
        image_id = parse_int(data.get("image_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_image_id"}), 400
    if image_id is None:
        return jsonify({"error": "image_id_required"}), 400

    image = get_image_for_user(image_id)
    if not image:
        return jsonify({"error": "image_not_found"}), 404

    area = data.get("crop_area")
    try:
        crop = {k: int(round(float(area[k]))) for k in ("x", "y", "width", "height")}
    except (KeyError, TypeError, ValueError):
        return jsonify({"error": "invalid_crop_area"}), 400
    if crop["width"] <= 0 or crop["height"] <= 0 or crop["x"] < 0 or crop["y"] < 0:
        return jsonify({"error": "invalid_crop_area"}), 400

    try:
        rotation = float(data.get("rotation") or 0)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_rotation"}), 400

    try:
        output_format, quality = parse_output_options(data)
    except ValueError as exc:
        code = str(exc)
        if code == "quality_out_of_range":
            return jsonify({"error": code, "min": 1, "max": 100}), 400
        return jsonify({"error": code}), 400

    if image["width"] and image["height"]:
        bounds = rotated_size(image["width"], image["height"], rotation)
        if bounds and (crop["x"] + crop["width"] > bounds[0] or crop["y"] + crop["height"] > bounds[1]):
            return jsonify({"error": "crop_out_of_bounds", "image_width": bounds[0], "image_height": bounds[1]}), 400

    operations = {
        "crop": crop,
        "rotate": rotation,
        "flip_horizontal": parse_bool(data.get("flip_horizontal", False)),
        "flip_vertical": parse_bool(data.get("flip_vertical", False)),
        "format": output_format,
        "quality": quality,
    }
    job, error = submit_or_503(jobs.IMAGE_CROP, {"image_id": image_id, "operations": operations})
    if error:
        return error
    return jsonify({"ok": True, "job_id": job["id"], "job": job}), 201


@app.route("/api/crop/smart", methods=["POST"])
@login_required
def api_smart_crop():
    data = json_body()
    try:
        image_id = parse_int(data.get("image_id"))
        target_width = parse_int(data.get("target_width"), 800)
        target_height = parse_int(data.get("target_height"), 600)
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_parameters"}), 400
    if image_id is None:
        return jsonify({"error": "image_id_required"}), 400
    for value in (target_width, target_height):
        if value < 1 or value > MAX_TARGET_EDGE:
            return jsonify({"error": "target_size_out_of_range", "min": 1, "max": MAX_TARGET_EDGE}), 400

    if not get_image_for_user(image_id):
        return jsonify({"error": "image_not_found"}), 404

    job, error = submit_or_503(
        jobs.IMAGE_SMART_CROP,
        {"image_id": image_id, "target_width": target_width, "target_height": target_height},
    )
    if error:
        return error
    return jsonify({"ok": True, "job_id": job["id"], "job": job}), 202


@app.route("/api/resize", methods=["POST"])
@login_required
def api_resize():
    data = json_body()
    try:
        image_id = parse_int(data.get("image_id"))
        width = parse_int(data.get("width"))
        height = parse_int(data.get("height"))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_parameters"}), 400
    if image_id is None:
        return jsonify({"error": "image_id_required"}), 400
    if width is None and height is None:
        return jsonify({"error": "width_or_height_required"}), 400
    for value in (width, height):
        if value is not None and (value < 1 or value > MAX_RESIZE_EDGE):
            return jsonify({"error": "size_out_of_range", "min": 1, "max": MAX_RESIZE_EDGE}), 400

    try:
        output_format, quality = parse_output_options(data)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    if not get_image_for_user(image_id):
        return jsonify({"error": "image_not_found"}), 404

    operations = {
        "resize": {"width": width, "height": height},
        "format": output_format,
        "quality": quality,
    }
    job, error = submit_or_503(jobs.IMAGE_RESIZE, {"image_id": image_id, "operations": operations})
    if error:
        return error
    return jsonify({"ok": True, "job_id": job["id"], "job": job}), 202


# ---------------------------------------------------------------------------
# Export APIs
# ---------------------------------------------------------------------------


def export_archive_name(raw):
    name = secure_filename(str(raw or "").strip())
    if not name:
        name = f"photodesk_export_{datetime.now():%Y%m%d_%H%M%S}"
    if not name.lower().endswith(".zip"):
        name += ".zip"
    return name


@app.route("/api/export", methods=["GET", "POST"])
@login_required
def api_export():
    if request.method == "GET":
        try:
            job_id = parse_int(request.args.get("job_id"))
        except (TypeError, ValueError):
            return jsonify({"error": "invalid_job_id"}), 400
        if job_id is None:
            return jsonify({"error": "job_id_required"}), 400

        row = get_job_for_user(job_id)
        if not row or row["type"] != jobs.ZIP_CREATE:
            return jsonify({"error": "job_not_found"}), 404
        job = jobs.serialize_job(row)
        download_url = f"/api/export/{job_id}/download" if job["status"] == jobs.COMPLETED else None
        return jsonify({"job": job, "download_url": download_url})

    data = json_body()
    try:
        publication_ids = parse_int_list(data.get("publication_ids"))
        image_ids = parse_int_list(data.get("image_ids"))
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_ids"}), 400

    ordered = []
    seen = set()

    with get_db_conn() as conn:
        for pid in publication_ids:
            owned = conn.execute(
                "SELECT id FROM publications WHERE id = ? AND user_id = ?", (pid, g.user["id"])
            ).fetchone()
            if not owned:
                return jsonify({"error": "publication_not_found", "publication_id": pid}), 404
            for r in conn.execute(
                "SELECT image_id FROM publication_images WHERE publication_id = ? ORDER BY position ASC, image_id ASC",
                (pid,),
            ).fetchall():
                if r["image_id"] not in seen:
                    seen.add(r["image_id"])
                    ordered.append(r["image_id"])

        for image_id in image_ids:
            if image_id not in seen:
                seen.add(image_id)
                ordered.append(image_id)

        if not ordered:
            return jsonify({"error": "nothing_to_export"}), 400

        placeholders = ",".join("?" for _ in ordered)
        found = {
            r["id"]
            for r in conn.execute(
                f"SELECT id FROM images WHERE user_id = ? AND id IN ({placeholders})",
                (g.user["id"], *ordered),
            ).fetchall()
        }

    missing = [i for i in ordered if i not in found]
    if missing:
        return jsonify({"error": "images_not_found", "missing_image_ids": missing}), 400

    payload = {
        "image_ids": ordered,
        "include_metadata": parse_bool(data.get("include_metadata", True)),
        "archive_name": export_archive_name(data.get("archive_name")),
    }
    job, error = submit_or_503(jobs.ZIP_CREATE, payload)
    if error:
        return error
    return jsonify({"ok": True, "job_id": job["id"], "job": job, "image_count": len(ordered)}), 202


@app.route("/api/export/<int:job_id>/download")
@login_required
def api_export_download(job_id):
    row = get_job_for_user(job_id)
    if not row or row["type"] != jobs.ZIP_CREATE:
        return jsonify({"error": "job_not_found"}), 404
    job = jobs.serialize_job(row)
    if job["status"] != jobs.COMPLETED or not job["result"]:
        return jsonify({"error": "export_not_ready", "status": job["status"]}), 409

    archive_name = job["result"].get("archive_name") or ""
    path = archive_target(row["user_id"], os.path.basename(archive_name))
    if not path.is_file():
        return jsonify({"error": "archive_missing"}), 404

    return send_file(str(path), mimetype="application/zip", as_attachment=True, download_name=archive_name)


# ---------------------------------------------------------------------------
# Video APIs
# ---------------------------------------------------------------------------


@app.route("/api/videos")
@login_required
def api_videos():
    try:
        limit, offset = pagination_args()
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_query"}), 400

    with get_db_conn() as conn:
        total = conn.execute("SELECT COUNT(*) AS c FROM videos WHERE user_id = ?", (g.user["id"],)).fetchone()["c"]
        rows = conn.execute(
            "SELECT * FROM videos WHERE user_id = ? ORDER BY uploaded_at DESC, id DESC LIMIT ? OFFSET ?",
            (g.user["id"], limit, offset),
        ).fetchall()

    return jsonify(
        {
            "videos": [serialize_video(r) for r in rows],
            "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + len(rows) < total},
        }
    )


@app.route("/api/videos/<int:video_id>")
@login_required
def api_video(video_id):
    row = get_video_for_user(video_id)
    if not row:
        return jsonify({"error": "video_not_found"}), 404

    with get_db_conn() as conn:
        variants = conn.execute(
            "SELECT * FROM video_variants WHERE video_id = ? ORDER BY created_at DESC, id DESC",
            (video_id,),
        ).fetchall()

    item = serialize_video(row)
    item["variants"] = [serialize_video_variant(v) for v in variants]
    return jsonify({"video": item})


@app.route("/api/videos/<int:video_id>/transcode", methods=["POST"])
@login_required
def api_video_transcode(video_id):
    if not get_video_for_user(video_id):
        return jsonify({"error": "video_not_found"}), 404

    data = json_body()
    operations = {k: data[k] for k in ("format", "quality", "resolution", "trim", "crop") if data.get(k) is not None}
    errors = video.validate_operations(operations)
    if errors:
        return jsonify({"error": "invalid_operations", "details": errors}), 400

    job, error = submit_or_503(
        jobs.VIDEO_TRANSCODE,
        {"video_id": video_id, "operations": operations, "poster": parse_bool(data.get("poster", True))},
    )
    if error:
        return error
    return jsonify({"ok": True, "job_id": job["id"], "job": job}), 202


# ---------------------------------------------------------------------------
# Admin APIs
# ---------------------------------------------------------------------------


@app.route("/api/admin/stats")
@admin_required
def admin_stats():
    with get_db_conn() as conn:
        counts = {
            table: conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]
            for table in ("users", "galleries", "images", "videos", "publications")
        }
        storage = conn.execute("SELECT COALESCE(SUM(size), 0) AS s FROM images").fetchone()["s"]
        by_status = {status: 0 for status in jobs.STATUSES}
        for r in conn.execute("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status").fetchall():
            by_status[r["status"]] = r["c"]
        recent = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC, id DESC LIMIT 10").fetchall()

    return jsonify(
        {
            "counts": counts,
            "total_image_size_mb": round(storage / (1024 * 1024), 2),
            "jobs": by_status,
            "recent_jobs": [jobs.serialize_job(r) for r in recent],
        }
    )


@app.route("/api/admin/settings", methods=["GET", "PUT"])
@admin_required
def admin_settings():
    if request.method == "GET":
        cfg = get_runtime_settings()
        payload = {key: get_int_setting(cfg, key) for key in config.INT_SETTINGS}
        payload["allowed_image_types"] = parse_csv(cfg["allowed_image_types"])
        payload["allowed_video_types"] = parse_csv(cfg["allowed_video_types"])
        return jsonify(payload)

    data = json_body()

    for key, (_default, min_v, max_v) in config.INT_SETTINGS.items():
        if key in data:
            try:
                value = parse_int(data[key])
            except (TypeError, ValueError):
                return jsonify({"error": f"{key}_must_be_integer"}), 400
            if value is None:
                return jsonify({"error": f"{key}_must_be_integer"}), 400
            if value < min_v or value > max_v:
                return jsonify({"error": f"{key}_out_of_range", "min": min_v, "max": max_v}), 400
            set_setting(key, str(value))

    for key in ("allowed_image_types", "allowed_video_types"):
        if key in data:
            raw = data[key]
            items = raw if isinstance(raw, list) else parse_csv(raw)
            values = ",".join(str(v).strip().lower() for v in items if str(v).strip())
            if not values:
                return jsonify({"error": f"{key}_empty"}), 400
            set_setting(key, values)

    try:
        ensure_runtime_dirs()
    except OSError as exc:
        return jsonify({"error": "storage_prepare_failed", "detail": str(exc)}), 400

    return jsonify({"ok": True})


@app.route("/api/admin/users", methods=["GET", "POST"])
@admin_required
def admin_users():
    if request.method == "GET":
        with get_db_conn() as conn:
            rows = conn.execute(
                """
                SELECT id, email, name, role, active, created_at, updated_at
                FROM users
                ORDER BY id ASC
                """
            ).fetchall()

        return jsonify({"users": [serialize_user(r) for r in rows]})

    data = json_body()
    email = (data.get("email") or "").strip().lower()
    name = (data.get("name") or "").strip() or None
    password = data.get("password") or ""
    role = (data.get("role") or "user").strip().lower()
    active = parse_bool(data.get("active", True))

    if not email or "@" not in email:
        return jsonify({"error": "email_required"}), 400
    if len(password) < 6:
        return jsonify({"error": "password_too_short", "min": 6}), 400
    if role not in {"admin", "user"}:
        return jsonify({"error": "invalid_role"}), 400

    try:
        with get_db_conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO users(email, name, password_hash, role, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (email, name, generate_password_hash(password), role, 1 if active else 0),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)).fetchone()
    except sqlite3.IntegrityError:
        return jsonify({"error": "email_exists"}), 409

    logger.info("User %s created with role %s", email, role)
    return jsonify({"ok": True, "user": serialize_user(row)}), 201


@app.route("/api/admin/users/<int:user_id>", methods=["PUT"])
@admin_required
def admin_update_user(user_id):
    data = json_body()

    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT id, email, name, role, active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if not row:
            return jsonify({"error": "user_not_found"}), 404

        email = data.get("email") or row["email"]
        if not isinstance(email, str) or "@" not in email:
            return jsonify({"error": "invalid_email"}), 400
        email = email.strip().lower()
        name = data["name"] if "name" in data else row["name"]
        role = str(data.get("role") or row["role"]).strip().lower()
        if role not in {"admin", "user"}:
            return jsonify({"error": "invalid_role"}), 400

        active = parse_bool(data["active"]) if "active" in data else bool(row["active"])

        # Prevent removing last active admin
        if row["role"] == "admin" and row["active"]:
            will_be_admin = role == "admin" and active
            if not will_be_admin:
                others = conn.execute(
                    "SELECT COUNT(*) AS c FROM users WHERE role = 'admin' AND active = 1 AND id != ?",
                    (user_id,),
                ).fetchone()["c"]
                if others == 0:
                    return jsonify({"error": "last_active_admin"}), 400

        password = data.get("password")
        update_password = isinstance(password, str) and password != ""
        if update_password and len(password) < 6:
            return jsonify({"error": "password_too_short", "min": 6}), 400

        try:
            conn.execute(
                """
                UPDATE users
                SET email = ?, name = ?, role = ?, active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (email, name, role, 1 if active else 0, user_id),
            )
            if update_password:
                conn.execute(
                    "UPDATE users SET password_hash = ? WHERE id = ?",
                    (generate_password_hash(password), user_id),
                )
        except sqlite3.IntegrityError:
            return jsonify({"error": "email_exists"}), 409

    return jsonify({"ok": True})


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.errorhandler(403)
def handle_403(_e):
    if is_api_request():
        return jsonify({"error": "forbidden"}), 403
    return "Forbidden", 403


@app.errorhandler(404)
def handle_404(_e):
    if is_api_request():
        return jsonify({"error": "not_found"}), 404
    return "Not Found", 404


@app.errorhandler(413)
def handle_413(_e):
    return jsonify({"error": "file_too_large", "max_mb": upload_limit_mb()}), 413


@app.errorhandler(500)
def handle_500(_e):
    if is_api_request():
        return jsonify({"error": "internal_error"}), 500
    return "Internal Server Error", 500


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


init_db()

if __name__ == "__main__":
    logger.info("PhotoDesk running on %s:%s", config.HOST, config.PORT)
    logger.info("DB path: %s", config.DB_PATH)
    app.run(host=config.HOST, port=config.PORT)
