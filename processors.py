"""
Job processors run by the worker.

Each processor takes the serialized job (see jobs.serialize_job) and returns a
JSON-serializable result. Any exception fails the job.
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image

import archive
import config
import imaging
import jobs
import salience
import store
import video

logger = logging.getLogger("photodesk.worker")


def _stamp():
    return time.strftime("%Y%m%d%H%M%S") + f"{time.time_ns() % 1000000:06d}"


def _load_image_row(image_id, user_id=None):
    with store.get_db_conn() as conn:
        if user_id is None:
            row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM images WHERE id = ? AND user_id = ?",
                (image_id, user_id),
            ).fetchone()
    if not row:
        raise jobs.JobError(f"image {image_id} not found")
    return row


def _variant_target(user_id, original_name, variant_type, ext):
    stem = Path(original_name).stem or "image"
    return Path(config.UPLOAD_ROOT) / str(user_id) / "variants" / f"{stem}_{variant_type}_{_stamp()}{ext}"


def _insert_image_variant(image_row, target, stats, variant_type, parameters):
    with store.get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO image_variants(
                image_id, user_id, filename, rel_path, width, height, size,
                mime_type, variant_type, parameters, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (
                image_row["id"],
                image_row["user_id"],
                target.name,
                store.to_upload_rel(target),
                stats["width"],
                stats["height"],
                stats["size"],
                stats["mime_type"],
                variant_type,
                json.dumps(parameters, ensure_ascii=False),
            ),
        )
        return cur.lastrowid


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def process_image_operations(job):
    data = job["data"]
    operations = data.get("operations") or {}
    variant_type = "resize" if job["type"] == jobs.IMAGE_RESIZE else "crop"

    image = _load_image_row(data["image_id"])
    source = store.upload_path(image["rel_path"])
    if not source.exists():
        raise imaging.ImageProcessingError(f"source file missing: {image['rel_path']}")

    output_format = operations.get("format") or "jpeg"
    if output_format not in imaging.OUTPUT_FORMATS:
        raise imaging.ImageProcessingError(f"unsupported output format: {output_format}")
    ext = imaging.OUTPUT_FORMATS[output_format][2]

    target = _variant_target(image["user_id"], image["original_name"], variant_type, ext)
    stats = imaging.render_variant(source, target, operations)
    variant_id = _insert_image_variant(image, target, stats, variant_type, operations)

    logger.info(
        "Image %s: %s variant %s written (%sx%s, %s bytes)",
        image["id"],
        variant_type,
        variant_id,
        stats["width"],
        stats["height"],
        stats["size"],
    )
    return {
        "variant_id": variant_id,
        "output_path": store.to_upload_rel(target),
        "size": stats["size"],
        "width": stats["width"],
        "height": stats["height"],
        "operations": operations,
    }


def process_smart_crop(job):
    data = job["data"]
    target_width = int(data.get("target_width") or 800)
    target_height = int(data.get("target_height") or 600)

    image = _load_image_row(data["image_id"])
    source = store.upload_path(image["rel_path"])
    if not source.exists():
        raise imaging.ImageProcessingError(f"source file missing: {image['rel_path']}")

    settings = store.get_runtime_settings()
    analysis_edge = store.get_int_setting(settings, "smart_crop_analysis_edge")
    min_scale = store.get_int_setting(settings, "smart_crop_min_scale") / 100.0

    img = imaging.open_oriented(source)
    orig_w, orig_h = img.size
    crop = salience.smart_crop(
        img,
        target_width,
        target_height,
        analysis_edge=analysis_edge,
        min_scale=min_scale,
    )

    framed = img.crop((crop.x, crop.y, crop.x + crop.width, crop.y + crop.height))
    framed = framed.resize((target_width, target_height), Image.LANCZOS)

    target = _variant_target(image["user_id"], image["original_name"], "smartcrop", ".jpeg")
    size = imaging.save_image(framed, target, "jpeg", 90)

    parameters = {
        "target_width": target_width,
        "target_height": target_height,
        "original_width": orig_w,
        "original_height": orig_h,
        "crop_x": crop.x,
        "crop_y": crop.y,
        "crop_width": crop.width,
        "crop_height": crop.height,
        "score": crop.score,
        "method": "salience",
    }
    stats = {"size": size, "width": target_width, "height": target_height, "mime_type": "image/jpeg"}
    variant_id = _insert_image_variant(image, target, stats, "smartcrop", parameters)

    logger.info(
        "Image %s: smart crop %sx%s+%s+%s -> %sx%s",
        image["id"],
        crop.width,
        crop.height,
        crop.x,
        crop.y,
        target_width,
        target_height,
    )
    return {
        "variant_id": variant_id,
        "output_path": store.to_upload_rel(target),
        "size": size,
        "width": target_width,
        "height": target_height,
        "crop": parameters,
    }


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def archive_target(user_id, archive_name):
    return Path(config.ARCHIVE_ROOT) / str(user_id) / archive_name


def process_zip(job):
    data = job["data"]
    user_id = job["user_id"]
    image_ids = [int(i) for i in data.get("image_ids") or []]
    if not image_ids:
        raise archive.ArchiveError("no images to archive")

    archive_name = os.path.basename(data.get("archive_name") or f"export_{job['id']}.zip")

    with store.get_db_conn() as conn:
        placeholders = ",".join("?" for _ in image_ids)
        rows = conn.execute(
            f"SELECT * FROM images WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *image_ids),
        ).fetchall()
    by_id = {r["id"]: dict(r) for r in rows}

    entries = []
    skipped = [i for i in image_ids if i not in by_id]
    for image_id in image_ids:
        image = by_id.get(image_id)
        if image is None:
            continue
        try:
            source = store.upload_path(image["rel_path"])
        except ValueError:
            logger.warning("Image %s has an invalid path, skipping", image_id)
            skipped.append(image_id)
            continue
        entries.append((source, image))

    target = archive_target(user_id, archive_name)
    added, missing = archive.build_zip(target, entries, include_metadata=bool(data.get("include_metadata", True)))
    skipped.extend(missing)

    logger.info("Archive %s written with %s images (%s skipped)", target, added, len(skipped))
    return {
        "archive_path": str(target),
        "archive_name": archive_name,
        "size": target.stat().st_size,
        "image_count": added,
        "skipped": skipped,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Videos
# ---------------------------------------------------------------------------


def process_video_transcode(job):
    data = job["data"]
    operations = data.get("operations") or {}
    errors = video.validate_operations(operations)
    if errors:
        raise video.VideoProcessingError("invalid operations: " + ", ".join(errors))

    with store.get_db_conn() as conn:
        row = conn.execute("SELECT * FROM videos WHERE id = ?", (data["video_id"],)).fetchone()
    if not row:
        raise jobs.JobError(f"video {data['video_id']} not found")

    source = store.upload_path(row["rel_path"])
    if not source.exists():
        raise video.VideoProcessingError(f"source video missing: {row['rel_path']}")

    info = video.probe(source)
    with store.get_db_conn() as conn:
        conn.execute(
            """
            UPDATE videos
            SET duration = ?, width = ?, height = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (info["duration"], info["width"], info["height"], row["id"]),
        )

    fmt = operations.get("format") or "mp4"
    stem = Path(row["original_name"]).stem or "video"
    out_dir = Path(config.UPLOAD_ROOT) / str(row["user_id"]) / "processed"
    target = out_dir / f"{stem}_{_stamp()}.{fmt}"

    out_info = video.transcode(source, target, operations)

    poster_rel = None
    if data.get("poster", True):
        poster = target.with_suffix(".jpg")
        at = min(1.0, max(0.0, out_info["duration"] / 2))
        video.extract_poster(target, poster, at_seconds=at)
        poster_rel = store.to_upload_rel(poster)

    size = target.stat().st_size
    with store.get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO video_variants(
                video_id, filename, rel_path, poster_rel_path, width, height,
                duration, size, mime_type, variant_type, parameters, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'transcode', ?, CURRENT_TIMESTAMP)
            """,
            (
                row["id"],
                target.name,
                store.to_upload_rel(target),
                poster_rel,
                out_info["width"],
                out_info["height"],
                out_info["duration"],
                size,
                video.MIME_TYPES.get(fmt, "application/octet-stream"),
                json.dumps(operations, ensure_ascii=False),
            ),
        )
        variant_id = cur.lastrowid

    logger.info("Video %s transcoded to %s (%s bytes)", row["id"], target.name, size)
    return {
        "variant_id": variant_id,
        "output_path": store.to_upload_rel(target),
        "size": size,
        "duration": out_info["duration"],
        "resolution": out_info["resolution"],
        "format": fmt,
        "poster_path": poster_rel,
    }


PROCESSORS = {
    jobs.IMAGE_CROP: process_image_operations,
    jobs.IMAGE_RESIZE: process_image_operations,
    jobs.IMAGE_SMART_CROP: process_smart_crop,
    jobs.ZIP_CREATE: process_zip,
    jobs.VIDEO_TRANSCODE: process_video_transcode,
}
