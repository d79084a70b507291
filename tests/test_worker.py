from __future__ import annotations

import json
import subprocess
import zipfile
from pathlib import Path

import pytest
from PIL import Image

import config
import jobs
import store
import video
import worker

PROBE = {
    "streams": [{"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720}],
    "format": {"format_name": "mp4", "duration": "8.0"},
}


def _run(user_id, job_type, payload):
    job_id = jobs.create_job(user_id, job_type, payload)
    return job_id, worker.run_job(job_id)


def _job(job_id):
    return jobs.serialize_job(jobs.get_job(job_id))


def test_crop_job_writes_variant(env, admin_id, stored_image):
    image_id = stored_image(admin_id, size=(200, 100))
    ops = {
        "crop": {"x": 10, "y": 10, "width": 50, "height": 40},
        "rotate": 0,
        "flip_horizontal": True,
        "format": "png",
        "quality": 90,
    }

    job_id, result = _run(admin_id, jobs.IMAGE_CROP, {"image_id": image_id, "operations": ops})

    assert (result["width"], result["height"]) == (50, 40)
    assert result["output_path"].endswith(".png")
    out = store.upload_path(result["output_path"])
    with Image.open(out) as img:
        assert img.size == (50, 40)

    job = _job(job_id)
    assert job["status"] == jobs.COMPLETED
    assert job["result"]["variant_id"] == result["variant_id"]

    with store.get_db_conn() as conn:
        variant = conn.execute("SELECT * FROM image_variants WHERE id = ?", (result["variant_id"],)).fetchone()
    assert variant["variant_type"] == "crop"
    assert variant["mime_type"] == "image/png"
    assert json.loads(variant["parameters"])["flip_horizontal"] is True


def test_resize_job_never_enlarges(env, admin_id, stored_image):
    image_id = stored_image(admin_id, size=(300, 150))
    _, result = _run(
        admin_id,
        jobs.IMAGE_RESIZE,
        {"image_id": image_id, "operations": {"resize": {"width": 1024, "height": 1024}, "format": "jpeg"}},
    )
    assert (result["width"], result["height"]) == (300, 150)

    _, result = _run(
        admin_id,
        jobs.IMAGE_RESIZE,
        {"image_id": image_id, "operations": {"resize": {"width": 100, "height": 100}}},
    )
    assert (result["width"], result["height"]) == (100, 50)


def test_smart_crop_job(env, admin_id, stored_image):
    image_id = stored_image(admin_id, size=(640, 480))
    job_id, result = _run(
        admin_id, jobs.IMAGE_SMART_CROP, {"image_id": image_id, "target_width": 200, "target_height": 100}
    )

    with Image.open(store.upload_path(result["output_path"])) as img:
        assert img.size == (200, 100)
        assert img.format == "JPEG"

    params = result["crop"]
    assert params["method"] == "salience"
    assert (params["original_width"], params["original_height"]) == (640, 480)
    assert params["crop_x"] + params["crop_width"] <= 640
    assert _job(job_id)["status"] == jobs.COMPLETED


def test_failed_job_is_marked_and_reraised(env, admin_id, stored_image):
    image_id = stored_image(admin_id)
    with store.get_db_conn() as conn:
        rel = conn.execute("SELECT rel_path FROM images WHERE id = ?", (image_id,)).fetchone()["rel_path"]
    store.upload_path(rel).unlink()

    job_id = jobs.create_job(admin_id, jobs.IMAGE_CROP, {"image_id": image_id, "operations": {}})
    with pytest.raises(Exception, match="source file missing"):
        worker.run_job(job_id)

    job = _job(job_id)
    assert job["status"] == jobs.FAILED
    assert "source file missing" in job["error"]
    assert job["attempts"] == 1


def test_completed_job_is_not_rerun(env, admin_id, stored_image):
    image_id = stored_image(admin_id)
    job_id, _ = _run(admin_id, jobs.IMAGE_RESIZE, {"image_id": image_id, "operations": {"resize": {"width": 10}}})

    assert worker.run_job(job_id) is None
    assert _job(job_id)["attempts"] == 1


def test_missing_job_is_ignored(env):
    assert worker.run_job(999) is None


def test_zip_job_orders_and_skips(env, admin_id, stored_image):
    first = stored_image(admin_id, name="b.jpg", title="Second")
    second = stored_image(admin_id, name="a.jpg")
    gone = stored_image(admin_id, name="gone.jpg")
    with store.get_db_conn() as conn:
        rel = conn.execute("SELECT rel_path FROM images WHERE id = ?", (gone,)).fetchone()["rel_path"]
    store.upload_path(rel).unlink()

    _, result = _run(
        admin_id,
        jobs.ZIP_CREATE,
        {"image_ids": [first, gone, second], "include_metadata": True, "archive_name": "out.zip"},
    )

    assert result["image_count"] == 2
    assert result["skipped"] == [gone]
    path = Path(result["archive_path"])
    assert path == Path(config.ARCHIVE_ROOT) / str(admin_id) / "out.zip"
    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["b.jpg", "b.txt", "a.jpg", "a.txt"]
        assert "title: Second" in zf.read("b.txt").decode()


def test_video_transcode_job(env, admin_id, monkeypatch: pytest.MonkeyPatch):
    rel = f"{admin_id}/2024/05/clip.mov"
    src = Path(config.UPLOAD_ROOT) / rel
    src.parent.mkdir(parents=True, exist_ok=True)
    src.write_bytes(b"\x00" * 64)
    with store.get_db_conn() as conn:
        video_id = conn.execute(
            """
            INSERT INTO videos(user_id, filename, original_name, rel_path, size, mime_type)
            VALUES (?, 'clip.mov', 'clip.mov', ?, 64, 'video/quicktime')
            """,
            (admin_id, rel),
        ).lastrowid

    commands = []

    def fake_run(cmd, **kwargs):
        commands.append(cmd)
        if cmd[0] == config.FFPROBE_PATH:
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(PROBE), stderr="")
        Path(cmd[-1]).write_bytes(b"encoded")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(video.subprocess, "run", fake_run)

    job_id, result = _run(
        admin_id,
        jobs.VIDEO_TRANSCODE,
        {"video_id": video_id, "operations": {"format": "mp4", "resolution": "720p"}, "poster": True},
    )

    assert result["resolution"] == "1280x720"
    assert result["format"] == "mp4"
    assert result["size"] == len(b"encoded")
    assert result["poster_path"].endswith(".jpg")
    assert [c[0] for c in commands] == [config.FFPROBE_PATH, config.FFMPEG_PATH, config.FFPROBE_PATH, config.FFMPEG_PATH]

    with store.get_db_conn() as conn:
        row = conn.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        variant = conn.execute("SELECT * FROM video_variants WHERE video_id = ?", (video_id,)).fetchone()
    assert row["duration"] == pytest.approx(8.0)
    assert row["width"] == 1280
    assert variant["variant_type"] == "transcode"
    assert variant["mime_type"] == "video/mp4"
    assert _job(job_id)["status"] == jobs.COMPLETED


def test_video_transcode_rejects_bad_operations(env, admin_id):
    job_id = jobs.create_job(admin_id, jobs.VIDEO_TRANSCODE, {"video_id": 1, "operations": {"format": "gif"}})
    with pytest.raises(video.VideoProcessingError):
        worker.run_job(job_id)
    assert _job(job_id)["status"] == jobs.FAILED
