"""ffprobe / ffmpeg bridge for video uploads and transcode jobs."""

import json
import logging
import subprocess
from pathlib import Path

import config

logger = logging.getLogger("photodesk.video")

FORMAT_CODECS = {
    "mp4": ("libx264", "aac"),
    "mov": ("libx264", "aac"),
    "webm": ("libvpx", "libvorbis"),
    "avi": ("libxvid", "libmp3lame"),
}

QUALITY_BITRATES = {
    "low": ("800k", "128k"),
    "medium": ("1200k", "192k"),
    "high": ("2500k", "320k"),
}

RESOLUTIONS = {
    "480p": (854, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "4k": (3840, 2160),
}

MIME_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
}


class VideoProcessingError(Exception):
    pass


def validate_operations(operations):
    """Return a list of error codes for a transcode request."""
    errors = []
    if operations.get("format") and operations["format"] not in FORMAT_CODECS:
        errors.append("invalid_format")
    if operations.get("quality") and operations["quality"] not in QUALITY_BITRATES:
        errors.append("invalid_quality")
    if operations.get("resolution") and operations["resolution"] not in RESOLUTIONS:
        errors.append("invalid_resolution")

    trim = operations.get("trim")
    if trim is not None:
        try:
            if float(trim["start"]) < 0 or float(trim["duration"]) <= 0:
                errors.append("invalid_trim")
        except (KeyError, TypeError, ValueError):
            errors.append("invalid_trim")

    crop = operations.get("crop")
    if crop is not None:
        try:
            values = [int(crop[k]) for k in ("width", "height", "x", "y")]
            if values[0] <= 0 or values[1] <= 0 or values[2] < 0 or values[3] < 0:
                errors.append("invalid_crop")
        except (KeyError, TypeError, ValueError):
            errors.append("invalid_crop")
    return errors


def build_transcode_command(src, dst, operations):
    cmd = [config.FFMPEG_PATH, "-hide_banner", "-loglevel", "error", "-y"]

    trim = operations.get("trim")
    if trim:
        cmd += ["-ss", str(trim["start"])]
    cmd += ["-i", str(src)]
    if trim:
        cmd += ["-t", str(trim["duration"])]

    fmt = operations.get("format") or "mp4"
    vcodec, acodec = FORMAT_CODECS[fmt]
    cmd += ["-c:v", vcodec, "-c:a", acodec]

    quality = operations.get("quality")
    if quality:
        vbitrate, abitrate = QUALITY_BITRATES[quality]
        cmd += ["-b:v", vbitrate, "-b:a", abitrate]

    filters = []
    crop = operations.get("crop")
    if crop:
        filters.append(f"crop={int(crop['width'])}:{int(crop['height'])}:{int(crop['x'])}:{int(crop['y'])}")
    resolution = operations.get("resolution")
    if resolution:
        width, height = RESOLUTIONS[resolution]
        filters.append(f"scale={width}:{height}")
    if filters:
        cmd += ["-vf", ",".join(filters)]

    if fmt in ("mp4", "mov"):
        cmd += ["-movflags", "+faststart"]

    cmd.append(str(dst))
    return cmd


def _run(cmd, timeout):
    logger.info("Executing: %s", " ".join(cmd))
    try:
        return subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        raise VideoProcessingError(f"{cmd[0]} not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise VideoProcessingError(f"{Path(cmd[0]).name} timed out after {timeout}s") from exc
    except subprocess.CalledProcessError as exc:
        tail = (exc.stderr or "").strip()[-500:]
        raise VideoProcessingError(f"{Path(cmd[0]).name} failed ({exc.returncode}): {tail}") from exc


def parse_probe(payload):
    streams = payload.get("streams") or []
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is None:
        raise VideoProcessingError("no video stream found")
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    fmt = payload.get("format") or {}
    try:
        duration = float(fmt.get("duration") or video_stream.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    width = int(video_stream.get("width") or 0)
    height = int(video_stream.get("height") or 0)
    return {
        "duration": duration,
        "width": width,
        "height": height,
        "resolution": f"{width}x{height}",
        "format": fmt.get("format_name") or "unknown",
        "video_codec": video_stream.get("codec_name"),
        "audio_codec": audio_stream.get("codec_name") if audio_stream else None,
    }


def probe(path):
    cmd = [
        config.FFPROBE_PATH,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    proc = _run(cmd, timeout=config.FFMPEG_QUICK_TIMEOUT_SECONDS)
    try:
        payload = json.loads(proc.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise VideoProcessingError(f"unreadable ffprobe output: {exc}") from exc
    return parse_probe(payload)


def transcode(src, dst, operations, timeout=None):
    if not Path(src).exists():
        raise VideoProcessingError(f"source video missing: {src}")
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    _run(build_transcode_command(src, dst, operations), timeout or config.FFMPEG_TIMEOUT_SECONDS)
    return probe(dst)


def extract_poster(src, dst, at_seconds=1.0):
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        config.FFMPEG_PATH,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-ss",
        str(at_seconds),
        "-i",
        str(src),
        "-frames:v",
        "1",
        "-q:v",
        "3",
        str(dst),
    ]
    _run(cmd, timeout=config.FFMPEG_QUICK_TIMEOUT_SECONDS)
    return dst
