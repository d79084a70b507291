"""Environment configuration shared by the web app and the worker."""

import os

DATA_ROOT = os.environ.get("DATA_ROOT", "/var/lib/photodesk/data")
DB_PATH = os.environ.get("PHOTO_DB", os.path.join(DATA_ROOT, "photodesk.db"))
UPLOAD_ROOT = os.environ.get("UPLOAD_ROOT", "/var/lib/photodesk/uploads")
CACHE_ROOT = os.environ.get("CACHE_ROOT", "/var/lib/photodesk/cache")
ARCHIVE_ROOT = os.environ.get("ARCHIVE_ROOT", "/var/lib/photodesk/archives")

SECRET_KEY = os.environ.get("SECRET_KEY", "photodesk-change-me")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

FFMPEG_PATH = os.environ.get("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.environ.get("FFPROBE_PATH", "ffprobe")
FFMPEG_TIMEOUT_SECONDS = int(os.environ.get("FFMPEG_TIMEOUT_SECONDS", "10800"))
# ffprobe and poster frame grabs
FFMPEG_QUICK_TIMEOUT_SECONDS = int(os.environ.get("FFMPEG_QUICK_TIMEOUT_SECONDS", "120"))

MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "10"))
MAX_VIDEO_MB = int(os.environ.get("MAX_VIDEO_MB", "500"))

SETTINGS_CACHE_TTL = float(os.environ.get("SETTINGS_CACHE_TTL_SECONDS", "5"))

CACHE_EXT = ".webp"
THUMB_MAX_EDGE_DEFAULT = int(os.environ.get("THUMB_MAX_EDGE", "480"))
PREVIEW_MAX_EDGE_DEFAULT = int(os.environ.get("PREVIEW_MAX_EDGE", "1920"))
THUMB_QUALITY_DEFAULT = int(os.environ.get("THUMB_QUALITY", "74"))
PREVIEW_QUALITY_DEFAULT = int(os.environ.get("PREVIEW_QUALITY", "80"))
THUMB_TARGET_KB_DEFAULT = int(os.environ.get("THUMB_TARGET_KB", "180"))
PREVIEW_TARGET_KB_DEFAULT = int(os.environ.get("PREVIEW_TARGET_KB", "950"))
WEBP_METHOD_DEFAULT = int(os.environ.get("WEBP_METHOD", "4"))

DEFAULT_SETTINGS = {
    "thumb_max_edge": str(THUMB_MAX_EDGE_DEFAULT),
    "preview_max_edge": str(PREVIEW_MAX_EDGE_DEFAULT),
    "thumb_quality": str(THUMB_QUALITY_DEFAULT),
    "preview_quality": str(PREVIEW_QUALITY_DEFAULT),
    "thumb_target_kb": str(THUMB_TARGET_KB_DEFAULT),
    "preview_target_kb": str(PREVIEW_TARGET_KB_DEFAULT),
    "webp_method": str(WEBP_METHOD_DEFAULT),
    "upload_resize_edge": "1024",
    "smart_crop_analysis_edge": "256",
    "smart_crop_min_scale": "100",
    "job_timeout_seconds": "600",
    "allowed_image_types": "image/jpeg,image/png,image/gif,image/webp",
    "allowed_video_types": "video/mp4,video/avi,video/mov,video/quicktime,video/wmv,video/flv,video/webm,video/mkv",
}

# key -> (default, min, max) for settings stored as integers
INT_SETTINGS = {
    "thumb_max_edge": (THUMB_MAX_EDGE_DEFAULT, 240, 1024),
    "preview_max_edge": (PREVIEW_MAX_EDGE_DEFAULT, 960, 3840),
    "thumb_quality": (THUMB_QUALITY_DEFAULT, 50, 92),
    "preview_quality": (PREVIEW_QUALITY_DEFAULT, 55, 95),
    "thumb_target_kb": (THUMB_TARGET_KB_DEFAULT, 40, 600),
    "preview_target_kb": (PREVIEW_TARGET_KB_DEFAULT, 200, 6000),
    "webp_method": (WEBP_METHOD_DEFAULT, 0, 6),
    "upload_resize_edge": (1024, 0, 8192),
    "smart_crop_analysis_edge": (256, 64, 1024),
    "smart_crop_min_scale": (100, 50, 100),
    "job_timeout_seconds": (600, 30, 86400),
}
