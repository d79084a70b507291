"""
Pillow helpers: cache-first WebP derivatives and the edit pipeline used by
crop / resize jobs.
"""

import logging
import os
import threading
import time
from pathlib import Path

from PIL import Image, ImageOps

import config
import store

try:
    import pillow_heif
except Exception:
    pillow_heif = None

logger = logging.getLogger("photodesk.imaging")

if pillow_heif is not None:
    try:
        pillow_heif.register_heif_opener()
        logger.info("HEIF/HEIC support enabled via pillow-heif.")
    except Exception as exc:
        logger.warning("pillow-heif exists but failed to register: %s", exc)

# name -> (PIL format, mime type, file extension)
OUTPUT_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg", ".jpeg"),
    "png": ("PNG", "image/png", ".png"),
    "webp": ("WEBP", "image/webp", ".webp"),
}


class ImageProcessingError(Exception):
    pass


def tmp_path_for(target_path):
    tmp_suffix = f".tmp.{os.getpid()}.{threading.get_ident()}.{time.time_ns()}"
    return Path(str(target_path) + tmp_suffix)


def flatten_rgb(img):
    if img.mode in ("RGBA", "P", "LA"):
        img = img.convert("RGBA")
        bg = Image.new("RGB", img.size, (255, 255, 255))
        bg.paste(img, mask=img.split()[-1])
        return bg
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def open_oriented(source_path):
    """Load an image fully into memory with its EXIF orientation applied."""
    try:
        with Image.open(source_path) as img:
            img = ImageOps.exif_transpose(img)
            img.load()
            return img
    except (OSError, Image.DecompressionBombError) as exc:
        raise ImageProcessingError(f"cannot decode image {Path(source_path).name}: {exc}") from exc


def read_dimensions(source_path):
    img = open_oriented(source_path)
    return img.size


# ---------------------------------------------------------------------------
# Cached thumb / preview derivatives
# ---------------------------------------------------------------------------


def encode_webp_with_budget(image, target_path, quality, min_quality, target_kb, method):
    target_bytes = max(0, int(target_kb) * 1024)
    tmp_path = tmp_path_for(target_path)
    current_quality = max(min_quality, quality)
    encoded_size = 0

    try:
        while True:
            image.save(tmp_path, "WEBP", quality=current_quality, method=method)
            encoded_size = tmp_path.stat().st_size

            if target_bytes <= 0 or encoded_size <= target_bytes or current_quality <= min_quality:
                break

            next_quality = max(min_quality, current_quality - 6)
            if next_quality == current_quality:
                break
            current_quality = next_quality

        os.replace(tmp_path, target_path)
    finally:
        if tmp_path.exists():
            store.remove_quietly(tmp_path)

    return encoded_size, current_quality


def convert_image_to_webp(source_path, target_path, max_edge, quality, min_quality, target_kb, method):
    target = Path(target_path)
    store.ensure_dir(str(target.parent))
    img = flatten_rgb(open_oriented(source_path))
    img.thumbnail((max_edge, max_edge), Image.LANCZOS)
    return encode_webp_with_budget(img, target, quality, min_quality, target_kb, method)


def get_cache_encode_settings(settings):
    return {
        key: store.get_int_setting(settings, key)
        for key in (
            "thumb_max_edge",
            "preview_max_edge",
            "thumb_quality",
            "preview_quality",
            "thumb_target_kb",
            "preview_target_kb",
            "webp_method",
        )
    }


def cache_file_path(variant, rel_path):
    return Path(config.CACHE_ROOT) / variant / (os.path.splitext(rel_path)[0] + config.CACHE_EXT)


def ensure_cached_variant(rel_path, src_mtime, variant):
    """Return (path, generated) for the thumb/preview of an uploaded file."""
    encode_cfg = get_cache_encode_settings(store.get_runtime_settings())
    src = store.upload_path(rel_path)
    cache_path = cache_file_path(variant, rel_path)

    if not src.exists():
        raise FileNotFoundError(str(src))

    if cache_path.exists():
        try:
            # utime round-trips through float seconds
            if cache_path.stat().st_mtime >= src_mtime - 0.001:
                return str(cache_path), False
        except OSError:
            pass

    if variant == "thumb":
        max_edge = encode_cfg["thumb_max_edge"]
        quality = encode_cfg["thumb_quality"]
        min_quality = max(45, quality - 18)
        target_kb = encode_cfg["thumb_target_kb"]
    else:
        max_edge = encode_cfg["preview_max_edge"]
        quality = encode_cfg["preview_quality"]
        min_quality = max(50, quality - 16)
        target_kb = encode_cfg["preview_target_kb"]

    convert_image_to_webp(
        str(src),
        cache_path,
        max_edge=max_edge,
        quality=quality,
        min_quality=min_quality,
        target_kb=target_kb,
        method=encode_cfg["webp_method"],
    )
    try:
        os.utime(cache_path, (src_mtime, src_mtime))
    except OSError:
        pass

    return str(cache_path), True


def drop_cached_variants(rel_path):
    for variant in ("thumb", "preview"):
        store.remove_quietly(cache_file_path(variant, rel_path))


# ---------------------------------------------------------------------------
# Edit pipeline
# ---------------------------------------------------------------------------


def rotate_clockwise(img, degrees):
    degrees = float(degrees or 0) % 360
    if degrees == 0:
        return img
    exact = {90.0: Image.Transpose.ROTATE_270, 180.0: Image.Transpose.ROTATE_180, 270.0: Image.Transpose.ROTATE_90}
    if degrees in exact:
        return img.transpose(exact[degrees])
    fill = (255, 255, 255, 0) if img.mode == "RGBA" else None
    return img.rotate(-degrees, resample=Image.BICUBIC, expand=True, fillcolor=fill)


def crop_box(img, crop):
    x = int(round(float(crop["x"])))
    y = int(round(float(crop["y"])))
    width = int(round(float(crop["width"])))
    height = int(round(float(crop["height"])))

    img_w, img_h = img.size
    if width <= 0 or height <= 0:
        raise ImageProcessingError("crop area must have a positive size")
    if x < 0 or y < 0 or x + width > img_w or y + height > img_h:
        raise ImageProcessingError(
            f"crop area {width}x{height}+{x}+{y} is outside the image bounds {img_w}x{img_h}"
        )
    return x, y, x + width, y + height


def fit_inside(img, width=None, height=None):
    """Shrink to fit inside width x height; never enlarges."""
    src_w, src_h = img.size
    max_w = int(width) if width else src_w
    max_h = int(height) if height else src_h
    scale = min(max_w / src_w, max_h / src_h, 1.0)
    if scale >= 1.0:
        return img
    size = (max(1, int(round(src_w * scale))), max(1, int(round(src_h * scale))))
    return img.resize(size, Image.LANCZOS)


def apply_operations(img, operations):
    """Rotate, flip, crop, then resize, in that order."""
    if operations.get("rotate"):
        img = rotate_clockwise(img, operations["rotate"])
    if operations.get("flip_horizontal"):
        img = ImageOps.mirror(img)
    if operations.get("flip_vertical"):
        img = ImageOps.flip(img)
    if operations.get("crop"):
        img = img.crop(crop_box(img, operations["crop"]))
    if operations.get("resize"):
        resize = operations["resize"]
        img = fit_inside(img, resize.get("width"), resize.get("height"))
    return img


def save_image(img, target_path, output_format="jpeg", quality=90):
    if output_format not in OUTPUT_FORMATS:
        raise ImageProcessingError(f"unsupported output format: {output_format}")
    pil_format, _, _ = OUTPUT_FORMATS[output_format]

    target = Path(target_path)
    store.ensure_dir(str(target.parent))
    tmp_path = tmp_path_for(target)

    if pil_format == "JPEG":
        img = flatten_rgb(img)
        save_kwargs = {"quality": int(quality), "optimize": True}
    elif pil_format == "WEBP":
        save_kwargs = {"quality": int(quality), "method": 4}
    else:
        if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            img = img.convert("RGBA")
        save_kwargs = {"optimize": True}

    try:
        img.save(tmp_path, pil_format, **save_kwargs)
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            store.remove_quietly(tmp_path)

    return target.stat().st_size


def render_variant(source_path, target_path, operations):
    """Apply operations to source_path and write target_path; returns its stats."""
    output_format = operations.get("format") or "jpeg"
    quality = operations.get("quality") or 90

    img = apply_operations(open_oriented(source_path), operations)
    size = save_image(img, target_path, output_format, quality)
    width, height = img.size
    return {
        "size": size,
        "width": width,
        "height": height,
        "mime_type": OUTPUT_FORMATS[output_format][1],
    }
