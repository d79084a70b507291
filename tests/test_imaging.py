from __future__ import annotations

import os
from pathlib import Path

import pytest
from PIL import Image

import config
import imaging
import store


def _gradient(width=40, height=20):
    img = Image.new("RGB", (width, height))
    for x in range(width):
        for y in range(height):
            img.putpixel((x, y), (x * 6 % 256, y * 12 % 256, 100))
    return img


def test_rotate_clockwise_swaps_dimensions():
    img = _gradient(40, 20)
    assert imaging.rotate_clockwise(img, 90).size == (20, 40)
    assert imaging.rotate_clockwise(img, 180).size == (40, 20)
    assert imaging.rotate_clockwise(img, 0) is img


def test_rotate_clockwise_direction():
    img = Image.new("RGB", (2, 1), (0, 0, 0))
    img.putpixel((0, 0), (255, 0, 0))
    rotated = imaging.rotate_clockwise(img, 90)
    # the left pixel ends up on top after a clockwise turn
    assert rotated.getpixel((0, 0)) == (255, 0, 0)


def test_crop_box_bounds():
    img = _gradient(40, 20)
    assert imaging.crop_box(img, {"x": 5, "y": 5, "width": 10, "height": 10}) == (5, 5, 15, 15)
    with pytest.raises(imaging.ImageProcessingError):
        imaging.crop_box(img, {"x": 35, "y": 0, "width": 10, "height": 10})
    with pytest.raises(imaging.ImageProcessingError):
        imaging.crop_box(img, {"x": 0, "y": 0, "width": 0, "height": 10})


def test_fit_inside_never_enlarges():
    img = _gradient(40, 20)
    assert imaging.fit_inside(img, 100, 100) is img
    assert imaging.fit_inside(img, 20, 20).size == (20, 10)
    assert imaging.fit_inside(img, None, 5).size == (10, 5)


def test_apply_operations_order_rotate_then_crop():
    img = _gradient(40, 20)
    # after a 90 degree turn the canvas is 20x40, so this crop is only valid post-rotation
    out = imaging.apply_operations(
        img,
        {"rotate": 90, "flip_horizontal": True, "crop": {"x": 0, "y": 20, "width": 20, "height": 20}},
    )
    assert out.size == (20, 20)


def test_render_variant_writes_requested_format(tmp_path: Path):
    src = tmp_path / "src.png"
    Image.new("RGBA", (80, 60), (10, 20, 30, 128)).save(src)
    target = tmp_path / "out" / "variant.jpeg"

    stats = imaging.render_variant(
        src, target, {"resize": {"width": 40, "height": 40}, "format": "jpeg", "quality": 80}
    )

    assert stats["mime_type"] == "image/jpeg"
    assert (stats["width"], stats["height"]) == (40, 30)
    assert stats["size"] == target.stat().st_size
    with Image.open(target) as img:
        assert img.format == "JPEG"
    assert not any(p.name.startswith("variant.jpeg.tmp") for p in target.parent.iterdir())


def test_save_image_rejects_unknown_format(tmp_path: Path):
    with pytest.raises(imaging.ImageProcessingError):
        imaging.save_image(_gradient(), tmp_path / "x.bmp", "bmp")


def test_open_oriented_rejects_garbage(tmp_path: Path):
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"not an image at all")
    with pytest.raises(imaging.ImageProcessingError):
        imaging.open_oriented(bad)


def test_ensure_cached_variant_regenerates_when_source_changes(env, admin_id, stored_image):
    image_id = stored_image(admin_id, size=(900, 600))
    with store.get_db_conn() as conn:
        row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()

    path, generated = imaging.ensure_cached_variant(row["rel_path"], row["mtime"], "thumb")
    assert generated is True
    assert path.endswith(config.CACHE_EXT)
    with Image.open(path) as thumb:
        assert max(thumb.size) <= store.get_int_setting(store.get_runtime_settings(), "thumb_max_edge")

    _, generated = imaging.ensure_cached_variant(row["rel_path"], row["mtime"], "thumb")
    assert generated is False

    newer = row["mtime"] + 100
    os.utime(store.upload_path(row["rel_path"]), (newer, newer))
    _, generated = imaging.ensure_cached_variant(row["rel_path"], newer, "thumb")
    assert generated is True

    imaging.drop_cached_variants(row["rel_path"])
    assert not Path(path).exists()


def test_ensure_cached_variant_missing_source(env):
    with pytest.raises(FileNotFoundError):
        imaging.ensure_cached_variant("1/none.jpg", 0, "preview")
