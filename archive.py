"""Zip export of image sets."""

import logging
import os
import zipfile
from pathlib import Path

from werkzeug.utils import secure_filename

from imaging import tmp_path_for

logger = logging.getLogger("photodesk.archive")

METADATA_FIELDS = (
    "id",
    "filename",
    "original_name",
    "title",
    "description",
    "alt",
    "caption",
    "tags",
    "width",
    "height",
    "mime_type",
    "uploaded_at",
)


class ArchiveError(Exception):
    pass


def metadata_text(image):
    lines = []
    for key in METADATA_FIELDS:
        value = image.get(key)
        if value is None or value == "":
            continue
        lines.append(f"{key}: {value}")
    return "\n".join(lines) + "\n"


def unique_name(name, used):
    if name not in used:
        used.add(name)
        return name
    stem, ext = os.path.splitext(name)
    n = 2
    while f"{stem}_{n}{ext}" in used:
        n += 1
    candidate = f"{stem}_{n}{ext}"
    used.add(candidate)
    return candidate


def member_name(image, source):
    """Flat, traversal-free member name for an image."""
    for raw in (image.get("original_name"), image.get("filename"), Path(source).name):
        name = secure_filename(str(raw or "").replace("\\", "/").rsplit("/", 1)[-1])
        if name:
            return name
    return f"image_{image.get('id')}"


def unique_pair(name, used):
    """Reserve name and its .txt sibling under one shared stem."""
    stem, ext = os.path.splitext(name)
    n = 1
    while True:
        base = stem if n == 1 else f"{stem}_{n}"
        member, meta = base + ext, base + ".txt"
        if member not in used and meta not in used and member != meta:
            used.update((member, meta))
            return member, meta
        n += 1


def build_zip(target_path, entries, include_metadata=False):
    """
    Write entries [(source_path, image_dict), ...] to target_path.

    Members use the image's original name, reduced to a safe base name.
    Missing sources are skipped. Returns (added, skipped).
    """
    target = Path(target_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = tmp_path_for(target)

    used = set()
    added = 0
    skipped = []

    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for source, image in entries:
                if not Path(source).is_file():
                    logger.warning("Skipping missing file: %s", source)
                    skipped.append(image.get("id"))
                    continue

                name = member_name(image, source)
                if include_metadata:
                    member, meta_name = unique_pair(name, used)
                else:
                    member = unique_name(name, used)
                zf.write(source, arcname=member)
                added += 1

                if include_metadata:
                    zf.writestr(meta_name, metadata_text(image))

        if added == 0:
            raise ArchiveError("no image file could be added to the archive")
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    return added, skipped
