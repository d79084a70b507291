"""
Salience-based smart crop.

The image is scored on a downscaled copy: edge detail, colour saturation and
skin tones are combined into one saliency map, and every window of the target
aspect ratio is scored against it through a summed-area table. The best
window is mapped back onto the full resolution image.
"""

import logging
from collections import namedtuple

import numpy as np
from PIL import Image, ImageFilter

logger = logging.getLogger("photodesk.salience")

CropResult = namedtuple("CropResult", ["x", "y", "width", "height", "score"])

DETAIL_WEIGHT = 0.2
SATURATION_WEIGHT = 0.3
SKIN_WEIGHT = 1.8

SKIN_COLOR = np.array([0.78, 0.57, 0.44], dtype=np.float32)
SKIN_THRESHOLD = 0.8
SKIN_BRIGHTNESS = (0.2, 1.0)
SATURATION_THRESHOLD = 0.4
SATURATION_BRIGHTNESS = (0.05, 0.9)

OUTSIDE_IMPORTANCE = -0.5


def _luminance(rgb):
    return rgb[..., 0] * 0.2126 + rgb[..., 1] * 0.7152 + rgb[..., 2] * 0.0722


def edge_map(img):
    edges = np.asarray(img.convert("L").filter(ImageFilter.FIND_EDGES), dtype=np.float32) / 255.0
    if edges.shape[0] > 2 and edges.shape[1] > 2:
        # the kernel sees the replicated frame as an edge
        edges[0, :] = 0
        edges[-1, :] = 0
        edges[:, 0] = 0
        edges[:, -1] = 0
    return edges


def saturation_map(rgb, lum):
    max_c = rgb.max(axis=2)
    min_c = rgb.min(axis=2)
    sat = np.divide(max_c - min_c, max_c, out=np.zeros_like(max_c), where=max_c > 0)
    gate = (lum >= SATURATION_BRIGHTNESS[0]) & (lum <= SATURATION_BRIGHTNESS[1])
    scaled = np.clip((sat - SATURATION_THRESHOLD) / (1.0 - SATURATION_THRESHOLD), 0.0, 1.0)
    return scaled * gate


def skin_map(rgb, lum):
    mag = np.sqrt((rgb ** 2).sum(axis=2))
    norm = np.divide(rgb, mag[..., None], out=np.zeros_like(rgb), where=mag[..., None] > 0)
    distance = np.sqrt(((norm - SKIN_COLOR) ** 2).sum(axis=2))
    likeness = 1.0 - distance
    gate = (lum >= SKIN_BRIGHTNESS[0]) & (lum <= SKIN_BRIGHTNESS[1]) & (mag > 0)
    scaled = np.clip((likeness - SKIN_THRESHOLD) / (1.0 - SKIN_THRESHOLD), 0.0, 1.0)
    return scaled * gate


def saliency_map(img):
    """Per-pixel interest of an RGB image as a float32 array (rows, cols)."""
    rgb = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
    lum = _luminance(rgb)
    return (
        edge_map(img) * DETAIL_WEIGHT
        + saturation_map(rgb, lum) * SATURATION_WEIGHT
        + skin_map(rgb, lum) * SKIN_WEIGHT
    ).astype(np.float64)


def base_window(width, height, aspect):
    """Largest width x height window of the given aspect that fits."""
    if width / height > aspect:
        return height * aspect, float(height)
    return float(width), width / aspect


def _positions(limit, step):
    positions = list(range(0, limit + 1, step))
    if positions[-1] != limit:
        positions.append(limit)
    return np.array(positions, dtype=np.int64)


def _scales(min_scale):
    scales = []
    scale = 1.0
    while scale >= min_scale - 1e-9:
        scales.append(round(scale, 4))
        scale -= 0.1
    return scales


def best_window(saliency, aspect, min_scale=1.0, step=8):
    """Return (x, y, w, h, scale, score) of the best window in analysis space."""
    rows, cols = saliency.shape
    table = np.zeros((rows + 1, cols + 1), dtype=np.float64)
    table[1:, 1:] = saliency.cumsum(axis=0).cumsum(axis=1)
    total = table[-1, -1]

    base_w, base_h = base_window(cols, rows, aspect)
    best = None

    for scale in _scales(min_scale):
        w = min(cols, max(1, int(round(base_w * scale))))
        h = min(rows, max(1, int(round(base_h * scale))))
        ys = _positions(rows - h, step)
        xs = _positions(cols - w, step)
        yy, xx = np.meshgrid(ys, xs, indexing="ij")

        inside = table[yy + h, xx + w] - table[yy, xx + w] - table[yy + h, xx] + table[yy, xx]
        scores = (inside + OUTSIDE_IMPORTANCE * (total - inside)) / float(w * h)

        idx = np.unravel_index(int(np.argmax(scores)), scores.shape)
        score = float(scores[idx])
        if best is None or score > best[5]:
            best = (int(xx[idx]), int(yy[idx]), w, h, scale, score)

    return best, total


def smart_crop(img, target_width, target_height, analysis_edge=256, min_scale=1.0, step=8):
    """Pick the most salient target-aspect window of img (a PIL image)."""
    if target_width <= 0 or target_height <= 0:
        raise ValueError("target size must be positive")

    orig_w, orig_h = img.size
    aspect = target_width / target_height
    min_scale = min(1.0, max(0.1, float(min_scale)))

    analysis = img.convert("RGB")
    if max(orig_w, orig_h) > analysis_edge:
        analysis = analysis.copy()
        analysis.thumbnail((analysis_edge, analysis_edge), Image.LANCZOS)
    an_w, an_h = analysis.size

    saliency = saliency_map(analysis)
    window, total = best_window(saliency, aspect, min_scale=min_scale, step=max(1, int(step)))
    x_a, y_a, w_a, h_a, scale, score = window

    base_w, base_h = base_window(orig_w, orig_h, aspect)
    if total <= 0:
        crop_w = min(orig_w, max(1, int(round(base_w))))
        crop_h = min(orig_h, max(1, int(round(base_h))))
        logger.debug("Blank saliency map, falling back to centred crop")
        return CropResult((orig_w - crop_w) // 2, (orig_h - crop_h) // 2, crop_w, crop_h, 0.0)

    crop_w = min(orig_w, max(1, int(round(base_w * scale))))
    crop_h = min(orig_h, max(1, int(round(base_h * scale))))
    x = int(round(x_a * orig_w / an_w))
    y = int(round(y_a * orig_h / an_h))
    x = max(0, min(x, orig_w - crop_w))
    y = max(0, min(y, orig_h - crop_h))

    return CropResult(x, y, crop_w, crop_h, round(score, 6))
