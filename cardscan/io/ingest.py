"""
Simple I/O helpers for turning image files into read-only Rasters and
getting BGR / grayscale views of them (as OpenCV expects).
"""

from __future__ import annotations
from typing import Tuple
import cv2
import numpy as np

from cardscan.core.contracts import Raster
from cardscan.core.errors import InvalidImageError


def load_raster(path: str) -> Raster:
    """
    Load an image from disk (BGR).
    Raises FileNotFoundError if not found.
    """
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Could not read image at: {path}")
    return Raster.from_array(img)


def decode_raster(data: bytes) -> Raster:
    """Decode JPG/PNG bytes (an upload body, say) into a BGR Raster."""
    if not data:
        raise InvalidImageError("Empty image data")
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise InvalidImageError("Could not decode image data")
    return Raster.from_array(img)


def to_bgr(raster: Raster) -> np.ndarray:
    px = raster.pixels
    if raster.channels == 3:
        return px
    if raster.channels == 4:
        return cv2.cvtColor(np.ascontiguousarray(px), cv2.COLOR_BGRA2BGR)
    return cv2.cvtColor(np.ascontiguousarray(px[:, :, 0]), cv2.COLOR_GRAY2BGR)


def to_gray(raster: Raster) -> np.ndarray:
    px = raster.pixels
    if raster.channels == 1:
        return np.ascontiguousarray(px[:, :, 0])
    code = cv2.COLOR_BGRA2GRAY if raster.channels == 4 else cv2.COLOR_BGR2GRAY
    return cv2.cvtColor(np.ascontiguousarray(px), code)


def downscale(img: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """Shrink so the longest side is at most max_side; returns (img, scale)."""
    h, w = img.shape[:2]
    m = max(h, w)
    if max_side <= 0 or m <= max_side:
        return img, 1.0
    scale = max_side / float(m)
    out = cv2.resize(img, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
                     interpolation=cv2.INTER_AREA)
    return out, scale
