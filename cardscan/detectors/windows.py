# cardscan/detectors/windows.py
"""
Sliding-window helpers shared by the window-based detectors.

Window statistics come from summed-area tables, so every window costs four
lookups regardless of its size.
"""
from __future__ import annotations
from typing import Iterator, Sequence, Tuple
import cv2
import numpy as np


def integral_image(a: np.ndarray) -> np.ndarray:
    """Summed-area table with a zero row/column in front (float64)."""
    return cv2.integral(np.ascontiguousarray(a), sdepth=cv2.CV_64F)


def integral_pair(img: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Summed-area tables of img and img**2, for per-window mean and variance."""
    return cv2.integral2(np.ascontiguousarray(img), sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)


def window_sums(ii: np.ndarray, ys: np.ndarray, xs: np.ndarray, wh: int, ww: int) -> np.ndarray:
    """Sums over every window with top-left (ys[i], xs[j]); shape (len(ys), len(xs), ...)."""
    y0 = ys[:, None]
    x0 = xs[None, :]
    y1 = y0 + wh
    x1 = x0 + ww
    return ii[y1, x1] - ii[y0, x1] - ii[y1, x0] + ii[y0, x0]


def window_shapes(
    img_w: int,
    img_h: int,
    scales: Sequence[float],
    ratios: Sequence[float],
    orientations: Sequence[str],
) -> Iterator[Tuple[int, int]]:
    """
    Yield (ww, wh) window sizes. scale sizes the short card side against the
    short image side; ratio is short/long.
    """
    short = min(img_w, img_h)
    seen = set()
    for s in scales:
        side = int(round(float(s) * short))
        for r in ratios:
            r = float(r)
            if side < 4 or r <= 0:
                continue
            long_side = int(round(side / r))
            for o in orientations:
                ww, wh = (side, long_side) if o == "portrait" else (long_side, side)
                if ww > img_w or wh > img_h or (ww, wh) in seen:
                    continue
                seen.add((ww, wh))
                yield ww, wh


def window_origins(img_w: int, img_h: int, ww: int, wh: int, stride_frac: float) -> Tuple[np.ndarray, np.ndarray]:
    stride = max(2, int(float(stride_frac) * min(ww, wh)))
    ys = np.arange(0, img_h - wh + 1, stride, dtype=np.int64)
    xs = np.arange(0, img_w - ww + 1, stride, dtype=np.int64)
    return ys, xs
