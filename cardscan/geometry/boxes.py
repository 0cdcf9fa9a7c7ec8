# cardscan/geometry/boxes.py
from __future__ import annotations
from typing import Callable, List, Optional, Sequence, Tuple
import numpy as np

from cardscan.core.config import CARD_ASPECT
from cardscan.core.contracts import Bounds, Candidate, Point


def iou(a: Bounds, b: Bounds) -> float:
    ix1, iy1 = max(a.x, b.x), max(a.y, b.y)
    ix2, iy2 = min(a.x2, b.x2), min(a.y2, b.y2)
    iw, ih = max(0.0, ix2 - ix1), max(0.0, iy2 - iy1)
    inter = float(iw * ih)
    if inter <= 0:
        return 0.0
    union = a.area + b.area - inter
    return inter / union if union > 0 else 0.0


def order_corners_clockwise(pts: np.ndarray) -> np.ndarray:
    """Return TL, TR, BR, BL (clockwise) given 4 unordered points."""
    pts = np.asarray(pts, np.float32)
    if pts.shape != (4, 2):
        pts = pts.reshape(4, 2)
    sorted_y = pts[np.argsort(pts[:, 1], kind="stable")]
    top2 = sorted_y[:2]
    bottom2 = sorted_y[2:]
    tl, tr = top2[np.argsort(top2[:, 0], kind="stable")]
    bl, br = bottom2[np.argsort(bottom2[:, 0], kind="stable")]
    return np.array([tl, tr, br, bl], dtype=np.float32)


def corners_tuple(pts: np.ndarray) -> Tuple[Point, Point, Point, Point]:
    q = np.asarray(pts, np.float32).reshape(4, 2)
    return tuple((float(x), float(y)) for x, y in q)  # type: ignore[return-value]


def orientation_invariant_aspect(width: float, height: float) -> float:
    """Short side over long side, so portrait and landscape cards compare alike."""
    if width <= 1e-6 or height <= 1e-6:
        return 0.0
    a = width / height
    return min(a, 1.0 / a)


def aspect_match_score(width: float, height: float,
                       target: float = CARD_ASPECT, tolerance: float = 0.15) -> float:
    """1 at the card aspect, falling linearly to 0 at +/- tolerance."""
    a = orientation_invariant_aspect(width, height)
    if a <= 0.0 or tolerance <= 0.0:
        return 0.0
    return 1.0 - min(1.0, abs(a - target) / tolerance)


def within_aspect(width: float, height: float,
                  target: float = CARD_ASPECT, tolerance: float = 0.15) -> bool:
    a = orientation_invariant_aspect(width, height)
    return a > 0.0 and abs(a - target) <= tolerance


def clip_bounds(bounds: Bounds, image_width: int, image_height: int) -> Optional[Bounds]:
    """Clip to the image; None when nothing with positive area is left."""
    b = bounds.clip(image_width, image_height)
    if b.width <= 0 or b.height <= 0:
        return None
    return b


def nms(cands: Sequence[Candidate], iou_thresh: float = 0.3,
        key: Optional[Callable[[Candidate], float]] = None) -> List[Candidate]:
    """
    Greedy non-maximum suppression.

    Highest score first; ties go to the larger box. A candidate survives only
    if its IoU with every survivor is below iou_thresh. Losers are dropped
    as-is, their scores are never folded into the survivor.
    """
    if not cands:
        return []
    score = key or (lambda c: c.confidence)
    ordered = sorted(cands, key=lambda c: (score(c), c.area), reverse=True)
    keep: List[Candidate] = []
    for c in ordered:
        if all(iou(c.bounds, k.bounds) < iou_thresh for k in keep):
            keep.append(c)
    return keep
