# cardscan/pipeline/fallback.py
from __future__ import annotations
from typing import Dict, List, Optional
import logging

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method
from cardscan.geometry.boxes import aspect_match_score, iou

logger = logging.getLogger(__name__)


def _candidate(b: Bounds, confidence: float, cfg: Dict) -> Candidate:
    return Candidate(
        bounds=b,
        corners=b.corners(),
        method=Method.FALLBACK_GRID,
        confidence=round(min(1.0, max(0.0, confidence)), 6),
        geometry_score=aspect_match_score(b.width, b.height, float(cfg["card_aspect"]), float(cfg["aspect_tol"])),
    )


def fit_card(image_width: int, image_height: int, cfg: Optional[Dict] = None) -> Bounds:
    """Largest card-aspect box that fits the image, centered."""
    cfg = merge_cfg(cfg)
    aspect = float(cfg["card_aspect"])
    h = min(float(image_height), float(image_width) / aspect)
    w = h * aspect
    return Bounds((image_width - w) / 2.0, (image_height - h) / 2.0, w, h)


def tile(image_width: int, image_height: int, cfg: Optional[Dict] = None) -> List[Candidate]:
    """
    Deterministic card-sized guesses from the image size alone.

    Scales are tried largest first. Each scale takes the first anchor whose
    box, clamped into the image, does not overlap an already placed box by
    dedup_iou or more. Confidence drops by scale_step per scale rank and
    position_step per anchor rank. When no scale fits (a very wide, short
    image) one centered box sized to the image height is returned instead.
    """
    cfg = merge_cfg(cfg)
    fcfg = cfg["fallback"]
    W, H = float(image_width), float(image_height)
    aspect = float(cfg["card_aspect"])
    dedup = float(cfg["dedup_iou"])
    base = float(fcfg.get("base_confidence", 0.8))
    scale_step = float(fcfg.get("scale_step", 0.1))
    pos_step = float(fcfg.get("position_step", 0.05))
    max_h = float(fcfg.get("max_height_ratio", 0.8)) * H
    cap = max(1, int(fcfg.get("max_candidates", 3)))

    out: List[Candidate] = []
    scales = sorted((float(s) for s in fcfg.get("scales", (0.25, 0.35, 0.45))), reverse=True)
    for rank, s in enumerate(scales):
        w = W * s
        h = w / aspect
        if w <= 0 or h > max_h or h > H:
            continue
        for pos, (ax, ay) in enumerate(fcfg.get("anchors", ((0.05, 0.05),))):
            x = max(0.0, min(W - w, W * float(ax)))
            y = max(0.0, min(H - h, H * float(ay)))
            b = Bounds(x, y, w, h)
            if any(iou(b, c.bounds) >= dedup for c in out):
                continue
            out.append(_candidate(b, base - rank * scale_step - pos * pos_step, cfg))
            break
        if len(out) >= cap:
            break

    if not out:
        out.append(_candidate(fit_card(image_width, image_height, cfg),
                              float(fcfg.get("fit_confidence", 0.45)), cfg))

    out.sort(key=lambda c: c.confidence, reverse=True)
    logger.debug("[fallback] %dx%d -> %d boxes", image_width, image_height, len(out))
    return out[:cap]
