# cardscan/detectors/aspect_scan.py
from __future__ import annotations
from typing import Dict, List, Optional
import logging
import numpy as np

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method, Raster
from cardscan.detectors.windows import integral_pair, window_origins, window_shapes, window_sums
from cardscan.geometry.boxes import aspect_match_score, clip_bounds, nms
from cardscan.io.ingest import downscale, to_gray

logger = logging.getLogger(__name__)


def detect_aspect_scan(raster: Raster, cfg: Optional[Dict] = None) -> List[Candidate]:
    """
    Coarse grid of rectangles at a few scales and near-card ratios, scored
    only by how close width/height is to the card aspect (geometry_score).

    Windows over flat background (gray std under min_content_std) are not
    enumerated at all, so a blank frame yields nothing.
    """
    cfg = merge_cfg(cfg)
    acfg = cfg["aspect_scan"]
    W, H = raster.width, raster.height
    min_area = float(cfg["min_area_ratio"]) * float(W * H)
    target = float(cfg["card_aspect"])
    tol = float(cfg["aspect_tol"])
    min_score = float(acfg.get("min_score", 0.5))
    min_std = float(acfg.get("min_content_std", 6.0))

    small, scale = downscale(to_gray(raster), int(acfg.get("analysis_max_side", 360)))
    h, w = small.shape[:2]
    ii, ii_sq = integral_pair(small)

    raw: List[Candidate] = []
    shapes = window_shapes(w, h, acfg.get("scales", (0.25, 0.35, 0.5, 0.7)),
                           acfg.get("ratios", (target,)), acfg.get("orientations", ("portrait",)))
    for ww, wh in shapes:
        score = aspect_match_score(ww, wh, target, tol)
        if score < min_score:
            continue
        ys, xs = window_origins(w, h, ww, wh, float(acfg.get("stride_frac", 0.5)))
        if ys.size == 0 or xs.size == 0:
            continue
        n = float(ww * wh)
        mean = window_sums(ii, ys, xs, wh, ww) / n
        std = np.sqrt(np.clip(window_sums(ii_sq, ys, xs, wh, ww) / n - mean * mean, 0.0, None))
        for iy, ix in np.argwhere(std >= min_std):
            b = Bounds(float(xs[ix]) / scale, float(ys[iy]) / scale, ww / scale, wh / scale)
            b = clip_bounds(b, W, H)
            if b is None or b.area < min_area:
                continue
            raw.append(Candidate(
                bounds=b,
                corners=b.corners(),
                method=Method.ASPECT_SCAN,
                geometry_score=aspect_match_score(b.width, b.height, target, tol),
            ))

    kept = nms(raw, float(acfg.get("local_iou", 0.5)), key=lambda c: c.geometry_score)
    kept = kept[: int(acfg.get("max_candidates", 24))]
    logger.debug("[aspect] %d windows, %d kept", len(raw), len(kept))
    return kept
