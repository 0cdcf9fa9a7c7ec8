# cardscan/detectors/color_texture.py
from __future__ import annotations
from typing import Dict, List, Optional
import logging
import cv2
import numpy as np

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method, Raster
from cardscan.detectors.windows import integral_image, integral_pair, window_origins, window_shapes, window_sums
from cardscan.geometry.boxes import clip_bounds, nms
from cardscan.io.ingest import downscale, to_bgr

logger = logging.getLogger(__name__)


def detect_color_texture(raster: Raster, cfg: Optional[Dict] = None) -> List[Candidate]:
    """
    Card-sized windows that are busier than a flat background.

    color_variance is the mean per-channel standard deviation inside the
    window over std_ref; texture_score is the mean absolute Laplacian over
    laplacian_ref. Both are clipped to [0, 1]. A window is reported when both
    clear their minimums. Analysis runs on a copy shrunk to analysis_max_side.
    """
    cfg = merge_cfg(cfg)
    tcfg = cfg["texture"]
    W, H = raster.width, raster.height
    frame_area = float(W * H)
    min_area = float(cfg["min_area_ratio"]) * frame_area

    small, scale = downscale(to_bgr(raster), int(tcfg.get("analysis_max_side", 360)))
    h, w = small.shape[:2]
    ii, ii_sq = integral_pair(small)
    gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
    lap = np.abs(cv2.Laplacian(gray, cv2.CV_32F, ksize=3))
    ii_lap = integral_image(lap)

    std_ref = float(tcfg.get("std_ref", 48.0))
    lap_ref = float(tcfg.get("laplacian_ref", 24.0))
    min_cv = float(tcfg.get("min_color_variance", 0.2))
    min_tex = float(tcfg.get("min_texture", 0.15))

    raw: List[Candidate] = []
    shapes = window_shapes(w, h, tcfg.get("scales", (0.2, 0.3, 0.45)),
                           (float(cfg["card_aspect"]),), tcfg.get("orientations", ("portrait",)))
    for ww, wh in shapes:
        ys, xs = window_origins(w, h, ww, wh, float(tcfg.get("stride_frac", 0.25)))
        if ys.size == 0 or xs.size == 0:
            continue
        n = float(ww * wh)
        mean = window_sums(ii, ys, xs, wh, ww) / n
        var = window_sums(ii_sq, ys, xs, wh, ww) / n - mean * mean
        std = np.sqrt(np.clip(var, 0.0, None)).mean(axis=-1)
        cv_score = np.clip(std / std_ref, 0.0, 1.0)
        tex_score = np.clip(window_sums(ii_lap, ys, xs, wh, ww) / n / lap_ref, 0.0, 1.0)

        hits = np.argwhere((cv_score >= min_cv) & (tex_score >= min_tex))
        for iy, ix in hits:
            b = Bounds(float(xs[ix]) / scale, float(ys[iy]) / scale, ww / scale, wh / scale)
            b = clip_bounds(b, W, H)
            if b is None or b.area < min_area:
                continue
            raw.append(Candidate(
                bounds=b,
                corners=b.corners(),
                method=Method.COLOR_TEXTURE,
                color_variance=float(cv_score[iy, ix]),
                texture_score=float(tex_score[iy, ix]),
            ))

    # neighbouring windows overlap heavily; keep the busiest of each cluster
    kept = nms(raw, float(tcfg.get("local_iou", 0.5)),
               key=lambda c: c.color_variance + c.texture_score)
    kept = kept[: int(tcfg.get("max_candidates", 24))]
    logger.debug("[texture] %d windows over threshold, %d kept", len(raw), len(kept))
    return kept
