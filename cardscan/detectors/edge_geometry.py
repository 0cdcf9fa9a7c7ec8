# cardscan/detectors/edge_geometry.py
from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import logging
import math
import cv2
import numpy as np

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method, Raster
from cardscan.geometry.boxes import clip_bounds, corners_tuple, order_corners_clockwise, within_aspect
from cardscan.io.ingest import to_gray

logger = logging.getLogger(__name__)


def _quad_hw(quad: np.ndarray) -> Tuple[float, float]:
    q = np.asarray(quad, np.float32).reshape(4, 2)
    def d(a, b) -> float: return math.hypot(float(a[0]-b[0]), float(a[1]-b[1]))
    tl, tr, br, bl = q
    w = 0.5 * (d(tl, tr) + d(bl, br))
    h = 0.5 * (d(tl, bl) + d(tr, br))
    return h, w


def _quad_from_contour(c: np.ndarray, eps_ratio: float) -> np.ndarray:
    """Direct 4-point approx, then coarser approximations, then minAreaRect."""
    peri = cv2.arcLength(c, True)
    for factor in (1.0, 1.5, 2.0, 3.0):
        approx = cv2.approxPolyDP(c, eps_ratio * factor * peri, True)
        if len(approx) == 4 and cv2.isContourConvex(approx):
            return order_corners_clockwise(approx.reshape(4, 2).astype(np.float32))
    box = cv2.boxPoints(cv2.minAreaRect(c))
    return order_corners_clockwise(box.astype(np.float32))


def _rectangularity(c: np.ndarray, area: float) -> float:
    """Contour area over its (rotated) bounding box area; 1.0 is a perfect rectangle."""
    (_, _), (rw, rh), _ = cv2.minAreaRect(c)
    box_area = float(rw) * float(rh)
    if box_area <= 1e-6:
        return 0.0
    return float(np.clip(area / box_area, 0.0, 1.0))


def _perimeter_points(quad: np.ndarray, n: int) -> np.ndarray:
    q = np.asarray(quad, np.float32).reshape(4, 2)
    segs = [(q[i], q[(i + 1) % 4]) for i in range(4)]
    lengths = np.array([float(np.linalg.norm(b - a)) for a, b in segs])
    total = float(lengths.sum())
    if total <= 1e-6:
        return q.copy()
    pts = []
    for (a, b), L in zip(segs, lengths):
        k = max(2, int(round(n * L / total)))
        t = np.linspace(0.0, 1.0, k, endpoint=False, dtype=np.float32)[:, None]
        pts.append(a + (b - a) * t)
    return np.concatenate(pts, axis=0)


def _edge_strength(quad: np.ndarray, edges: np.ndarray, mag: np.ndarray, ecfg: Dict) -> float:
    """
    Fraction of the quad outline that lies on edge pixels, scaled by how
    strong the gradient is along it.
    """
    H, W = edges.shape[:2]
    pts = _perimeter_points(quad, int(ecfg.get("perimeter_samples", 200)))
    xs = np.clip(np.round(pts[:, 0]).astype(np.int64), 0, W - 1)
    ys = np.clip(np.round(pts[:, 1]).astype(np.int64), 0, H - 1)
    coverage = float(np.count_nonzero(edges[ys, xs])) / float(len(xs))
    # 3x3 Sobel on a step of height C peaks near 4*C after the light blur
    ref = 4.0 * float(ecfg.get("contrast_ref", 48.0))
    contrast = min(1.0, float(np.median(mag[ys, xs])) / ref) if ref > 0 else 1.0
    return float(np.clip(coverage * contrast, 0.0, 1.0))


def _filled_mask_from_edges(edges: np.ndarray, close_ksize: int = 7) -> np.ndarray:
    """Close edge gaps, flood-fill background, and return filled foreground mask."""
    ksize = max(3, close_ksize | 1)
    closed = cv2.morphologyEx(edges, cv2.MORPH_CLOSE, np.ones((ksize, ksize), np.uint8), iterations=1)
    h, w = closed.shape
    filled = closed.copy()
    cv2.floodFill(filled, np.zeros((h + 2, w + 2), np.uint8), (0, 0), 255)
    return cv2.bitwise_or(closed, cv2.bitwise_not(filled))


def _edge_maps(gray: np.ndarray, ecfg: Dict) -> Tuple[np.ndarray, np.ndarray]:
    k = int(ecfg.get("blur_ksize", 5))
    if k > 1:
        if k % 2 == 0:
            k += 1
        gray = cv2.GaussianBlur(gray, (k, k), 0)
    edge_src = gray
    if ecfg.get("clahe", False):
        edge_src = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8)).apply(gray)
    edges = cv2.Canny(edge_src, int(ecfg.get("canny_low", 40)), int(ecfg.get("canny_high", 120)))
    d = int(ecfg.get("dilate", 3))
    if d > 1:
        edges = cv2.dilate(edges, np.ones((d, d), np.uint8), 1)

    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    mag = cv2.magnitude(gx, gy)
    # sampled outline may sit a pixel or two off the ridge
    mag = cv2.dilate(mag, np.ones((5, 5), np.uint8), 1)
    return edges, mag


def detect_edge_geometry(raster: Raster, cfg: Optional[Dict] = None) -> List[Candidate]:
    """
    Card-shaped quadrilaterals from the edge map.

    Canny edges are traced into contours; each big-enough contour is reduced
    to a quad, gated on card aspect (portrait or landscape), and scored with
    edge_strength (outline coverage x gradient contrast) and geometry_score
    (rectangularity).
    """
    cfg = merge_cfg(cfg)
    ecfg = cfg["edge"]
    H, W = raster.height, raster.width
    frame_area = float(H * W)
    min_area = float(cfg["min_area_ratio"]) * frame_area
    max_area = float(ecfg.get("max_area_ratio", 0.95)) * frame_area
    target = float(cfg["card_aspect"])
    tol = float(cfg["aspect_tol"])
    min_edge = float(ecfg.get("min_edge_strength", 0.3))

    edges, mag = _edge_maps(to_gray(raster), ecfg)
    cnts, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)
    # outlines broken at a corner only close up in the filled mask
    filled = _filled_mask_from_edges(edges, int(ecfg.get("close_ksize", 7)))
    filled_cnts, _ = cv2.findContours(filled, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    cnts = list(cnts) + list(filled_cnts)
    sized = [(float(cv2.contourArea(c)), c) for c in cnts if len(c) >= 4]
    sized = [(a, c) for a, c in sized if min_area <= a <= max_area]
    # biggest contours first
    sized.sort(key=lambda t: t[0], reverse=True)
    sized = sized[: int(ecfg.get("max_contours", 400))]
    logger.debug("[edge] %d contours, %d within area gates", len(cnts), len(sized))

    out: List[Candidate] = []
    for area, c in sized:
        quad = _quad_from_contour(c, float(ecfg.get("poly_epsilon", 0.02)))
        qh, qw = _quad_hw(quad)
        if not within_aspect(qw, qh, target, tol):
            continue

        x, y, w, h = cv2.boundingRect(c)
        bounds = clip_bounds(Bounds(float(x), float(y), float(w), float(h)), W, H)
        if bounds is None or bounds.area < min_area:
            continue

        edge = _edge_strength(quad, edges, mag, ecfg)
        if edge < min_edge:
            continue
        geometry = _rectangularity(c, area)
        out.append(Candidate(
            bounds=bounds,
            corners=corners_tuple(quad),
            method=Method.EDGE_GEOMETRY,
            edge_strength=edge,
            geometry_score=geometry,
        ))

    logger.debug("[edge] %d candidates", len(out))
    return out
