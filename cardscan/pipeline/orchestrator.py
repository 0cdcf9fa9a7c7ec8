# cardscan/pipeline/orchestrator.py
"""
Tiered card detection: external vision -> signal-detector ensemble ->
fallback grid. The first tier that leaves at least one candidate after the
acceptance policy wins; the fallback grid always does.
"""
from __future__ import annotations
from concurrent.futures import Executor
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
import logging
import threading
import time

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import (
    Candidate, DebugInfo, DetectionResult, Method, Raster, SourceFileMetadata, TierTrace,
)
from cardscan.core.errors import DetectionCancelled, InvalidImageError
from cardscan.geometry.boxes import clip_bounds, nms
from cardscan.pipeline.ensemble import SignalDetector, accept, combine, run_signal_detectors
from cardscan.pipeline.fallback import tile

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    VISION = "vision"
    ENSEMBLE = "ensemble"
    FALLBACK = "fallback"


class VisionTier(Protocol):
    """Anything with the VisionAdapter.detect signature."""

    def detect(self, raster: Raster, cancel_event: Optional[threading.Event] = None) -> List[Candidate]:
        ...


def validate_raster(raster: Raster, cfg: Optional[Dict] = None) -> None:
    """Raise InvalidImageError unless the raster can hold at least one card."""
    cfg = merge_cfg(cfg)
    if raster is None:
        raise InvalidImageError("No raster given")
    w, h = int(raster.width), int(raster.height)
    if w <= 0 or h <= 0:
        raise InvalidImageError(f"Degenerate raster: {w}x{h}")
    shape = getattr(raster.pixels, "shape", None)
    if shape is None or tuple(shape[:2]) != (h, w):
        raise InvalidImageError(f"Pixel array shape {shape} does not match {w}x{h}")
    min_w, min_h = cfg["min_card_px"]
    if w < int(min_w) or h < int(min_h):
        raise InvalidImageError(f"Raster {w}x{h} is smaller than the minimum card size {min_w}x{min_h}")


def _tidy(cands: Sequence[Candidate], raster: Raster, cfg: Dict) -> List[Candidate]:
    """Clip into the image, drop specks, then rank and de-duplicate."""
    W, H = raster.width, raster.height
    min_area = float(cfg["min_area_ratio"]) * float(W * H)
    clipped: List[Candidate] = []
    for c in cands:
        b = clip_bounds(c.bounds, W, H)
        if b is None or b.area < min_area:
            continue
        conf = min(1.0, max(0.0, float(c.confidence)))
        if b != c.bounds or conf != c.confidence:
            c = replace(c, bounds=b, confidence=conf)
        clipped.append(c)
    return nms(clipped, float(cfg["dedup_iou"]))


def _run_vision(vision: VisionTier, raster: Raster, cfg: Dict,
                cancel_event: Optional[threading.Event], trace: TierTrace) -> List[Candidate]:
    try:
        raw = list(vision.detect(raster, cancel_event=cancel_event) or [])
    except DetectionCancelled:
        trace.status = "cancelled"
        raise
    except Exception as e:
        trace.status = "error"
        trace.error = f"{type(e).__name__}: {e}"
        logger.warning("[detect] vision tier failed, moving on: %s", trace.error)
        return []
    trace.raw_count = len(raw)
    return accept(_tidy(raw, raster, cfg), cfg)


def _run_ensemble(raster: Raster, cfg: Dict, detectors: Optional[Mapping[str, SignalDetector]],
                  executor: Optional[Executor], trace: TierTrace, debug: DebugInfo) -> List[Candidate]:
    try:
        raw, per_detector = run_signal_detectors(raster, cfg, detectors=detectors, executor=executor)
        debug.detector_counts = {name: tr.raw_count for name, tr in per_detector.items()}
        debug.detector_traces = list(per_detector.values())
        trace.raw_count = len(raw)
        return accept(_tidy(combine(raw, cfg), raster, cfg), cfg)
    except Exception as e:
        trace.status = "error"
        trace.error = f"{type(e).__name__}: {e}"
        logger.warning("[detect] ensemble tier failed, moving on: %s", trace.error)
        return []


def detect(
    raster: Raster,
    metadata: Optional[SourceFileMetadata] = None,
    cfg: Optional[Dict] = None,
    *,
    vision: Optional[VisionTier] = None,
    detectors: Optional[Mapping[str, SignalDetector]] = None,
    cancel_event: Optional[threading.Event] = None,
    executor: Optional[Executor] = None,
) -> DetectionResult:
    """
    Find card regions in raster.

    Tiers run in order, each only if the previous one left nothing:
    vision (when an adapter is given), the signal-detector ensemble, then the
    fallback grid. Failures inside the first two tiers are logged into
    debug_info and never raised. InvalidImageError is raised for rasters too
    small to hold a card; DetectionCancelled when cancel_event is set.

    metadata only shows up in logs and debug_info.
    """
    t0 = time.perf_counter()
    cfg = merge_cfg(cfg)
    validate_raster(raster, cfg)
    meta = metadata or SourceFileMetadata()
    debug = DebugInfo(source=meta, image_size=(raster.width, raster.height))
    logger.info("[detect] %s (%s bytes) %dx%d",
                meta.filename or "<raster>", meta.byte_size, raster.width, raster.height)

    def _check_cancel() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DetectionCancelled("detection cancelled by caller")

    def _finish(cands: List[Candidate], method: str) -> DetectionResult:
        debug.method_used = method
        elapsed = (time.perf_counter() - t0) * 1000.0
        logger.info("[detect] %d candidates via %s in %.1f ms", len(cands), method, elapsed)
        return DetectionResult(candidates=tuple(cands), processing_time_ms=elapsed, debug_info=debug)

    # --- tier 1: external vision ----------------------------------------------
    trace = TierTrace(tier=Tier.VISION.value)
    debug.tiers.append(trace)
    if vision is None:
        trace.status = "skipped"
    else:
        _check_cancel()
        ts = time.perf_counter()
        kept = _run_vision(vision, raster, cfg, cancel_event, trace)
        trace.elapsed_ms = (time.perf_counter() - ts) * 1000.0
        trace.kept_count = len(kept)
        if kept:
            trace.status = "ok"
            return _finish(kept, Method.AI_VISION)
        if trace.status != "error":
            trace.status = "empty"
        logger.info("[detect] vision tier gave nothing, trying ensemble")

    # --- tier 2: signal-detector ensemble --------------------------------------
    _check_cancel()
    trace = TierTrace(tier=Tier.ENSEMBLE.value)
    debug.tiers.append(trace)
    ts = time.perf_counter()
    kept = _run_ensemble(raster, cfg, detectors, executor, trace, debug)
    trace.elapsed_ms = (time.perf_counter() - ts) * 1000.0
    trace.kept_count = len(kept)
    if kept:
        trace.status = "ok"
        return _finish(kept, Method.ENSEMBLE_TIER)
    if trace.status != "error":
        trace.status = "empty"
    logger.info("[detect] ensemble tier gave nothing, using fallback grid")

    # --- tier 3: fallback grid (cannot fail) -----------------------------------
    _check_cancel()
    trace = TierTrace(tier=Tier.FALLBACK.value)
    debug.tiers.append(trace)
    ts = time.perf_counter()
    cands = tile(raster.width, raster.height, cfg)
    trace.elapsed_ms = (time.perf_counter() - ts) * 1000.0
    trace.raw_count = trace.kept_count = len(cands)
    trace.status = "ok"
    return _finish(cands, Method.FALLBACK_GRID)


def detect_many(
    items: Iterable[Tuple[Raster, Optional[SourceFileMetadata]]],
    cfg: Optional[Dict] = None,
    *,
    vision: Optional[VisionTier] = None,
    detectors: Optional[Mapping[str, SignalDetector]] = None,
) -> List[DetectionResult]:
    """
    Detect over several images one after another. Images that fail
    validation are logged and skipped; each result carries its source
    metadata in debug_info.
    """
    results: List[DetectionResult] = []
    for i, (raster, meta) in enumerate(items):
        name = (meta.filename if meta else None) or f"#{i}"
        try:
            results.append(detect(raster, meta, cfg, vision=vision, detectors=detectors))
        except InvalidImageError as e:
            logger.error("[detect] skipping %s: %s", name, e)
    logger.info("[detect] batch done: %d results", len(results))
    return results
