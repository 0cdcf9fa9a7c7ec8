# cardscan/pipeline/ensemble.py
"""
Signal-detector registry, the concurrent detector run, and the ensemble
combiner (score fusion -> NMS -> acceptance filter).
"""
from __future__ import annotations
from concurrent.futures import Executor, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import time

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Candidate, Method, Raster, TierTrace
from cardscan.detectors.aspect_scan import detect_aspect_scan
from cardscan.detectors.color_texture import detect_color_texture
from cardscan.detectors.edge_geometry import detect_edge_geometry
from cardscan.geometry.boxes import aspect_match_score, nms

logger = logging.getLogger(__name__)

SignalDetector = Callable[[Raster, Optional[Dict]], List[Candidate]]

SIGNAL_DETECTORS: Dict[str, SignalDetector] = {
    Method.EDGE_GEOMETRY: detect_edge_geometry,
    Method.COLOR_TEXTURE: detect_color_texture,
    Method.ASPECT_SCAN: detect_aspect_scan,
}


def _pool_size(cfg: Dict, n_jobs: int) -> int:
    # one thread per detector so a hung one cannot starve the rest
    want = cfg.get("max_workers")
    if not want:
        return max(1, n_jobs)
    return max(1, min(int(want), n_jobs))


def run_signal_detectors(
    raster: Raster,
    cfg: Optional[Dict] = None,
    detectors: Optional[Mapping[str, SignalDetector]] = None,
    executor: Optional[Executor] = None,
) -> Tuple[List[Candidate], Dict[str, TierTrace]]:
    """
    Run every signal detector against the same read-only raster side by side
    and join them within detector_timeout_s.

    A detector that raises or misses the deadline contributes nothing; its
    trace says why. Returns the raw candidates of all detectors, in detector
    order, plus one trace per detector.
    """
    cfg = merge_cfg(cfg)
    detectors = dict(SIGNAL_DETECTORS if detectors is None else detectors)
    traces: Dict[str, TierTrace] = {name: TierTrace(tier=name) for name in detectors}
    if not detectors:
        return [], traces

    own_pool = executor is None
    pool = executor or ThreadPoolExecutor(max_workers=_pool_size(cfg, len(detectors)),
                                          thread_name_prefix="cardscan-detector")
    timeout = cfg.get("detector_timeout_s")
    t0 = time.perf_counter()
    try:
        futures = {name: pool.submit(fn, raster, cfg) for name, fn in detectors.items()}
        wait(list(futures.values()), timeout=timeout)

        out: List[Candidate] = []
        for name, fut in futures.items():
            tr = traces[name]
            tr.elapsed_ms = (time.perf_counter() - t0) * 1000.0
            if not fut.done():
                fut.cancel()
                tr.status = "timeout"
                tr.error = f"no result within {timeout}s"
                logger.warning("[ensemble] detector %s timed out after %ss", name, timeout)
                continue
            exc = fut.exception()
            if exc is not None:
                tr.status = "error"
                tr.error = f"{type(exc).__name__}: {exc}"
                logger.warning("[ensemble] detector %s failed: %s", name, tr.error)
                continue
            cands = list(fut.result() or [])
            tr.raw_count = tr.kept_count = len(cands)
            tr.status = "ok" if cands else "empty"
            out.extend(cands)
        return out, traces
    finally:
        if own_pool:
            pool.shutdown(wait=False, cancel_futures=True)


def fuse(c: Candidate, cfg: Dict) -> Candidate:
    """New candidate whose confidence is the weighted sum of its signals."""
    w = cfg["weights"]
    total = float(sum(float(v) for v in w.values())) or 1.0
    aspect = aspect_match_score(c.bounds.width, c.bounds.height,
                                float(cfg["card_aspect"]), float(cfg["aspect_tol"]))
    score = (
        float(w.get("edge", 0.0)) * c.edge_strength
        + float(w.get("geometry", 0.0)) * c.geometry_score
        + float(w.get("color", 0.0)) * c.color_variance
        + float(w.get("texture", 0.0)) * c.texture_score
        + float(w.get("aspect", 0.0)) * aspect
    ) / total
    return replace(c, confidence=min(1.0, max(0.0, score)))


def accept(cands: Sequence[Candidate], cfg: Dict, *, min_confidence: Optional[float] = None) -> List[Candidate]:
    """Drop low-confidence candidates and cap the count; input must already be ranked."""
    floor = float(cfg["min_confidence"] if min_confidence is None else min_confidence)
    kept = [c for c in cands if c.confidence >= floor]
    return kept[: int(cfg["max_candidates"])]


def combine(raw: Sequence[Candidate], cfg: Optional[Dict] = None) -> List[Candidate]:
    """
    Fuse, de-duplicate and filter raw signal-detector candidates.

    Empty in, empty out; deciding what to do about that is the orchestrator's
    job. Each survivor keeps the method tag of the detector that found it.
    """
    if not raw:
        return []
    cfg = merge_cfg(cfg)
    fused = [fuse(c, cfg) for c in raw]
    deduped = nms(fused, float(cfg["dedup_iou"]))
    kept = accept(deduped, cfg)
    logger.debug("[ensemble] %d raw -> %d after nms -> %d accepted", len(raw), len(deduped), len(kept))
    return kept
