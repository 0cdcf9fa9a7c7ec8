"""
Tiered detect(): vision -> ensemble -> fallback grid, end to end on
synthetic scenes with fake tiers where a test needs to force a path.
"""
from __future__ import annotations
import threading

import numpy as np
import cv2
import pytest

from cardscan.core.contracts import Bounds, Candidate, Method, Raster, SourceFileMetadata
from cardscan.core.errors import DetectionCancelled, InvalidImageError, VisionError
from cardscan.geometry.boxes import iou
from cardscan.pipeline.orchestrator import detect, detect_many, validate_raster

# ---------- Utilities ---------- #

def _card_scene(frame_w: int = 600, frame_h: int = 800, card=(100, 100, 300, 420)) -> Raster:
    x, y, w, h = card
    frame = np.full((frame_h, frame_w, 3), 30, np.uint8)
    cv2.rectangle(frame, (x, y), (x + w - 1, y + h - 1), (220, 220, 220), -1)
    return Raster.from_array(frame)


def _blank(w: int = 300, h: int = 420) -> Raster:
    return Raster.from_array(np.full((h, w, 3), 128, np.uint8))


def _cand(x, y, w, h, conf, method=Method.AI_VISION) -> Candidate:
    b = Bounds(float(x), float(y), float(w), float(h))
    return Candidate(bounds=b, corners=b.corners(), method=method, confidence=conf)


class _FixedVision:
    def __init__(self, cands):
        self.cands = cands
        self.calls = 0

    def detect(self, raster, cancel_event=None):
        self.calls += 1
        return list(self.cands)


class _FailingVision:
    def detect(self, raster, cancel_event=None):
        raise VisionError("service unavailable")


def _recording_detectors(calls):
    def make(name, out):
        def fn(raster, cfg=None):
            calls.append(name)
            return list(out)
        return fn
    return {
        Method.EDGE_GEOMETRY: make(Method.EDGE_GEOMETRY, []),
        Method.COLOR_TEXTURE: make(Method.COLOR_TEXTURE, []),
        Method.ASPECT_SCAN: make(Method.ASPECT_SCAN, []),
    }


def _assert_result_invariants(result, raster):
    cands = result.candidates
    assert len(cands) >= 1
    confs = [c.confidence for c in cands]
    assert confs == sorted(confs, reverse=True)
    for c in cands:
        assert 0.0 <= c.confidence <= 1.0
        assert c.method in Method.ALL
        assert 0 <= c.bounds.x and c.bounds.x2 <= raster.width + 1e-6
        assert 0 <= c.bounds.y and c.bounds.y2 <= raster.height + 1e-6
    for i in range(len(cands)):
        for j in range(i + 1, len(cands)):
            assert iou(cands[i].bounds, cands[j].bounds) < 0.3

# ---------- Tests ---------- #

def test_detect_finds_card_with_real_detectors():
    raster = _card_scene()
    result = detect(raster, SourceFileMetadata("scene.png", 1234))
    _assert_result_invariants(result, raster)
    assert result.debug_info.method_used == "ensemble"
    assert iou(result.best.bounds, Bounds(100, 100, 300, 420)) > 0.8
    assert result.best.method == Method.EDGE_GEOMETRY
    assert set(result.debug_info.detector_counts) == set(Method.SIGNALS)
    assert result.processing_time_ms >= 0.0


def test_detect_blank_image_falls_back_to_grid():
    raster = _blank()
    result = detect(raster)
    _assert_result_invariants(result, raster)
    assert result.debug_info.method_used == Method.FALLBACK_GRID
    assert all(c.method == Method.FALLBACK_GRID for c in result.candidates)


def test_detect_rejects_tiny_raster():
    with pytest.raises(InvalidImageError):
        detect(Raster.from_array(np.zeros((10, 10, 3), np.uint8)))


def test_validate_raster_minimum_card_size():
    validate_raster(_blank(25, 35))
    with pytest.raises(InvalidImageError):
        validate_raster(_blank(24, 35))


def test_vision_success_skips_ensemble():
    calls = []
    vision = _FixedVision([_cand(50, 50, 250, 350, 0.95), _cand(500, 50, 250, 350, 0.95)])
    raster = _blank(1000, 1400)
    result = detect(raster, vision=vision, detectors=_recording_detectors(calls))
    assert result.debug_info.method_used == Method.AI_VISION
    assert len(result.candidates) == 2
    assert all(c.method == Method.AI_VISION for c in result.candidates)
    assert calls == []
    assert [t.tier for t in result.debug_info.tiers] == ["vision"]


def test_vision_failure_falls_through_to_fallback():
    calls = []
    raster = _blank(1000, 1400)
    result = detect(raster, vision=_FailingVision(), detectors=_recording_detectors(calls))
    _assert_result_invariants(result, raster)
    assert result.debug_info.method_used == Method.FALLBACK_GRID
    assert sorted(calls) == sorted(Method.SIGNALS)
    statuses = {t.tier: t.status for t in result.debug_info.tiers}
    assert statuses["vision"] == "error"
    assert statuses["ensemble"] == "empty"
    assert statuses["fallback"] == "ok"
    assert "service unavailable" in result.debug_info.tiers[0].error


def test_low_confidence_vision_defers_to_ensemble():
    def edge(raster, cfg=None):
        b = Bounds(100, 100, 250, 350)
        return [Candidate(bounds=b, corners=b.corners(), method=Method.EDGE_GEOMETRY,
                          edge_strength=1.0, geometry_score=1.0)]

    result = detect(_blank(1000, 1400), vision=_FixedVision([_cand(0, 0, 250, 350, 0.2)]),
                    detectors={Method.EDGE_GEOMETRY: edge})
    assert result.debug_info.method_used == "ensemble"
    assert result.best.method == Method.EDGE_GEOMETRY
    assert result.best.confidence == pytest.approx(0.8)


def test_vision_boxes_are_clipped_and_deduped():
    vision = _FixedVision([
        _cand(900, 100, 250, 350, 0.9),
        _cand(910, 110, 250, 350, 0.85),
        _cand(100, 100, 250, 350, 1.4),
    ])
    raster = _blank(1000, 1400)
    result = detect(raster, vision=vision)
    _assert_result_invariants(result, raster)
    assert len(result.candidates) == 2
    assert result.best.confidence == 1.0


def test_ensemble_failure_never_escapes():
    def broken(raster, cfg=None):
        raise RuntimeError("kaboom")

    raster = _blank(1000, 1400)
    result = detect(raster, detectors={Method.EDGE_GEOMETRY: broken})
    _assert_result_invariants(result, raster)
    assert result.debug_info.method_used == Method.FALLBACK_GRID
    traces = {t.tier: t for t in result.debug_info.detector_traces}
    assert traces[Method.EDGE_GEOMETRY].status == "error"
    assert [t.tier for t in result.debug_info.tiers] == ["vision", "ensemble", "fallback"]


def test_tier_and_detector_traces_kept_apart():
    calls = []
    result = detect(_blank(1000, 1400), vision=_FailingVision(), detectors=_recording_detectors(calls))
    info = result.debug_info
    assert [t.tier for t in info.tiers] == ["vision", "ensemble", "fallback"]
    assert sorted(t.tier for t in info.detector_traces) == sorted(Method.SIGNALS)
    d = info.to_dict()
    assert [t["tier"] for t in d["tiers"]] == ["vision", "ensemble", "fallback"]
    assert len(d["detectorTraces"]) == 3


def test_fallback_is_deterministic():
    raster = _blank(1000, 1400)
    a = detect(raster, detectors={})
    b = detect(raster, detectors={})
    assert a.candidates == b.candidates
    assert sorted(round(c.bounds.width) for c in a.candidates) == [250, 350, 450]


def test_detect_cancelled():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DetectionCancelled):
        detect(_blank(), detectors={}, cancel_event=cancel)


def test_debug_info_to_dict():
    result = detect(_blank(), SourceFileMetadata("blank.jpg", 99), detectors={})
    d = result.to_dict()
    assert d["debugInfo"]["methodUsed"] == "fallback-grid"
    assert d["debugInfo"]["source"] == {"filename": "blank.jpg", "byteSize": 99}
    assert d["debugInfo"]["imageSize"] == [300, 420]
    assert d["candidates"][0]["method"] == "fallback-grid"


def test_detect_many_skips_invalid():
    items = [
        (_blank(), SourceFileMetadata("ok.jpg", 1)),
        (Raster.from_array(np.zeros((10, 10, 3), np.uint8)), SourceFileMetadata("tiny.jpg", 2)),
        (_blank(400, 560), None),
    ]
    results = detect_many(items, detectors={})
    assert len(results) == 2
    assert results[0].debug_info.source.filename == "ok.jpg"
    assert results[1].debug_info.image_size == (400, 560)
