"""
Ensemble combiner and the concurrent detector run.
"""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
import os
import threading
import time

import numpy as np
import pytest

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method, Raster
from cardscan.geometry.boxes import iou
from cardscan.pipeline.ensemble import accept, combine, fuse, run_signal_detectors


def _signal(x, y, w, h, *, edge=0.0, geometry=0.0, color=0.0, texture=0.0,
            method=Method.EDGE_GEOMETRY) -> Candidate:
    b = Bounds(float(x), float(y), float(w), float(h))
    return Candidate(bounds=b, corners=b.corners(), method=method, edge_strength=edge,
                     geometry_score=geometry, color_variance=color, texture_score=texture)


def _raster(w: int = 400, h: int = 560) -> Raster:
    return Raster.from_array(np.zeros((h, w, 3), np.uint8))

# ---------- Fusion / combine ---------- #

def test_fuse_weighted_sum():
    cfg = merge_cfg(None)
    c = fuse(_signal(0, 0, 250, 350, geometry=1.0), cfg)
    # geometry 0.35 + perfect aspect 0.20
    assert c.confidence == pytest.approx(0.55)
    full = fuse(_signal(0, 0, 250, 350, edge=1, geometry=1, color=1, texture=1), cfg)
    assert full.confidence == pytest.approx(1.0)
    assert full.method == Method.EDGE_GEOMETRY


def test_fuse_normalises_by_weight_sum():
    cfg = merge_cfg({"weights": {"geometry": 2.0, "edge": 0.0, "aspect": 0.0, "texture": 0.0, "color": 0.0}})
    c = fuse(_signal(0, 0, 250, 350, geometry=0.7), cfg)
    assert c.confidence == pytest.approx(0.7)


def test_combine_empty_in_empty_out():
    assert combine([]) == []


def test_combine_dedups_overlapping_pair():
    strong = _signal(100, 100, 200, 280, edge=1, geometry=1, color=1, texture=1)
    weak = _signal(150, 100, 200, 280, edge=0.5, geometry=0.5, color=0.5, texture=0.5,
                   method=Method.COLOR_TEXTURE)
    assert iou(strong.bounds, weak.bounds) == pytest.approx(0.6)
    out = combine([weak, strong])
    assert len(out) == 1
    assert out[0].bounds == strong.bounds
    assert out[0].method == Method.EDGE_GEOMETRY
    assert out[0].confidence == pytest.approx(1.0)


def test_combine_is_idempotent():
    raw = [
        _signal(100 * i, 0, 70, 98, edge=0.2 * i, geometry=0.9, method=Method.EDGE_GEOMETRY)
        for i in range(1, 5)
    ] + [_signal(105, 5, 70, 98, geometry=0.8, color=0.9, texture=0.9, method=Method.COLOR_TEXTURE)]
    once = combine(raw)
    twice = combine(once)
    assert twice == once


def test_combine_output_ranked_and_non_overlapping():
    rng = np.random.default_rng(3)
    raw = [
        _signal(*rng.integers(0, 800, size=2), 100, 140,
                edge=float(rng.random()), geometry=float(rng.random()),
                color=float(rng.random()), texture=float(rng.random()))
        for _ in range(60)
    ]
    out = combine(raw)
    confs = [c.confidence for c in out]
    assert confs == sorted(confs, reverse=True)
    assert all(c.confidence >= 0.4 for c in out)
    for i in range(len(out)):
        for j in range(i + 1, len(out)):
            assert iou(out[i].bounds, out[j].bounds) < 0.3


def test_combine_caps_at_max_candidates():
    raw = [_signal(120 * i, 0, 100, 140, edge=1, geometry=1) for i in range(20)]
    assert len(combine(raw)) == 8


def test_combine_drops_low_confidence():
    # aspect alone is worth 0.2
    assert combine([_signal(0, 0, 250, 350)]) == []


def test_accept_floor_override():
    cfg = merge_cfg(None)
    cands = [fuse(_signal(0, 0, 250, 350), cfg)]
    assert accept(cands, cfg) == []
    assert accept(cands, cfg, min_confidence=0.1) == cands

# ---------- Concurrent run ---------- #

def test_run_signal_detectors_collects_all():
    def edge(raster, cfg=None):
        return [_signal(0, 0, 100, 140, edge=1.0)]

    def texture(raster, cfg=None):
        return [_signal(200, 0, 100, 140, texture=1.0, method=Method.COLOR_TEXTURE)]

    def aspect(raster, cfg=None):
        return []

    raw, traces = run_signal_detectors(_raster(), None, {
        Method.EDGE_GEOMETRY: edge, Method.COLOR_TEXTURE: texture, Method.ASPECT_SCAN: aspect,
    })
    assert [c.method for c in raw] == [Method.EDGE_GEOMETRY, Method.COLOR_TEXTURE]
    assert traces[Method.EDGE_GEOMETRY].status == "ok"
    assert traces[Method.ASPECT_SCAN].status == "empty"


def test_run_signal_detectors_isolates_failures():
    def boom(raster, cfg=None):
        raise RuntimeError("detector exploded")

    def fine(raster, cfg=None):
        return [_signal(0, 0, 100, 140, geometry=1.0)]

    raw, traces = run_signal_detectors(_raster(), None, {"boom": boom, "fine": fine})
    assert len(raw) == 1
    assert traces["boom"].status == "error"
    assert "detector exploded" in traces["boom"].error


def test_run_signal_detectors_times_out_slow_detector():
    def slow(raster, cfg=None):
        time.sleep(1.0)
        return [_signal(0, 0, 100, 140, geometry=1.0)]

    def fast(raster, cfg=None):
        return [_signal(200, 0, 100, 140, geometry=1.0)]

    t0 = time.perf_counter()
    raw, traces = run_signal_detectors(_raster(), {"detector_timeout_s": 0.2}, {"slow": slow, "fast": fast})
    assert time.perf_counter() - t0 < 0.9
    assert len(raw) == 1
    assert traces["slow"].status == "timeout"
    assert traces["fast"].status == "ok"


def test_run_signal_detectors_sees_read_only_pixels():
    seen = []

    def peek(raster, cfg=None):
        seen.append(raster.pixels.flags.writeable)
        return []

    run_signal_detectors(_raster(), None, {"a": peek, "b": peek})
    assert seen == [False, False]


def test_run_signal_detectors_leaves_caller_executor_open():
    def one(raster, cfg=None):
        return [_signal(0, 0, 100, 140, geometry=1.0)]

    with ThreadPoolExecutor(max_workers=2) as pool:
        raw, _ = run_signal_detectors(_raster(), None, {"one": one}, executor=pool)
        assert len(raw) == 1
        assert pool.submit(lambda: 42).result() == 42


def test_run_signal_detectors_no_detectors():
    assert run_signal_detectors(_raster(), None, {}) == ([], {})


def test_slow_detector_does_not_starve_others_on_one_cpu(monkeypatch):
    monkeypatch.setattr(os, "cpu_count", lambda: 1)
    release = threading.Event()

    def hung(raster, cfg=None):
        release.wait(2.0)
        return []

    def fast_a(raster, cfg=None):
        return [_signal(0, 0, 100, 140, geometry=1.0)]

    def fast_b(raster, cfg=None):
        return [_signal(300, 0, 100, 140, geometry=1.0)]

    try:
        raw, traces = run_signal_detectors(_raster(), {"detector_timeout_s": 0.3},
                                           {"hung": hung, "a": fast_a, "b": fast_b})
    finally:
        release.set()
    assert len(raw) == 2
    assert traces["hung"].status == "timeout"
    assert traces["a"].status == "ok" and traces["b"].status == "ok"


def test_explicit_max_workers_caps_pool():
    names = []

    def who(raster, cfg=None):
        names.append(threading.current_thread().name)
        time.sleep(0.05)
        return []

    run_signal_detectors(_raster(), {"max_workers": 1}, {"a": who, "b": who, "c": who})
    assert len(set(names)) == 1


def test_directly_built_raster_reaches_detectors_read_only():
    seen = []

    def peek(raster, cfg=None):
        seen.append(raster.pixels.flags.writeable)
        return []

    raster = Raster(400, 560, 3, np.zeros((560, 400, 3), np.uint8))
    run_signal_detectors(raster, None, {"a": peek, "b": peek, "c": peek})
    assert seen == [False, False, False]
