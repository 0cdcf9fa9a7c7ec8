"""
Detection settings: defaults, merging and YAML loading.

Every constant here is a tunable default; nothing downstream depends on the
exact values.
"""

from __future__ import annotations
import copy
from pathlib import Path
from typing import Dict, Optional, Union
import yaml

CARD_ASPECT = 2.5 / 3.5   # trading card, width / height

DEFAULT_CFG: Dict = {
    "card_aspect": CARD_ASPECT,
    "aspect_tol": 0.15,
    "min_area_ratio": 0.005,           # relative to frame area
    "dedup_iou": 0.3,
    "min_confidence": 0.4,
    "max_candidates": 8,
    "weights": {
        "geometry": 0.35,
        "edge": 0.25,
        "aspect": 0.20,
        "texture": 0.10,
        "color": 0.10,
    },
    # smallest raster that can still hold a card (w, h) in pixels
    "min_card_px": (25, 35),
    "detector_timeout_s": 10.0,
    "max_workers": None,               # None -> one thread per detector

    "edge": {
        "blur_ksize": 5,
        "canny_low": 40,
        "canny_high": 120,
        "clahe": False,
        "dilate": 3,
        "close_ksize": 7,
        "poly_epsilon": 0.02,
        "max_area_ratio": 0.95,
        "min_edge_strength": 0.3,
        "contrast_ref": 48.0,          # gray levels for a "strong" edge
        "perimeter_samples": 200,
        "max_contours": 400,
    },
    "texture": {
        "analysis_max_side": 360,
        "scales": (0.2, 0.3, 0.45),    # window width / short image side
        "orientations": ("portrait", "landscape"),
        "stride_frac": 0.25,
        "std_ref": 48.0,
        "laplacian_ref": 24.0,
        "min_color_variance": 0.2,
        "min_texture": 0.15,
        "local_iou": 0.5,
        "max_candidates": 24,
    },
    "aspect_scan": {
        "analysis_max_side": 360,
        "scales": (0.25, 0.35, 0.5, 0.7),
        "ratios": (0.68, CARD_ASPECT, 0.76),
        "orientations": ("portrait", "landscape"),
        "stride_frac": 0.5,
        "min_content_std": 6.0,        # skip flat background windows
        "min_score": 0.5,
        "local_iou": 0.5,
        "max_candidates": 24,
    },
    "fallback": {
        "scales": (0.25, 0.35, 0.45),  # card width / image width
        "anchors": ((0.05, 0.05), (0.55, 0.05), (0.05, 0.55), (0.55, 0.55)),
        "max_height_ratio": 0.8,
        "base_confidence": 0.8,
        "scale_step": 0.1,
        "position_step": 0.05,
        "fit_confidence": 0.45,
        "max_candidates": 3,
    },
    "vision": {
        "enabled": False,
        "url": None,
        "api_key_env": "CARDSCAN_VISION_API_KEY",
        "timeout_s": 8.0,
        "max_side": 800,
        "jpeg_quality": 80,
        "min_area_ratio": 0.01,
        "max_area_ratio": 0.95,
        "aspect_tol_factor": 1.5,
        "card_labels": ("book", "cell phone", "remote", "laptop", "keyboard"),
    },
    "debug": False,
}


def merge_cfg(cfg: Optional[Dict]) -> Dict:
    """Overlay cfg on the defaults; nested dicts are merged one level deep."""
    merged = copy.deepcopy(DEFAULT_CFG)
    if not cfg:
        return merged
    for k, v in cfg.items():
        if isinstance(v, dict) and k in merged and isinstance(merged[k], dict):
            merged[k] = {**merged[k], **v}
        else:
            merged[k] = v
    return merged


def load_cfg(path: Union[str, Path]) -> Dict:
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config at {path} must be a mapping, got {type(raw).__name__}")
    return merge_cfg(raw)
