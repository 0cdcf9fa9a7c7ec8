"""
Core contracts and simple data types shared across stages.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import numpy as np

from cardscan.core.errors import InvalidImageError

Point = Tuple[float, float]


class Method:
    """Tags naming the tier/strategy that produced a candidate."""
    AI_VISION = "ai-vision"
    EDGE_GEOMETRY = "edge-geometry"
    COLOR_TEXTURE = "color-texture"
    ASPECT_SCAN = "aspect-scan"
    FALLBACK_GRID = "fallback-grid"
    # tier tag for debug_info.method_used only, never on a candidate
    ENSEMBLE_TIER = "ensemble"

    SIGNALS = (EDGE_GEOMETRY, COLOR_TEXTURE, ASPECT_SCAN)
    ALL = (AI_VISION, EDGE_GEOMETRY, COLOR_TEXTURE, ASPECT_SCAN, FALLBACK_GRID)


@dataclass(frozen=True)
class Raster:
    """
    An in-memory image, (height, width, channels) uint8, OpenCV channel order
    (BGR / BGRA / gray).

    pixels is always a non-writeable array so detectors running side by side
    can share it.
    """
    width: int
    height: int
    channels: int
    pixels: np.ndarray = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        a = np.asarray(self.pixels)
        if a.ndim == 2:
            a = a[:, :, None]
        if a.ndim != 3 or a.shape[2] not in (1, 3, 4):
            raise InvalidImageError(f"Unsupported pixel array shape: {np.shape(self.pixels)}")
        if a.shape != (int(self.height), int(self.width), int(self.channels)):
            raise InvalidImageError(
                f"Pixel array shape {a.shape} does not match "
                f"{self.width}x{self.height}x{self.channels}"
            )
        if a.dtype != np.uint8:
            a = np.clip(a, 0, 255).astype(np.uint8)
        view = a.view()
        view.flags.writeable = False
        object.__setattr__(self, "pixels", view)

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Raster":
        a = np.asarray(arr)
        if a.ndim == 2:
            a = a[:, :, None]
        if a.ndim != 3:
            raise InvalidImageError(f"Unsupported pixel array shape: {np.shape(arr)}")
        h, w, c = a.shape
        return cls(width=int(w), height=int(h), channels=int(c), pixels=a)

    @classmethod
    def from_bytes(cls, width: int, height: int, pixels: bytes, channels: int = 3) -> "Raster":
        if channels not in (1, 3, 4):
            raise InvalidImageError(f"Unsupported channel count: {channels}")
        if width <= 0 or height <= 0:
            raise InvalidImageError(f"Degenerate raster: {width}x{height}")
        expected = int(width) * int(height) * int(channels)
        buf = np.frombuffer(pixels, dtype=np.uint8)
        if buf.size != expected:
            raise InvalidImageError(
                f"Pixel buffer holds {buf.size} bytes, expected {expected} for {width}x{height}x{channels}"
            )
        return cls.from_array(buf.reshape(int(height), int(width), int(channels)))


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle in source-image pixels."""
    x: float
    y: float
    width: float
    height: float

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def clip(self, image_width: float, image_height: float) -> "Bounds":
        x1 = min(max(0.0, float(self.x)), float(image_width))
        y1 = min(max(0.0, float(self.y)), float(image_height))
        x2 = min(max(0.0, float(self.x2)), float(image_width))
        y2 = min(max(0.0, float(self.y2)), float(image_height))
        return Bounds(x1, y1, x2 - x1, y2 - y1)

    def corners(self) -> Tuple[Point, Point, Point, Point]:
        return ((self.x, self.y), (self.x2, self.y), (self.x2, self.y2), (self.x, self.y2))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)


@dataclass(frozen=True)
class Candidate:
    """
    One detected rectangular card region.

    corners are ordered clockwise: [top-left, top-right, bottom-right, bottom-left]
    and may sit slightly outside bounds for tilted detections.
    Signals a detector does not produce stay at 0.
    """
    bounds: Bounds
    corners: Tuple[Point, Point, Point, Point]
    method: str
    confidence: float = 0.0
    edge_strength: float = 0.0
    geometry_score: float = 0.0
    color_variance: float = 0.0
    texture_score: float = 0.0

    @property
    def aspect_ratio(self) -> float:
        if self.bounds.height <= 0:
            return 0.0
        return self.bounds.width / self.bounds.height

    @property
    def area(self) -> float:
        return self.bounds.area

    def to_dict(self) -> Dict[str, Any]:
        b = self.bounds
        return {
            "bounds": {"x": b.x, "y": b.y, "width": b.width, "height": b.height},
            "corners": [{"x": float(x), "y": float(y)} for x, y in self.corners],
            "aspectRatio": self.aspect_ratio,
            "edgeStrength": self.edge_strength,
            "geometryScore": self.geometry_score,
            "colorVariance": self.color_variance,
            "textureScore": self.texture_score,
            "confidence": self.confidence,
            "method": self.method,
        }


@dataclass(frozen=True)
class SourceFileMetadata:
    """Pass-through info about the uploaded file; only ever logged."""
    filename: Optional[str] = None
    byte_size: Optional[int] = None


@dataclass
class TierTrace:
    tier: str
    status: str = "pending"          # "ok" | "empty" | "error" | "timeout" | "skipped"
    raw_count: int = 0
    kept_count: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "status": self.status,
            "rawCount": self.raw_count,
            "keptCount": self.kept_count,
            "elapsedMs": round(self.elapsed_ms, 3),
            "error": self.error,
        }


@dataclass
class DebugInfo:
    method_used: Optional[str] = None
    tiers: List[TierTrace] = field(default_factory=list)
    detector_traces: List[TierTrace] = field(default_factory=list)
    detector_counts: Dict[str, int] = field(default_factory=dict)
    source: Optional[SourceFileMetadata] = None
    image_size: Optional[Tuple[int, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        src = self.source or SourceFileMetadata()
        return {
            "methodUsed": self.method_used,
            "tiers": [t.to_dict() for t in self.tiers],
            "detectorTraces": [t.to_dict() for t in self.detector_traces],
            "detectorCounts": dict(self.detector_counts),
            "source": {"filename": src.filename, "byteSize": src.byte_size},
            "imageSize": list(self.image_size) if self.image_size else None,
        }


@dataclass(frozen=True)
class DetectionResult:
    candidates: Tuple[Candidate, ...]
    processing_time_ms: float
    debug_info: DebugInfo

    @property
    def best(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "processingTimeMs": self.processing_time_ms,
            "debugInfo": self.debug_info.to_dict(),
        }
