# cardscan/vision/adapter.py
"""
First-tier detector backed by a network-hosted vision model.

The service receives one JPEG per call and answers with card boxes. Accepted
answer shapes: a JSON list of records, or an object holding that list under
"cards", "detections" or "results". A record has x, y, width, height,
confidence (or score) and optionally aspectRatio and label; a DETR-style
"box": {xmin, ymin, xmax, ymax} is accepted too.
"""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import base64
import logging
import os
import threading
import time
import cv2
import requests

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import Bounds, Candidate, Method, Raster
from cardscan.core.errors import DetectionCancelled, VisionError
from cardscan.geometry.boxes import clip_bounds, orientation_invariant_aspect
from cardscan.io.ingest import downscale, to_bgr

logger = logging.getLogger(__name__)

_CANCEL_POLL_S = 0.05


def _records(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        for key in ("cards", "detections", "results"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            raise VisionError(f"Unrecognised vision response keys: {sorted(payload)}")
    if not isinstance(payload, list):
        raise VisionError(f"Vision response is {type(payload).__name__}, expected a list")
    return [r for r in payload if isinstance(r, dict)]


def _record_bounds(rec: Dict[str, Any]) -> Optional[Bounds]:
    try:
        if isinstance(rec.get("box"), dict):
            box = rec["box"]
            x0, y0 = float(box["xmin"]), float(box["ymin"])
            return Bounds(x0, y0, float(box["xmax"]) - x0, float(box["ymax"]) - y0)
        return Bounds(float(rec["x"]), float(rec["y"]), float(rec["width"]), float(rec["height"]))
    except (KeyError, TypeError, ValueError):
        return None


def _is_card_like(label: str, b: Bounds, image_area: float, cfg: Dict) -> bool:
    vcfg = cfg["vision"]
    label = (label or "").lower()
    labelled = "card" in label or label in {str(l).lower() for l in vcfg.get("card_labels", ())}
    tol = float(cfg["aspect_tol"]) * float(vcfg.get("aspect_tol_factor", 1.5))
    shaped = abs(orientation_invariant_aspect(b.width, b.height) - float(cfg["card_aspect"])) <= tol
    ratio = b.area / image_area if image_area > 0 else 0.0
    sized = float(vcfg.get("min_area_ratio", 0.01)) <= ratio <= float(vcfg.get("max_area_ratio", 0.95))
    return (labelled or shaped) and sized


def translate_records(
    records: Iterable[Dict[str, Any]],
    image_width: int,
    image_height: int,
    cfg: Optional[Dict] = None,
    *,
    scale: float = 1.0,
) -> List[Candidate]:
    """
    Service records -> ai-vision Candidates in source pixels.

    scale is the factor the uploaded image was shrunk by; boxes are divided
    by it. The service confidence is copied straight through (clipped to
    [0, 1]); the per-signal scores stay 0.
    """
    cfg = merge_cfg(cfg)
    image_area = float(image_width * image_height)
    out: List[Candidate] = []
    for rec in records:
        b = _record_bounds(rec)
        if b is None:
            logger.debug("[vision] skip malformed record: %r", rec)
            continue
        if scale and scale != 1.0:
            b = Bounds(b.x / scale, b.y / scale, b.width / scale, b.height / scale)
        b = clip_bounds(b, image_width, image_height)
        if b is None:
            continue
        if not _is_card_like(str(rec.get("label", "card")), b, image_area, cfg):
            logger.debug("[vision] not card-like: %r", rec)
            continue
        try:
            conf = float(rec.get("confidence", rec.get("score", 0.0)))
        except (TypeError, ValueError):
            continue
        out.append(Candidate(
            bounds=b,
            corners=b.corners(),
            method=Method.AI_VISION,
            confidence=min(1.0, max(0.0, conf)),
        ))
    out.sort(key=lambda c: c.confidence, reverse=True)
    return out


@dataclass
class VisionAdapter:
    """
    HTTP client for the vision service.

    timeout_s bounds each call end to end. detect() also watches an optional
    threading.Event and gives up as soon as it is set; only that call is
    affected.
    """
    url: str
    timeout_s: float = 8.0
    api_key: Optional[str] = None
    cfg: Dict = field(default_factory=dict)
    session: Optional[requests.Session] = None

    def __post_init__(self) -> None:
        self.cfg = merge_cfg(self.cfg)
        if self.session is None:
            self.session = requests.Session()

    @classmethod
    def from_config(cls, cfg: Optional[Dict] = None) -> Optional["VisionAdapter"]:
        """Adapter for cfg["vision"], or None when the tier is disabled or has no url."""
        cfg = merge_cfg(cfg)
        vcfg = cfg["vision"]
        if not vcfg.get("enabled") or not vcfg.get("url"):
            return None
        key_env = vcfg.get("api_key_env")
        return cls(
            url=str(vcfg["url"]),
            timeout_s=float(vcfg.get("timeout_s", 8.0)),
            api_key=os.environ.get(key_env) if key_env else None,
            cfg=cfg,
        )

    def _payload(self, raster: Raster) -> Dict[str, Any]:
        vcfg = self.cfg["vision"]
        small, scale = downscale(to_bgr(raster), int(vcfg.get("max_side", 800)))
        ok, buf = cv2.imencode(".jpg", small, [int(cv2.IMWRITE_JPEG_QUALITY), int(vcfg.get("jpeg_quality", 80))])
        if not ok:
            raise VisionError("Could not encode image for upload")
        return {
            "image": base64.b64encode(buf.tobytes()).decode("ascii"),
            "width": int(small.shape[1]),
            "height": int(small.shape[0]),
            "scale": scale,
        }

    def _post(self, body: Dict[str, Any]) -> Any:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout_s)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            raise VisionError(f"Vision request failed: {e}") from e
        except ValueError as e:
            raise VisionError(f"Vision response is not JSON: {e}") from e

    def detect(self, raster: Raster, cancel_event: Optional[threading.Event] = None) -> List[Candidate]:
        if cancel_event is not None and cancel_event.is_set():
            raise DetectionCancelled("cancelled before vision request")
        body = self._payload(raster)
        scale = float(body.pop("scale"))

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cardscan-vision")
        try:
            fut = pool.submit(self._post, body)
            deadline = time.monotonic() + self.timeout_s
            while not fut.done():
                if cancel_event is not None and cancel_event.is_set():
                    raise DetectionCancelled("cancelled while waiting for vision service")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise VisionError(f"Vision service gave no answer within {self.timeout_s}s")
                time.sleep(min(_CANCEL_POLL_S, remaining))
            payload = fut.result()
        finally:
            # an abandoned request finishes in the background and is ignored
            pool.shutdown(wait=False, cancel_futures=True)

        cands = translate_records(_records(payload), raster.width, raster.height, self.cfg, scale=scale)
        logger.info("[vision] %d card-like boxes from service", len(cands))
        return cands

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
