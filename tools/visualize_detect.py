#!/usr/bin/env python3
from __future__ import annotations
import argparse, json, logging, os
from datetime import datetime
import cv2
import numpy as np

from cardscan.core.config import load_cfg, merge_cfg
from cardscan.core.contracts import DetectionResult, Method, SourceFileMetadata
from cardscan.io.ingest import load_raster
from cardscan.pipeline.orchestrator import detect
from cardscan.vision.adapter import VisionAdapter

# BGR per producing method
COLORS = {
    Method.AI_VISION: (255, 0, 255),
    Method.EDGE_GEOMETRY: (0, 255, 0),
    Method.COLOR_TEXTURE: (0, 200, 255),
    Method.ASPECT_SCAN: (255, 200, 0),
    Method.FALLBACK_GRID: (0, 0, 255),
}


def setup_logging(debug: bool, log_to_file: bool) -> None:
    handlers = [logging.StreamHandler()]
    if log_to_file:
        logfile = f"detect_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        handlers.append(logging.FileHandler(logfile))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )
    if log_to_file:
        logging.getLogger(__name__).info("[logging] Writing debug output to: %s", handlers[-1].baseFilename)


def draw_result(img: np.ndarray, result: DetectionResult) -> np.ndarray:
    viz = img.copy()
    for rank, c in enumerate(result.candidates):
        color = COLORS.get(c.method, (255, 255, 255))
        q = np.array(c.corners, dtype=np.float32).astype(int).reshape(4, 2)
        cv2.polylines(viz, [q], True, color, 2, lineType=cv2.LINE_AA)
        b = c.bounds
        cv2.rectangle(viz, (int(b.x), int(b.y)), (int(b.x2), int(b.y2)), color, 1)
        label = f"#{rank} {c.method} {c.confidence:.2f}"
        cv2.putText(viz, label, (int(b.x) + 4, int(b.y) + 18), cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1, cv2.LINE_AA)
    return viz


def main():
    ap = argparse.ArgumentParser(description="Run cardscan detect() on an image, draw the candidates and dump JSON.")
    ap.add_argument("image", help="Path to input image.")
    ap.add_argument("--cfg", default=None, help="YAML settings file (e.g. config/detect.yaml).")
    ap.add_argument("--out_dir", default="tests/output", help="Directory for outputs.")
    ap.add_argument("--vision_url", default=None, help="Enable the vision tier against this endpoint.")
    ap.add_argument("--no_ensemble", action="store_true", help="Skip the signal detectors (fallback grid only).")
    ap.add_argument("--debug", action="store_true", help="Debug-level logging.")
    ap.add_argument("--log_file", action="store_true", help="Also log to detect_<timestamp>.log.")
    args = ap.parse_args()

    setup_logging(args.debug, args.log_file)

    cfg = load_cfg(args.cfg) if args.cfg else merge_cfg(None)
    if args.vision_url:
        cfg["vision"] = {**cfg["vision"], "enabled": True, "url": args.vision_url}

    raster = load_raster(args.image)
    meta = SourceFileMetadata(filename=os.path.basename(args.image), byte_size=os.path.getsize(args.image))
    vision = VisionAdapter.from_config(cfg)
    try:
        result = detect(raster, meta, cfg, vision=vision, detectors={} if args.no_ensemble else None)
    finally:
        if vision is not None:
            vision.close()

    os.makedirs(args.out_dir, exist_ok=True)
    base = os.path.splitext(os.path.basename(args.image))[0]
    viz_path = os.path.join(args.out_dir, f"{base}_viz.png")
    json_path = os.path.join(args.out_dir, f"{base}_detect.json")

    img = cv2.imread(args.image, cv2.IMREAD_COLOR)
    if not cv2.imwrite(viz_path, draw_result(img, result)):
        raise SystemExit(f"Failed to write image: {viz_path}")
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)

    print(f"[OK] {len(result.candidates)} candidates via {result.debug_info.method_used} "
          f"in {result.processing_time_ms:.0f} ms")
    for i, c in enumerate(result.candidates):
        b = c.bounds
        print(f"  #{i} {c.method:<14} conf={c.confidence:.3f} "
              f"box=({b.x:.0f},{b.y:.0f},{b.width:.0f},{b.height:.0f}) aspect={c.aspect_ratio:.3f}")
    print(f"[OK] Wrote visualization to: {viz_path}")
    print(f"[OK] Wrote JSON to: {json_path}")


if __name__ == "__main__":
    main()
