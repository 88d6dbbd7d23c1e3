"""Simulation utilities for synthetic surface scans.

Renders grayscale frames of a surface with cones seen through a moving
virtual camera (a surface -> pixel homography), emits the matching marker
records, and runs a full capture session through ScanPipeline so the whole
chain can be exercised deterministically without a camera or decoder.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
import argparse
import json
import math
import sys

import cv2
import numpy as np

from conescan.alignment import AlignmentConfig
from conescan.config import PipelineConfig
from conescan.detector import DetectorParams
from conescan.homography import SurfaceConfig, apply_homography
from conescan.pipeline import ScanPipeline
from conescan.replay import validate_log_integrity
from conescan.tracker import GRID_ORDER


def _translate(tx: float, ty: float) -> np.ndarray:
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]], dtype=np.float64)


def _rotate(theta_rad: float) -> np.ndarray:
    c = math.cos(theta_rad)
    s = math.sin(theta_rad)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)


def _scale(s: float) -> np.ndarray:
    return np.diag([s, s, 1.0]).astype(np.float64)


def _keystone(kx: float, ky: float) -> np.ndarray:
    return np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [kx, ky, 1.0]], dtype=np.float64)


def place_cones(
    rng: np.random.Generator,
    surface: SurfaceConfig,
    count: int,
    min_separation_mm: float = 40.0,
    inset_mm: float = 45.0,
    max_attempts: int = 10_000,
) -> list[tuple[float, float]]:
    """Sample cone positions inside the surface interior with a minimum spacing."""
    cones: list[tuple[float, float]] = []
    attempts = 0
    while len(cones) < count:
        attempts += 1
        if attempts > max_attempts:
            raise ValueError(f"could not place {count} cones {min_separation_mm}mm apart")
        x = float(rng.uniform(inset_mm, surface.width_mm - inset_mm))
        y = float(rng.uniform(inset_mm, surface.height_mm - inset_mm))
        if all(math.hypot(x - cx, y - cy) >= min_separation_mm for cx, cy in cones):
            cones.append((x, y))
    return cones


class VirtualCamera:
    """Handheld camera looking down at the surface, moving on a small circle."""

    def __init__(
        self,
        surface: SurfaceConfig,
        frame_size: tuple[int, int] = (640, 480),
        px_per_mm: float = 1.4,
        orbit_px: float = 35.0,
        orbit_period_s: float = 6.0,
        max_roll_deg: float = 2.0,
        keystone: float = 1e-4,
    ):
        if px_per_mm <= 0.0:
            raise ValueError("px_per_mm must be > 0")
        if orbit_period_s <= 0.0:
            raise ValueError("orbit_period_s must be > 0")
        self.surface = surface
        self.frame_size = frame_size
        self.px_per_mm = float(px_per_mm)
        self.orbit_px = float(orbit_px)
        self.omega = 2.0 * math.pi / float(orbit_period_s)
        self.max_roll = math.radians(max_roll_deg)
        self.keystone = float(keystone)

    def homography(self, t_sec: float, nominal: bool = False) -> np.ndarray:
        """Surface (mm) -> pixel homography at time t."""
        w, h = self.frame_size
        if nominal:
            ox = oy = roll = kx = ky = 0.0
        else:
            phase = self.omega * t_sec
            ox = self.orbit_px * math.cos(phase)
            oy = self.orbit_px * math.sin(phase)
            roll = self.max_roll * math.sin(0.5 * phase)
            kx = self.keystone * math.sin(phase)
            ky = self.keystone * math.cos(phase)
        return (
            _translate(w / 2.0 + ox, h / 2.0 + oy)
            @ _rotate(roll)
            @ _scale(self.px_per_mm)
            @ _keystone(kx, ky)
            @ _translate(-self.surface.width_mm / 2.0, -self.surface.height_mm / 2.0)
        )

    def project(self, H: np.ndarray, point_mm: tuple[float, float]) -> tuple[float, float]:
        projected = apply_homography(H, point_mm)
        if projected is None:
            raise ValueError(f"point {point_mm} projects to infinity")
        return projected


class SyntheticScanGenerator:
    """Frames and marker records for a surface with cones."""

    def __init__(
        self,
        cones_mm: list[tuple[float, float]],
        camera: VirtualCamera,
        cone_radius_mm: float = 10.0,
        marker_size_mm: float = 30.0,
        texture_px_per_mm: float = 4.0,
        background: int = 200,
        cone_value: int = 50,
        frame_noise: float = 2.0,
        corner_noise_px: float = 0.5,
        marker_dropout: float = 0.0,
        seed: int = 0,
    ):
        if not (0.0 <= marker_dropout <= 1.0):
            raise ValueError("marker_dropout must be in [0, 1]")
        if frame_noise < 0.0 or corner_noise_px < 0.0:
            raise ValueError("noise must be >= 0")

        self.cones_mm = list(cones_mm)
        self.camera = camera
        self.surface = camera.surface
        self.cone_radius_mm = float(cone_radius_mm)
        self.marker_size_mm = float(marker_size_mm)
        self.texture_px_per_mm = float(texture_px_per_mm)
        self.background = int(background)
        self.frame_noise = float(frame_noise)
        self.corner_noise_px = float(corner_noise_px)
        self.marker_dropout = float(marker_dropout)
        self._rng = np.random.default_rng(int(seed))
        self._texture = self._render_texture(cone_value)

    def _render_texture(self, cone_value: int) -> np.ndarray:
        k = self.texture_px_per_mm
        width = int(math.ceil(self.surface.width_mm * k))
        height = int(math.ceil(self.surface.height_mm * k))
        texture = np.full((height, width), self.background, dtype=np.uint8)
        # Sub-pixel drawing with 4 fractional bits
        for x, y in self.cones_mm:
            center = (int(round(x * k * 16)), int(round(y * k * 16)))
            radius = int(round(self.cone_radius_mm * k * 16))
            cv2.circle(texture, center, radius, int(cone_value), -1, cv2.LINE_AA, 4)
        return texture

    def render(self, H: np.ndarray) -> np.ndarray:
        """Warp the surface texture into a camera frame."""
        k = self.texture_px_per_mm
        texture_to_frame = H @ np.diag([1.0 / k, 1.0 / k, 1.0])
        frame = cv2.warpPerspective(
            self._texture,
            texture_to_frame,
            self.camera.frame_size,
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=self.background,
        )
        if self.frame_noise > 0.0:
            noisy = frame.astype(np.float32) + self._rng.normal(
                0.0, self.frame_noise, size=frame.shape
            ).astype(np.float32)
            frame = np.clip(noisy, 0, 255).astype(np.uint8)
        return frame

    def marker_records(self, H: np.ndarray) -> list[dict]:
        """Decoder-style records for the four grid markers."""
        half = self.marker_size_mm / 2.0
        centers = self.surface.destination_points()
        records: list[dict] = []
        for label, (cx, cy) in zip(GRID_ORDER, centers):
            if self.marker_dropout > 0.0 and float(self._rng.random()) < self.marker_dropout:
                continue
            corners_mm = [
                (cx - half, cy - half),
                (cx + half, cy - half),
                (cx + half, cy + half),
                (cx - half, cy + half),
            ]
            corners = []
            for corner in corners_mm:
                u, v = self.camera.project(H, corner)
                if self.corner_noise_px > 0.0:
                    du, dv = self._rng.normal(0.0, self.corner_noise_px, size=2)
                    u, v = u + float(du), v + float(dv)
                corners.append([u, v])
            records.append({"id": label.value, "corners": corners})
        return records


def sim_pipeline_config(
    camera: VirtualCamera,
    marker_size_mm: float,
    cone_radius_mm: float,
    log_dir: str,
) -> PipelineConfig:
    """Pipeline config matching the virtual camera's nominal view."""
    H0 = camera.homography(0.0, nominal=True)
    targets = {
        label: camera.project(H0, tuple(center))
        for label, center in zip(GRID_ORDER, camera.surface.destination_points())
    }
    cone_px = cone_radius_mm * camera.px_per_mm
    w, h = camera.frame_size
    return PipelineConfig(
        alignment=AlignmentConfig(
            frame_width=w,
            frame_height=h,
            target_marker_px=marker_size_mm * camera.px_per_mm,
            target_positions=targets,
        ),
        surface=camera.surface,
        detector=DetectorParams(
            min_radius=max(2, int(cone_px * 0.6)),
            max_radius=int(math.ceil(cone_px * 1.4)),
        ),
        enable_logging=True,
        log_dir=log_dir,
    )


def run_closed_loop(
    *,
    frames: int,
    fps: float = 10.0,
    cones: int = 5,
    corner_noise_px: float = 0.5,
    frame_noise: float = 2.0,
    marker_dropout: float = 0.0,
    seed: int = 0,
    out_dir: str | None = None,
) -> dict:
    """Run an in-process scan session on synthetic frames and write artifacts.

    Returns a summary dict with keys:
      mean_position_error_mm, max_position_error_mm, cluster_count, cone_count,
      matched_cones, captures, session_complete, confidence, frame_log, eval_json
    """
    if frames <= 0:
        raise ValueError("frames must be > 0")
    if fps <= 0:
        raise ValueError("fps must be > 0")
    if cones <= 0:
        raise ValueError("cones must be > 0")

    if out_dir is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        out_path = Path("./output/sim") / f"{ts}-{seed}"
    else:
        out_path = Path(out_dir)
    out_path.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(int(seed))
    surface = SurfaceConfig()
    camera = VirtualCamera(surface)
    cones_mm = place_cones(rng, surface, int(cones))
    marker_size_mm = 30.0
    cone_radius_mm = 10.0
    generator = SyntheticScanGenerator(
        cones_mm,
        camera,
        cone_radius_mm=cone_radius_mm,
        marker_size_mm=marker_size_mm,
        frame_noise=frame_noise,
        corner_noise_px=corner_noise_px,
        marker_dropout=marker_dropout,
        seed=int(seed) + 1,
    )

    config = sim_pipeline_config(camera, marker_size_mm, cone_radius_mm, str(out_path))
    pipeline = ScanPipeline(config)
    pipeline.start_session(now=0.0, session_name="frames")
    frame_log = pipeline.logger.current_log_file if pipeline.logger else None

    aligned_frames = 0
    for i in range(int(frames)):
        t_sec = i / float(fps)
        H = camera.homography(t_sec)
        result = pipeline.process_frame(generator.marker_records(H), generator.render(H), now=t_sec)
        if result is not None and result.alignment.is_aligned:
            aligned_frames += 1
        if pipeline.session is not None and pipeline.session.is_complete:
            break

    session = pipeline.session
    session_complete = bool(session and session.is_complete)

    errors: list[float] = []
    matched: set[int] = set()
    cluster_count = 0
    confidence = 0.0
    if session_complete:
        consensus = pipeline.process_session()
        cluster_count = len(consensus.clusters)
        confidence = consensus.confidence
        truth = np.asarray(cones_mm, dtype=np.float64)
        for cluster in consensus.clusters:
            d = np.linalg.norm(truth - np.asarray(cluster.position), axis=1)
            nearest = int(np.argmin(d))
            matched.add(nearest)
            errors.append(float(d[nearest]))

    run_stats = pipeline.stop()
    log_check = validate_log_integrity(frame_log) if frame_log else {"valid": False}

    mean_err = float(np.mean(errors)) if errors else float("nan")
    max_err = float(np.max(errors)) if errors else float("nan")

    eval_path = out_path / "eval.json"
    eval_summary = {
        "mean_position_error_mm": mean_err,
        "max_position_error_mm": max_err,
        "cluster_count": cluster_count,
        "cone_count": len(cones_mm),
        "matched_cones": len(matched),
        "captures": session.completed if session else 0,
        "session_complete": session_complete,
        "confidence": confidence,
        "aligned_frames": aligned_frames,
        "frames_processed": run_stats["frames_processed"],
        "log_valid": bool(log_check.get("valid", False)),
        "params": {
            "frames": int(frames),
            "fps": float(fps),
            "cones": int(cones),
            "corner_noise_px": float(corner_noise_px),
            "frame_noise": float(frame_noise),
            "marker_dropout": float(marker_dropout),
            "seed": int(seed),
        },
        "ground_truth_mm": [list(c) for c in cones_mm],
        "artifacts": {"frame_log": str(frame_log)},
    }
    eval_path.write_text(json.dumps(eval_summary, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    return {
        "mean_position_error_mm": mean_err,
        "max_position_error_mm": max_err,
        "cluster_count": cluster_count,
        "cone_count": len(cones_mm),
        "matched_cones": len(matched),
        "captures": session.completed if session else 0,
        "session_complete": session_complete,
        "confidence": confidence,
        "frame_log": str(frame_log),
        "eval_json": str(eval_path),
    }


def assert_metrics(
    summary: dict,
    *,
    max_mean_position_error_mm: float,
    max_position_error_mm: float | None = None,
) -> None:
    if not summary.get("session_complete"):
        raise AssertionError("session did not complete")

    mean_err = float(summary.get("mean_position_error_mm"))
    if not np.isfinite(mean_err) or mean_err > float(max_mean_position_error_mm):
        raise AssertionError(
            f"mean_position_error_mm={mean_err} exceeds max_mean_position_error_mm={float(max_mean_position_error_mm)}"
        )

    if summary.get("matched_cones") != summary.get("cone_count"):
        raise AssertionError(
            f"matched {summary.get('matched_cones')} of {summary.get('cone_count')} cones"
        )

    if max_position_error_mm is None:
        return

    max_err = float(summary.get("max_position_error_mm"))
    if not np.isfinite(max_err) or max_err > float(max_position_error_mm):
        raise AssertionError(
            f"max_position_error_mm={max_err} exceeds max_position_error_mm={float(max_position_error_mm)}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m conescan.sim")
    parser.add_argument("--frames", type=int, default=130, help="Maximum number of frames (>0)")
    parser.add_argument("--fps", type=float, default=10.0, help="Frames per second (>0)")
    parser.add_argument("--cones", type=int, default=5, help="Number of cones on the surface")
    parser.add_argument("--corner-noise-px", type=float, default=0.5, help="Marker corner noise stddev")
    parser.add_argument("--frame-noise", type=float, default=2.0, help="Image noise stddev (gray levels)")
    parser.add_argument("--marker-dropout", type=float, default=0.0, help="Marker dropout probability [0,1]")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed")
    parser.add_argument("--out-dir", type=str, default=None, help="Output directory")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else 2

    def _err(msg: str) -> int:
        print(f"error: {msg}", file=sys.stderr)
        return 2

    if args.frames <= 0:
        return _err("--frames must be > 0")
    if args.fps <= 0:
        return _err("--fps must be > 0")
    if args.cones <= 0:
        return _err("--cones must be > 0")
    if not (0.0 <= args.marker_dropout <= 1.0):
        return _err("--marker-dropout must be in [0, 1]")
    if args.corner_noise_px < 0.0 or args.frame_noise < 0.0:
        return _err("noise must be >= 0")

    try:
        summary = run_closed_loop(
            frames=int(args.frames),
            fps=float(args.fps),
            cones=int(args.cones),
            corner_noise_px=float(args.corner_noise_px),
            frame_noise=float(args.frame_noise),
            marker_dropout=float(args.marker_dropout),
            seed=int(args.seed),
            out_dir=args.out_dir,
        )
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for k in [
        "mean_position_error_mm",
        "max_position_error_mm",
        "cluster_count",
        "cone_count",
        "captures",
        "confidence",
        "frame_log",
        "eval_json",
    ]:
        print(f"{k}: {summary[k]}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
