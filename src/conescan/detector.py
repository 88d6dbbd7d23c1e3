"""
Cone detection on grayscale frames.

Provides functionality to:
- Build a binary edge mask (separable Gaussian blur + Sobel magnitude)
- Score circle candidates on a coarse grid by radial edge sampling
- Suppress overlapping candidates, keeping the strongest
- Track detected cones across frames with stable integer identities
- Project cone centers into surface millimeters through the current transform
"""

import math
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, replace

import cv2
import numpy as np
from scipy.spatial.distance import cdist

from .homography import CoordinateTransform


@dataclass
class DetectedObject:
    """A tracked cone."""
    object_id: int
    center: Tuple[float, float]
    radius: float
    confidence: float
    last_seen: float
    surface_position: Optional[Tuple[float, float]] = None
    first_seen: float = 0.0
    hits: int = 1

    def copy(self) -> "DetectedObject":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.object_id,
            "center": [self.center[0], self.center[1]],
            "radius": self.radius,
            "confidence": self.confidence,
            "last_seen": self.last_seen,
            "surface_position": (
                [self.surface_position[0], self.surface_position[1]]
                if self.surface_position is not None else None
            ),
            "hits": self.hits,
        }


@dataclass
class DetectorParams:
    """Circle search and tracking parameters (pixels / seconds)."""
    min_radius: int = 10
    max_radius: int = 40
    radius_step: int = 2
    grid_step: int = 5
    blur_kernel: int = 9
    edge_threshold: float = 50.0
    confidence_threshold: float = 0.6
    overlap_radius: float = 20.0
    max_detections: int = 10
    match_distance: float = 25.0
    staleness_s: float = 1.0

    def __post_init__(self) -> None:
        if self.min_radius <= 0 or self.max_radius < self.min_radius:
            raise ValueError("radius range must satisfy 0 < min_radius <= max_radius")
        if self.radius_step <= 0 or self.grid_step <= 0:
            raise ValueError("radius_step and grid_step must be > 0")
        if self.blur_kernel < 1 or self.blur_kernel % 2 == 0:
            raise ValueError("blur_kernel must be a positive odd integer")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ValueError("confidence_threshold must be in [0, 1]")
        if self.overlap_radius < 0 or self.match_distance < 0:
            raise ValueError("distances must be >= 0")
        if self.max_detections <= 0:
            raise ValueError("max_detections must be > 0")
        if self.staleness_s <= 0:
            raise ValueError("staleness_s must be > 0")


@dataclass
class CircleCandidate:
    center: Tuple[float, float]
    radius: float
    confidence: float
    strength: float = 0.0  # mean gradient magnitude on the sampled ring


def to_gray(frame: np.ndarray) -> np.ndarray:
    """Convert a gray, BGR or BGRA frame to a float32 single-channel image."""
    frame = np.asarray(frame)
    if frame.dtype not in (np.uint8, np.float32):
        frame = frame.astype(np.float32)

    if frame.ndim == 2:
        gray = frame
    elif frame.ndim == 3 and frame.shape[2] == 1:
        gray = frame[:, :, 0]
    elif frame.ndim == 3 and frame.shape[2] == 3:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    elif frame.ndim == 3 and frame.shape[2] == 4:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    else:
        raise ValueError(f"Unsupported frame shape: {frame.shape}")

    return gray.astype(np.float32)


def edge_map(gray: np.ndarray, blur_kernel: int, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute the thresholded gradient-magnitude edge mask.

    Args:
        gray: float32 image
        blur_kernel: Odd Gaussian kernel size (sigma = size / 3)
        threshold: Sobel magnitude threshold

    Returns:
        (edge mask as bool array, gradient magnitude)
    """
    if blur_kernel > 1:
        kernel = cv2.getGaussianKernel(blur_kernel, blur_kernel / 3.0)
        blurred = cv2.sepFilter2D(gray, cv2.CV_32F, kernel, kernel)
    else:
        blurred = gray

    gx = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = cv2.magnitude(gx, gy)
    return magnitude > threshold, magnitude


def ring_offsets(radius: float) -> Tuple[np.ndarray, np.ndarray]:
    """Integer (dx, dy) sample offsets evenly spaced around a circle."""
    count = max(8, int(2 * math.pi * radius / 2))
    angles = np.linspace(0.0, 2 * math.pi, count, endpoint=False)
    dx = np.rint(radius * np.cos(angles)).astype(np.intp)
    dy = np.rint(radius * np.sin(angles)).astype(np.intp)
    return dx, dy


def find_circles(
    edges: np.ndarray,
    magnitude: np.ndarray,
    params: DetectorParams
) -> List[CircleCandidate]:
    """
    Score every (grid center, radius) pair and keep the best per center.

    Returns:
        Candidates above the confidence threshold (unsorted, unsuppressed)
    """
    h, w = edges.shape
    border = params.max_radius
    ys = np.arange(border, h - border, params.grid_step)
    xs = np.arange(border, w - border, params.grid_step)
    if len(xs) == 0 or len(ys) == 0:
        return []

    cy, cx = np.meshgrid(ys, xs, indexing="ij")
    cy = cy.ravel()
    cx = cx.ravel()

    best_conf = np.zeros(len(cx), dtype=np.float64)
    best_strength = np.zeros(len(cx), dtype=np.float64)
    best_radius = np.zeros(len(cx), dtype=np.float64)

    for radius in range(params.min_radius, params.max_radius + 1, params.radius_step):
        dx, dy = ring_offsets(radius)
        sy = cy[:, None] + dy[None, :]
        sx = cx[:, None] + dx[None, :]
        conf = edges[sy, sx].mean(axis=1)
        strength = magnitude[sy, sx].mean(axis=1)

        better = (conf > best_conf) | ((conf == best_conf) & (strength > best_strength))
        best_conf = np.where(better, conf, best_conf)
        best_strength = np.where(better, strength, best_strength)
        best_radius = np.where(better, radius, best_radius)

    keep = np.nonzero(best_conf > params.confidence_threshold)[0]
    return [
        CircleCandidate(
            center=(float(cx[i]), float(cy[i])),
            radius=float(best_radius[i]),
            confidence=float(best_conf[i]),
            strength=float(best_strength[i]),
        )
        for i in keep
    ]


def suppress_overlaps(
    candidates: List[CircleCandidate],
    overlap_radius: float,
    limit: int
) -> List[CircleCandidate]:
    """
    Greedy non-maximum suppression.

    Candidates are taken strongest first; one is kept only if its center is
    at least overlap_radius away from every already-kept center.
    """
    ordered = sorted(candidates, key=lambda c: (-c.confidence, -c.strength))
    kept: List[CircleCandidate] = []
    for cand in ordered:
        if len(kept) >= limit:
            break
        if all(
            math.hypot(cand.center[0] - k.center[0], cand.center[1] - k.center[1]) >= overlap_radius
            for k in kept
        ):
            kept.append(cand)
    return kept


class ObjectDetector:
    """
    Detect and track cones.

    Usage:
        detector = ObjectDetector(DetectorParams(min_radius=8, max_radius=20))
        objects = detector.detect(gray_frame, now=t, transform=transform)
    """

    def __init__(self, params: Optional[DetectorParams] = None):
        self.params = params or DetectorParams()
        self._objects: Dict[int, DetectedObject] = {}
        self._next_id = 1
        self.frames_processed = 0

    def detect(
        self,
        frame: np.ndarray,
        now: float,
        transform: Optional[CoordinateTransform] = None
    ) -> List[DetectedObject]:
        """
        Detect cones in a frame and update the tracked set.

        Args:
            frame: Grayscale, BGR or BGRA image
            now: Frame timestamp (seconds)
            transform: Optional camera -> surface transform

        Returns:
            Copies of the objects accepted in this frame, strongest first
        """
        self.evict_stale(now)

        gray = to_gray(frame)
        edges, magnitude = edge_map(gray, self.params.blur_kernel, self.params.edge_threshold)
        candidates = find_circles(edges, magnitude, self.params)
        accepted = suppress_overlaps(
            candidates, self.params.overlap_radius, self.params.max_detections
        )

        self.frames_processed += 1
        return [obj.copy() for obj in self._match(accepted, now, transform)]

    def _match(
        self,
        accepted: List[CircleCandidate],
        now: float,
        transform: Optional[CoordinateTransform]
    ) -> List[DetectedObject]:
        tracked_ids = list(self._objects.keys())
        distances = None
        if accepted and tracked_ids:
            distances = cdist(
                np.array([c.center for c in accepted], dtype=np.float64),
                np.array([self._objects[i].center for i in tracked_ids], dtype=np.float64),
            )

        used = set()
        results: List[DetectedObject] = []

        for row, cand in enumerate(accepted):
            surface = None
            if transform is not None and transform.is_valid:
                surface = transform.transform(cand.center)

            match_id = None
            if distances is not None:
                for col in np.argsort(distances[row]):
                    if distances[row, col] >= self.params.match_distance:
                        break
                    if tracked_ids[col] not in used:
                        match_id = tracked_ids[col]
                        break

            if match_id is not None:
                obj = self._objects[match_id]
                obj.center = cand.center
                obj.radius = cand.radius
                obj.confidence = cand.confidence
                obj.last_seen = float(now)
                obj.surface_position = surface
                obj.hits += 1
            else:
                obj = DetectedObject(
                    object_id=self._next_id,
                    center=cand.center,
                    radius=cand.radius,
                    confidence=cand.confidence,
                    last_seen=float(now),
                    surface_position=surface,
                    first_seen=float(now),
                )
                self._objects[obj.object_id] = obj
                self._next_id += 1

            used.add(obj.object_id)
            results.append(obj)

        return results

    def evict_stale(self, now: float) -> List[int]:
        """
        Drop objects not re-observed within the staleness window.

        Returns:
            Evicted object ids
        """
        expired = [
            oid for oid, obj in self._objects.items()
            if float(now) - obj.last_seen > self.params.staleness_s
        ]
        for oid in expired:
            del self._objects[oid]
        return expired

    @property
    def tracked_objects(self) -> List[DetectedObject]:
        return [obj.copy() for obj in self._objects.values()]

    def update_params(self, **kwargs: Any) -> None:
        self.params = replace(self.params, **kwargs)

    def clear(self) -> None:
        self._objects.clear()
