"""
Homography module mapping camera pixels to surface millimeters.

Provides functionality to:
- Estimate a 3x3 projective transform from the four grid-marker centers (DLT)
- Project points camera -> surface (and back through the inverse)
- Compute reprojection error for quality assessment
- Keep the last valid transform while markers are temporarily stale
"""

import itertools
from typing import Optional, Dict, Any, List, Tuple, Sequence
from dataclasses import dataclass

import numpy as np
from scipy import linalg

from .tracker import FiducialMarker, GridLabel, GRID_ORDER


# Below this magnitude the homogeneous divisor is treated as zero
W_EPSILON = 1e-8

# Minimum |triangle area| (in normalized units) for three points to count as non-collinear
COLLINEAR_EPSILON = 1e-6


Point = Tuple[float, float]


@dataclass
class SurfaceConfig:
    """Physical surface and marker placement in millimeters (A4 portrait by default)."""
    width_mm: float = 210.0
    height_mm: float = 297.0
    margin_mm: float = 20.0
    marker_size_mm: float = 50.0

    def __post_init__(self) -> None:
        if self.width_mm <= 0 or self.height_mm <= 0:
            raise ValueError("surface dimensions must be > 0")
        if not (0 <= 2 * self.margin_mm < min(self.width_mm, self.height_mm)):
            raise ValueError("margin_mm leaves no room between markers")

    def destination_points(self) -> np.ndarray:
        """Marker centers on the surface, in grid order (TL, TR, BR, BL)."""
        m = self.margin_mm
        w = self.width_mm
        h = self.height_mm
        return np.array([
            [m, m],
            [w - m, m],
            [w - m, h - m],
            [m, h - m],
        ], dtype=np.float64)


@dataclass
class CoordinateTransform:
    """Projective transform plus validity and the surface it maps into."""
    matrix: Optional[np.ndarray]  # 3x3
    is_valid: bool
    surface_width_mm: float
    surface_height_mm: float
    computed_at: Optional[float] = None

    @classmethod
    def invalid(cls, surface: SurfaceConfig) -> "CoordinateTransform":
        return cls(
            matrix=None,
            is_valid=False,
            surface_width_mm=surface.width_mm,
            surface_height_mm=surface.height_mm,
        )

    def transform(self, point: Sequence[float]) -> Optional[Point]:
        """
        Apply [u, v, w]^T = H [x, y, 1]^T and return (u/w, v/w).

        Returns:
            Projected point, or None when the transform is invalid or |w|
            is numerically zero
        """
        if not self.is_valid or self.matrix is None:
            return None
        return apply_homography(self.matrix, point)

    def inverse(self) -> "CoordinateTransform":
        """Transform of the same validity mapping the other way (mm -> px)."""
        if not self.is_valid or self.matrix is None:
            return CoordinateTransform(
                matrix=None,
                is_valid=False,
                surface_width_mm=self.surface_width_mm,
                surface_height_mm=self.surface_height_mm,
            )
        try:
            inv = linalg.inv(self.matrix)
        except linalg.LinAlgError:
            return CoordinateTransform(None, False, self.surface_width_mm, self.surface_height_mm)
        if abs(inv[2, 2]) > W_EPSILON:
            inv = inv / inv[2, 2]
        return CoordinateTransform(
            matrix=inv,
            is_valid=True,
            surface_width_mm=self.surface_width_mm,
            surface_height_mm=self.surface_height_mm,
            computed_at=self.computed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "matrix": self.matrix.tolist() if self.matrix is not None else None,
            "surface_dimensions": [self.surface_width_mm, self.surface_height_mm],
            "computed_at": self.computed_at,
        }


def apply_homography(H: np.ndarray, point: Sequence[float]) -> Optional[Point]:
    x, y = float(point[0]), float(point[1])
    u, v, w = H @ np.array([x, y, 1.0], dtype=np.float64)
    if abs(w) < W_EPSILON:
        return None
    return (float(u / w), float(v / w))


def _normalization_matrix(points: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(points - centroid, axis=1))
    if mean_dist < 1e-12:
        raise ValueError("Degenerate point set")
    s = np.sqrt(2.0) / mean_dist
    return np.array([
        [s, 0, -s * centroid[0]],
        [0, s, -s * centroid[1]],
        [0, 0, 1],
    ], dtype=np.float64)


def _has_collinear_triple(points: np.ndarray) -> bool:
    for a, b, c in itertools.combinations(range(len(points)), 3):
        ab = points[b] - points[a]
        ac = points[c] - points[a]
        area = 0.5 * abs(ab[0] * ac[1] - ab[1] * ac[0])
        if area < COLLINEAR_EPSILON:
            return True
    return False


def solve_dlt(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
    """
    Solve H with dst ~ H src from exactly four correspondences.

    Uses the Direct Linear Transform on Hartley-normalized points; the
    null-space vector of the 8x9 system is the last right singular vector.

    Args:
        src: 4x2 source points
        dst: 4x2 destination points

    Returns:
        3x3 matrix scaled so H[2, 2] = 1, or None for degenerate input
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    if src.shape != (4, 2) or dst.shape != (4, 2):
        return None
    if not (np.all(np.isfinite(src)) and np.all(np.isfinite(dst))):
        return None

    try:
        T_src = _normalization_matrix(src)
        T_dst = _normalization_matrix(dst)
    except ValueError:
        return None

    src_n = (T_src @ np.hstack([src, np.ones((4, 1))]).T).T[:, :2]
    dst_n = (T_dst @ np.hstack([dst, np.ones((4, 1))]).T).T[:, :2]

    if _has_collinear_triple(src_n) or _has_collinear_triple(dst_n):
        return None

    A = []
    for (x, y), (u, v) in zip(src_n, dst_n):
        A.append([-x, -y, -1, 0, 0, 0, u * x, u * y, u])
        A.append([0, 0, 0, -x, -y, -1, v * x, v * y, v])
    A = np.array(A, dtype=np.float64)

    try:
        _, S, Vh = linalg.svd(A)
    except linalg.LinAlgError:
        return None

    # Rank below 8 means the solution is not unique
    if S[7] < 1e-10 * S[0]:
        return None

    H_n = Vh[-1, :].reshape(3, 3)
    H = linalg.inv(T_dst) @ H_n @ T_src

    if abs(H[2, 2]) < W_EPSILON:
        return None
    H = H / H[2, 2]

    if abs(linalg.det(H)) < 1e-12:
        return None

    return H


class HomographyEstimator:
    """
    Estimate and maintain the camera -> surface transform.

    Usage:
        estimator = HomographyEstimator(SurfaceConfig())
        transform = estimator.update(snapshot.fresh, now)
        surface_pt = transform.transform((320.0, 240.0))
    """

    def __init__(self, surface: Optional[SurfaceConfig] = None):
        self.surface = surface or SurfaceConfig()
        self._current = CoordinateTransform.invalid(self.surface)
        self._is_current = False
        self.solve_count = 0
        self.failure_count = 0

    def estimate(
        self,
        correspondences: Sequence[Sequence[float]],
        now: Optional[float] = None
    ) -> CoordinateTransform:
        """
        Estimate a transform from four camera-space points in grid order.

        Args:
            correspondences: Marker centers ordered TL, TR, BR, BL
            now: Optional timestamp recorded on the transform

        Returns:
            CoordinateTransform; invalid unless exactly four usable points
            were given
        """
        src = np.asarray(correspondences, dtype=np.float64)
        if src.ndim != 2 or src.shape != (4, 2):
            return CoordinateTransform.invalid(self.surface)

        H = solve_dlt(src, self.surface.destination_points())
        if H is None:
            return CoordinateTransform.invalid(self.surface)

        return CoordinateTransform(
            matrix=H,
            is_valid=True,
            surface_width_mm=self.surface.width_mm,
            surface_height_mm=self.surface.height_mm,
            computed_at=now,
        )

    def estimate_from_markers(
        self,
        markers: Sequence[FiducialMarker],
        now: Optional[float] = None
    ) -> CoordinateTransform:
        """Estimate from markers; requires exactly one marker per grid label."""
        by_label: Dict[GridLabel, FiducialMarker] = {}
        for marker in markers:
            if marker.label in by_label:
                return CoordinateTransform.invalid(self.surface)
            by_label[marker.label] = marker
        if len(by_label) != len(GRID_ORDER) or any(l not in by_label for l in GRID_ORDER):
            return CoordinateTransform.invalid(self.surface)
        points = [by_label[label].center for label in GRID_ORDER]
        return self.estimate(points, now=now)

    def update(self, fresh: Sequence[FiducialMarker], now: float) -> CoordinateTransform:
        """
        Per-frame lifecycle step.

        Recomputes when all four markers are fresh; otherwise keeps the last
        valid transform (stale but usable) or stays invalid if none exists.
        """
        labels = {m.label for m in fresh}
        if len(fresh) == len(GRID_ORDER) and labels == set(GRID_ORDER):
            transform = self.estimate_from_markers(fresh, now=now)
            self.solve_count += 1
            if transform.is_valid:
                self._current = transform
                self._is_current = True
                return self._current
            self.failure_count += 1

        self._is_current = False
        return self._current

    @property
    def current(self) -> CoordinateTransform:
        return self._current

    @property
    def is_current(self) -> bool:
        """True when the transform was recomputed on the latest update."""
        return self._is_current

    def reset(self) -> None:
        self._current = CoordinateTransform.invalid(self.surface)
        self._is_current = False


def reprojection_error(
    src_points: Sequence[Sequence[float]],
    dst_points: Sequence[Sequence[float]],
    transform: CoordinateTransform
) -> float:
    """
    Mean distance between transformed source points and their destinations.

    Returns:
        Mean error in destination units, or inf when it cannot be computed
    """
    if not transform.is_valid or len(src_points) != len(dst_points) or len(src_points) == 0:
        return float("inf")

    errors: List[float] = []
    for src, dst in zip(src_points, dst_points):
        projected = transform.transform(src)
        if projected is None:
            return float("inf")
        errors.append(float(np.hypot(projected[0] - dst[0], projected[1] - dst[1])))
    return float(np.mean(errors))
