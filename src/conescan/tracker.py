"""
Fiducial tracker registry for the four grid-corner markers.

Provides functionality to:
- Resolve raw decoder identities to one of the fixed grid labels
- Derive marker center and pixel extent from corner points
- Keep the latest record per label (no history)
- Split markers into fresh / stale by age and evict expired ones explicitly
"""

import math
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Union
from dataclasses import dataclass, field

import numpy as np


class GridLabel(str, Enum):
    """
    Grid position labels of the surface markers.

    The grid has no inherent direction; only the relative layout matters:

        TAG_01 | TAG_02
        -------+-------
        TAG_04 | TAG_03
    """
    TAG_01 = "1"
    TAG_02 = "2"
    TAG_03 = "3"
    TAG_04 = "4"


# Homography correspondence order: top-left, top-right, bottom-right, bottom-left
GRID_ORDER: Tuple[GridLabel, ...] = (
    GridLabel.TAG_01,
    GridLabel.TAG_02,
    GridLabel.TAG_03,
    GridLabel.TAG_04,
)

# Ideal (column, row) cell of each label in the grid
GRID_CELLS: Dict[GridLabel, Tuple[int, int]] = {
    GridLabel.TAG_01: (0, 0),
    GridLabel.TAG_02: (1, 0),
    GridLabel.TAG_03: (1, 1),
    GridLabel.TAG_04: (0, 1),
}


def resolve_identity(raw: Any) -> Optional[GridLabel]:
    """
    Map a decoder identity to a grid label.

    Accepts a GridLabel, an integer tag id (1-4), a numeric string ("1")
    or a member name ("TAG_01"). Anything else resolves to None.
    """
    if isinstance(raw, GridLabel):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, np.integer)):
        raw = str(int(raw))
    if not isinstance(raw, str):
        return None

    value = raw.strip()
    try:
        return GridLabel(value)
    except ValueError:
        pass
    try:
        return GridLabel[value.upper()]
    except KeyError:
        return None


@dataclass
class MarkerPose:
    """Optional pose estimate returned by the decoder."""
    rotation: np.ndarray  # 3x3
    translation: np.ndarray  # 3
    error: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "R": self.rotation.tolist(),
            "t": self.translation.tolist(),
            "e": self.error,
        }


@dataclass
class MarkerDetection:
    """Raw per-frame decoder output for a single marker."""
    corners: np.ndarray  # 4x2, clockwise from the marker's own top-left
    pose: Optional[MarkerPose] = None

    def is_well_formed(self) -> bool:
        try:
            corners = np.asarray(self.corners, dtype=np.float64)
        except (TypeError, ValueError):
            return False
        if corners.shape != (4, 2):
            return False
        return bool(np.all(np.isfinite(corners)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["MarkerDetection"]:
        """
        Parse a decoder record.

        Args:
            data: Dict with "corners" ([[x, y] x4] or [{"x":..,"y":..} x4])
                and an optional "pose" ({"R", "t", "e"})

        Returns:
            MarkerDetection, or None when the payload is malformed
        """
        raw_corners = data.get("corners")
        if raw_corners is None:
            return None
        try:
            points = [
                (c["x"], c["y"]) if isinstance(c, dict) else (c[0], c[1])
                for c in raw_corners
            ]
            corners = np.array(points, dtype=np.float64)
        except (KeyError, IndexError, TypeError, ValueError):
            return None

        pose = None
        raw_pose = data.get("pose")
        if raw_pose:
            try:
                pose = MarkerPose(
                    rotation=np.array(raw_pose["R"], dtype=np.float64).reshape(3, 3),
                    translation=np.array(raw_pose["t"], dtype=np.float64).reshape(3),
                    error=float(raw_pose.get("e", 0.0)),
                )
            except (KeyError, TypeError, ValueError):
                pose = None

        detection = cls(corners=corners, pose=pose)
        return detection if detection.is_well_formed() else None


@dataclass
class FiducialMarker:
    """Latest known state of one grid marker."""
    label: GridLabel
    corners: np.ndarray  # 4x2
    center: Tuple[float, float]
    width: float
    height: float
    last_seen: float
    pose: Optional[MarkerPose] = None

    @property
    def extent(self) -> float:
        """Mean pixel side length."""
        return 0.5 * (self.width + self.height)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.label.value,
            "corners": self.corners.tolist(),
            "center": [self.center[0], self.center[1]],
            "width": self.width,
            "height": self.height,
            "last_seen": self.last_seen,
            "pose": self.pose.to_dict() if self.pose else None,
        }


def marker_from_detection(
    label: GridLabel,
    detection: MarkerDetection,
    now: float
) -> FiducialMarker:
    """Build a FiducialMarker, deriving center and extent from the corners."""
    corners = np.asarray(detection.corners, dtype=np.float64).reshape(4, 2)
    center = corners.mean(axis=0)
    width = float(np.linalg.norm(corners[1] - corners[0]))
    height = float(np.linalg.norm(corners[3] - corners[0]))
    return FiducialMarker(
        label=label,
        corners=corners.copy(),
        center=(float(center[0]), float(center[1])),
        width=width,
        height=height,
        last_seen=float(now),
        pose=detection.pose,
    )


@dataclass
class RegistrySnapshot:
    """Markers split by freshness at one evaluation instant."""
    fresh: List[FiducialMarker] = field(default_factory=list)
    stale: List[FiducialMarker] = field(default_factory=list)

    @property
    def fresh_labels(self) -> List[GridLabel]:
        return [m.label for m in self.fresh]

    @property
    def stale_labels(self) -> List[GridLabel]:
        return [m.label for m in self.stale]


@dataclass
class TrackerConfig:
    """Registry timing thresholds in seconds."""
    stale_after_s: float = 2.0
    cleanup_after_s: float = 3.0

    def __post_init__(self) -> None:
        if self.stale_after_s <= 0:
            raise ValueError("stale_after_s must be > 0")
        if self.cleanup_after_s < self.stale_after_s:
            raise ValueError("cleanup_after_s must be >= stale_after_s")


class FiducialTrackerRegistry:
    """
    Latest-record store for the grid markers.

    Usage:
        registry = FiducialTrackerRegistry()
        registry.observe(1, MarkerDetection(corners=...), now=12.3)
        snap = registry.snapshot(now=12.4)
        registry.evict(now=16.0)
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()
        self._markers: Dict[GridLabel, FiducialMarker] = {}
        self.ignored_count = 0

    def observe(
        self,
        identity: Any,
        detection: Union[MarkerDetection, Dict[str, Any], None],
        now: float
    ) -> Optional[FiducialMarker]:
        """
        Ingest one decoder record, replacing the prior record for its label.

        Unknown identities and malformed payloads are ignored.

        Returns:
            The stored FiducialMarker, or None when the record was ignored
        """
        label = resolve_identity(identity)
        if isinstance(detection, dict):
            detection = MarkerDetection.from_dict(detection)
        if (
            label is None
            or not isinstance(detection, MarkerDetection)
            or not detection.is_well_formed()
        ):
            self.ignored_count += 1
            return None

        marker = marker_from_detection(label, detection, now)
        self._markers[label] = marker
        return marker

    def age(self, label: GridLabel, now: float) -> Optional[float]:
        marker = self._markers.get(label)
        if marker is None:
            return None
        return float(now) - marker.last_seen

    def snapshot(self, now: float) -> RegistrySnapshot:
        """
        Split the stored markers by age, in grid order.

        Markers older than the cleanup threshold appear in neither list.
        """
        snap = RegistrySnapshot()
        for label in GRID_ORDER:
            marker = self._markers.get(label)
            if marker is None:
                continue
            age = float(now) - marker.last_seen
            if age <= self.config.stale_after_s:
                snap.fresh.append(marker)
            elif age <= self.config.cleanup_after_s:
                snap.stale.append(marker)
        return snap

    def evict(self, now: float) -> List[GridLabel]:
        """
        Remove markers not seen within the cleanup threshold.

        Returns:
            Labels that were evicted
        """
        expired = [
            label for label, marker in self._markers.items()
            if float(now) - marker.last_seen > self.config.cleanup_after_s
        ]
        for label in expired:
            del self._markers[label]
        return sorted(expired, key=GRID_ORDER.index)

    def clear(self) -> None:
        self._markers.clear()

    @property
    def markers(self) -> Dict[GridLabel, FiducialMarker]:
        return dict(self._markers)

    def __len__(self) -> int:
        return len(self._markers)


def distance(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    return math.hypot(p1[0] - p2[0], p1[1] - p2[1])
