"""
Alignment estimation against the target marker layout.

Derives translation, rotation and scale of the live marker set relative to
where the markers should appear in the frame, and gates "aligned" on all of
them being within tolerance with every marker fresh.
"""

import math
from typing import Optional, Dict, Any, List, Tuple, Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np

from .tracker import FiducialMarker, GridLabel, GRID_ORDER, GRID_CELLS, resolve_identity


@dataclass
class AlignmentStatus:
    """Alignment of the live marker set; computed per frame, never stored."""
    is_aligned: bool
    translation: Tuple[float, float]
    rotation: float  # degrees
    scale: float
    missing: List[GridLabel] = field(default_factory=list)
    stale: List[GridLabel] = field(default_factory=list)
    detected_count: int = 0

    @classmethod
    def not_aligned(
        cls,
        missing: Sequence[GridLabel],
        stale: Sequence[GridLabel],
        detected_count: int
    ) -> "AlignmentStatus":
        return cls(
            is_aligned=False,
            translation=(0.0, 0.0),
            rotation=0.0,
            scale=1.0,
            missing=list(missing),
            stale=list(stale),
            detected_count=detected_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_aligned": self.is_aligned,
            "translation": [self.translation[0], self.translation[1]],
            "rotation": self.rotation,
            "scale": self.scale,
            "missing": [label.value for label in self.missing],
            "stale": [label.value for label in self.stale],
            "detected_count": self.detected_count,
        }


@dataclass
class AlignmentConfig:
    """Target layout and tolerances for the alignment gate."""
    frame_width: int = 640
    frame_height: int = 480
    target_marker_px: float = 120.0
    target_positions: Optional[Dict[GridLabel, Tuple[float, float]]] = None
    max_translation_px: float = 50.0
    max_rotation_deg: float = 10.0
    max_scale_error: float = 0.2
    min_fresh_markers: int = 3

    def __post_init__(self) -> None:
        if self.frame_width <= 0 or self.frame_height <= 0:
            raise ValueError("frame size must be > 0")
        if self.target_marker_px <= 0:
            raise ValueError("target_marker_px must be > 0")
        if self.target_positions is not None:
            targets: Dict[GridLabel, Tuple[float, float]] = {}
            for key, pos in self.target_positions.items():
                label = resolve_identity(key)
                if label is None:
                    raise ValueError(f"Unknown target label: {key!r}")
                targets[label] = (float(pos[0]), float(pos[1]))
            self.target_positions = targets

    @property
    def frame_center(self) -> Tuple[float, float]:
        return (self.frame_width / 2.0, self.frame_height / 2.0)


def _normalize_angle(deg: float) -> float:
    """Wrap an angle into (-180, 180]."""
    wrapped = math.fmod(deg, 360.0)
    if wrapped <= -180.0:
        wrapped += 360.0
    elif wrapped > 180.0:
        wrapped -= 360.0
    return wrapped


class AlignmentEstimator:
    """
    Estimate alignment of fresh markers relative to the target layout.

    The aligned flag is a conjunctive gate: translation, rotation and scale
    must each be within tolerance and no marker may be missing or stale.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    def evaluate(
        self,
        fresh: Sequence[FiducialMarker],
        stale: Sequence[FiducialMarker],
        all_known: Iterable[GridLabel] = GRID_ORDER
    ) -> AlignmentStatus:
        """
        Evaluate alignment.

        Args:
            fresh: Markers seen within the freshness window
            stale: Markers seen before but outside the freshness window
            all_known: Every label the layout expects

        Returns:
            AlignmentStatus (translation 0, rotation 0, scale 1 when fewer
            than the minimum number of fresh markers are available)
        """
        known = list(all_known)
        fresh_by_label = {m.label: m for m in fresh}
        stale_labels = [
            m.label for m in stale if m.label not in fresh_by_label
        ]
        missing = [
            label for label in known
            if label not in fresh_by_label and label not in stale_labels
        ]

        if len(fresh_by_label) < self.config.min_fresh_markers:
            return AlignmentStatus.not_aligned(missing, stale_labels, len(fresh_by_label))

        ordered = [fresh_by_label[label] for label in GRID_ORDER if label in fresh_by_label]
        reference = ordered[0]

        translation = self._translation(reference)
        rotation = self._rotation(reference, ordered)
        scale = self._scale(ordered)

        cfg = self.config
        is_aligned = (
            abs(translation[0]) < cfg.max_translation_px
            and abs(translation[1]) < cfg.max_translation_px
            and abs(rotation) < cfg.max_rotation_deg
            and abs(scale - 1.0) < cfg.max_scale_error
            and not missing
            and not stale_labels
        )

        return AlignmentStatus(
            is_aligned=is_aligned,
            translation=translation,
            rotation=rotation,
            scale=scale,
            missing=missing,
            stale=stale_labels,
            detected_count=len(fresh_by_label),
        )

    def _translation(self, reference: FiducialMarker) -> Tuple[float, float]:
        targets = self.config.target_positions
        if targets and reference.label in targets:
            expected = targets[reference.label]
        else:
            expected = self.config.frame_center
        return (
            reference.center[0] - expected[0],
            reference.center[1] - expected[1],
        )

    def _rotation(self, reference: FiducialMarker, ordered: List[FiducialMarker]) -> float:
        if reference.pose is not None:
            edge = reference.corners[1] - reference.corners[0]
            return _normalize_angle(math.degrees(math.atan2(edge[1], edge[0])))

        other = ordered[1] if len(ordered) > 1 else None
        if other is None:
            return 0.0

        observed = np.subtract(other.center, reference.center)
        ref_cell = GRID_CELLS[reference.label]
        other_cell = GRID_CELLS[other.label]
        ideal = (other_cell[0] - ref_cell[0], other_cell[1] - ref_cell[1])

        observed_deg = math.degrees(math.atan2(observed[1], observed[0]))
        ideal_deg = math.degrees(math.atan2(ideal[1], ideal[0]))
        return _normalize_angle(observed_deg - ideal_deg)

    def _scale(self, ordered: List[FiducialMarker]) -> float:
        widths = [m.width for m in ordered if m.width > 0]
        if not widths:
            return 1.0
        return float(np.mean(widths)) / self.config.target_marker_px
