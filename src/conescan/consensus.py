"""
Consensus processing over a completed capture session.

Provides functionality to:
- Collect every surface-positioned cone observation across captured slots
- Greedily cluster observations by proximity in millimeter space
- Compute confidence-weighted positions, positional variance and confidence
- Score per-image quality and overall session confidence
"""

import time
from typing import Optional, Dict, Any, List, Tuple, Sequence
from dataclasses import dataclass, field, replace

import numpy as np
from scipy.spatial.distance import cdist

from .capture import ScanSession, CapturePosition, MARKER_COUNT
from .detector import DetectedObject


class SessionIncompleteError(RuntimeError):
    """Raised when consensus is requested for a session that is not complete."""


@dataclass
class ConsensusConfig:
    clustering_radius_mm: float = 15.0
    min_consensus: int = 2
    max_consensus_bonus: float = 0.3
    bonus_divisor: float = 4.0
    max_variance_penalty: float = 0.2
    variance_penalty_scale_mm: float = 50.0
    spatial_accuracy_scale_mm: float = 30.0

    def __post_init__(self) -> None:
        if self.clustering_radius_mm <= 0:
            raise ValueError("clustering_radius_mm must be > 0")
        if self.min_consensus < 1:
            raise ValueError("min_consensus must be >= 1")
        if (
            self.bonus_divisor <= 0
            or self.variance_penalty_scale_mm <= 0
            or self.spatial_accuracy_scale_mm <= 0
        ):
            raise ValueError("scale parameters must be > 0")


@dataclass
class Observation:
    """One cone observation tagged with the capture it came from."""
    capture_index: int
    position_id: str
    obj: DetectedObject

    @property
    def surface_position(self) -> Tuple[float, float]:
        return self.obj.surface_position  # type: ignore[return-value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capture_index": self.capture_index,
            "position_id": self.position_id,
            "object": self.obj.to_dict(),
        }


@dataclass
class ClusteredObservation:
    cluster_id: int
    position: Tuple[float, float]  # mm
    confidence: float
    supporters: List[Observation]
    variance: float  # mean distance of supporters from position, mm

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.cluster_id,
            "position": [self.position[0], self.position[1]],
            "confidence": self.confidence,
            "variance": self.variance,
            "supporters": [s.to_dict() for s in self.supporters],
        }


@dataclass
class ImageQuality:
    position_id: str
    quality: float
    object_count: int


@dataclass
class QualityMetrics:
    overall_quality: float = 0.0
    spatial_accuracy: float = 0.0
    detection_reliability: float = 0.0
    image_quality_average: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_quality": self.overall_quality,
            "spatial_accuracy": self.spatial_accuracy,
            "detection_reliability": self.detection_reliability,
            "image_quality_average": self.image_quality_average,
        }


@dataclass
class ConsensusResult:
    clusters: List[ClusteredObservation] = field(default_factory=list)
    outliers: List[Observation] = field(default_factory=list)
    confidence: float = 0.0
    metrics: QualityMetrics = field(default_factory=QualityMetrics)
    images: List[ImageQuality] = field(default_factory=list)
    total_observations: int = 0
    source_images: int = 0
    processing_time_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "outliers": [o.to_dict() for o in self.outliers],
            "confidence": self.confidence,
            "metrics": self.metrics.to_dict(),
            "images": [
                {"id": i.position_id, "quality": i.quality, "objects": i.object_count}
                for i in self.images
            ],
            "total_observations": self.total_observations,
            "source_images": self.source_images,
            "processing_time_s": self.processing_time_s,
        }


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConsensusProcessor:
    """
    Reconcile observations gathered across a session's captures.

    Single deterministic greedy pass. Observations are ordered by capture
    then by object order within the capture; an observation within range
    of two seeds joins the earlier-seeded cluster.

    Usage:
        processor = ConsensusProcessor()
        result = processor.process(session)
        for cluster in result.clusters:
            print(cluster.position, cluster.confidence)
    """

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()

    def process(self, session: ScanSession) -> ConsensusResult:
        """
        Run consensus on a completed session.

        Raises:
            SessionIncompleteError: If the session is not complete
        """
        if not session.is_complete:
            raise SessionIncompleteError(
                f"Session {session.session_id} is incomplete "
                f"({session.completed}/{session.total_needed} captures)"
            )

        start = time.perf_counter()
        captured = session.captured_positions

        images = [self.image_quality(p) for p in captured]
        observations = collect_observations(captured)
        clusters, outliers = self.cluster(observations)

        metrics = self.quality_metrics(images, clusters)
        return ConsensusResult(
            clusters=clusters,
            outliers=outliers,
            confidence=metrics.overall_quality,
            metrics=metrics,
            images=images,
            total_observations=len(observations),
            source_images=len(captured),
            processing_time_s=time.perf_counter() - start,
        )

    def cluster(
        self,
        observations: Sequence[Observation]
    ) -> Tuple[List[ClusteredObservation], List[Observation]]:
        """
        Greedy proximity clustering.

        Returns:
            (clusters, outliers)
        """
        n = len(observations)
        if n == 0:
            return [], []

        points = np.array([o.surface_position for o in observations], dtype=np.float64)
        distances = cdist(points, points)
        radius = self.config.clustering_radius_mm

        used = np.zeros(n, dtype=bool)
        clusters: List[ClusteredObservation] = []

        for seed in range(n):
            if used[seed]:
                continue
            members = np.nonzero((~used) & (distances[seed] <= radius))[0]
            # A seed below the consensus minimum stays available to later seeds
            if len(members) < self.config.min_consensus:
                continue

            used[members] = True
            supporters = [observations[i] for i in members]
            clusters.append(self._build_cluster(len(clusters) + 1, supporters))

        outliers = [observations[i] for i in range(n) if not used[i]]
        return clusters, outliers

    def _build_cluster(self, cluster_id: int, supporters: List[Observation]) -> ClusteredObservation:
        points = np.array([s.surface_position for s in supporters], dtype=np.float64)
        weights = np.array([s.obj.confidence for s in supporters], dtype=np.float64)

        if weights.sum() > 0:
            position = (points * weights[:, None]).sum(axis=0) / weights.sum()
        else:
            position = points.mean(axis=0)

        variance = 0.0
        if len(points) > 1:
            variance = float(np.mean(np.linalg.norm(points - position, axis=1)))

        cfg = self.config
        bonus = min(len(supporters) / cfg.bonus_divisor, cfg.max_consensus_bonus)
        penalty = min(variance / cfg.variance_penalty_scale_mm, cfg.max_variance_penalty)
        confidence = _clamp01(float(weights.mean()) + bonus - penalty)

        return ClusteredObservation(
            cluster_id=cluster_id,
            position=(float(position[0]), float(position[1])),
            confidence=confidence,
            supporters=supporters,
            variance=variance,
        )

    def image_quality(self, position: CapturePosition) -> ImageQuality:
        """Quality of one captured image from its alignment, markers and objects."""
        score = 1.0
        if position.alignment is None or not position.alignment.is_aligned:
            score *= 0.5
        score -= max(0, MARKER_COUNT - len(position.markers)) * 0.1
        score += min(len(position.objects) * 0.05, 0.2)
        return ImageQuality(
            position_id=position.position_id,
            quality=_clamp01(score),
            object_count=len(position.objects),
        )

    def spatial_accuracy(self, clusters: Sequence[ClusteredObservation]) -> float:
        if not clusters:
            return 0.0
        avg_variance = sum(c.variance for c in clusters) / len(clusters)
        return max(0.0, 1.0 - avg_variance / self.config.spatial_accuracy_scale_mm)

    def quality_metrics(
        self,
        images: Sequence[ImageQuality],
        clusters: Sequence[ClusteredObservation]
    ) -> QualityMetrics:
        avg_image = sum(i.quality for i in images) / len(images) if images else 0.0
        reliability = sum(c.confidence for c in clusters) / len(clusters) if clusters else 0.0
        accuracy = self.spatial_accuracy(clusters)
        return QualityMetrics(
            overall_quality=(avg_image + reliability + accuracy) / 3.0,
            spatial_accuracy=accuracy,
            detection_reliability=reliability,
            image_quality_average=avg_image,
        )

    def update_config(self, **kwargs: Any) -> None:
        self.config = replace(self.config, **kwargs)


def collect_observations(captured: Sequence[CapturePosition]) -> List[Observation]:
    """Surface-positioned observations in capture order, then object order."""
    observations: List[Observation] = []
    for index, position in enumerate(captured):
        for obj in position.objects:
            if obj.surface_position is None:
                continue
            observations.append(Observation(index, position.position_id, obj))
    return observations
