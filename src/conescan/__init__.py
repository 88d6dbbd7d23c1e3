"""
Fiducial-anchored surface measurement pipeline for cone scanning.

Modules:
- tracker: Fiducial tracker registry (grid labels, freshness, eviction)
- alignment: Alignment estimation against the target marker layout
- homography: Camera -> surface transform (DLT via SVD)
- detector: Cone detection and tracking
- capture: Capture session state machine
- consensus: Cross-capture clustering and quality metrics
- config: Pipeline configuration
- pipeline: Complete per-frame / per-session pipeline
- logger: Session logging and recording
- replay: Log file playback and reprocessing
- metrics: Performance monitoring and metrics collection
- sim: Synthetic closed-loop scan simulation
"""

from .tracker import (
    GridLabel, GRID_ORDER, MarkerPose, MarkerDetection, FiducialMarker,
    RegistrySnapshot, TrackerConfig, FiducialTrackerRegistry, resolve_identity
)
from .alignment import AlignmentStatus, AlignmentConfig, AlignmentEstimator
from .homography import (
    SurfaceConfig, CoordinateTransform, HomographyEstimator, reprojection_error
)
from .detector import DetectedObject, DetectorParams, ObjectDetector
from .capture import (
    SessionState, CapturePosition, ScanSession, CaptureConfig,
    CaptureDecision, CaptureSessionController, DEFAULT_POSITIONS
)
from .consensus import (
    ConsensusConfig, ConsensusProcessor, ConsensusResult, ClusteredObservation,
    QualityMetrics, Observation, SessionIncompleteError
)
from .config import PipelineConfig, load_config
from .pipeline import ScanPipeline, FrameResult
from .logger import SessionLogger, list_log_files
from .replay import SessionReplay, validate_log_integrity, reprocess_log, FrameEntry, EventEntry
from .metrics import MetricsCollector, MetricsExporter

__all__ = [
    # Tracker
    "GridLabel",
    "GRID_ORDER",
    "MarkerPose",
    "MarkerDetection",
    "FiducialMarker",
    "RegistrySnapshot",
    "TrackerConfig",
    "FiducialTrackerRegistry",
    "resolve_identity",
    # Alignment
    "AlignmentStatus",
    "AlignmentConfig",
    "AlignmentEstimator",
    # Homography
    "SurfaceConfig",
    "CoordinateTransform",
    "HomographyEstimator",
    "reprojection_error",
    # Detector
    "DetectedObject",
    "DetectorParams",
    "ObjectDetector",
    # Capture
    "SessionState",
    "CapturePosition",
    "ScanSession",
    "CaptureConfig",
    "CaptureDecision",
    "CaptureSessionController",
    "DEFAULT_POSITIONS",
    # Consensus
    "ConsensusConfig",
    "ConsensusProcessor",
    "ConsensusResult",
    "ClusteredObservation",
    "QualityMetrics",
    "Observation",
    "SessionIncompleteError",
    # Config / pipeline
    "PipelineConfig",
    "load_config",
    "ScanPipeline",
    "FrameResult",
    # Logger / replay / metrics
    "SessionLogger",
    "list_log_files",
    "SessionReplay",
    "validate_log_integrity",
    "reprocess_log",
    "FrameEntry",
    "EventEntry",
    "MetricsCollector",
    "MetricsExporter",
]
