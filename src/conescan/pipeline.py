"""
Scan pipeline that integrates all components.

Provides the per-frame processing chain:
- Marker records -> Tracker registry -> Alignment -> Homography -> Cone detection -> Capture gate

and the per-session step:
- Completed session -> Consensus
"""

import time
import threading
from typing import Optional, Dict, Any, List, Callable, Iterable, Iterator, Tuple, Sequence
from dataclasses import dataclass, field

import numpy as np

from .config import PipelineConfig
from .tracker import FiducialTrackerRegistry, FiducialMarker, RegistrySnapshot
from .alignment import AlignmentEstimator, AlignmentStatus
from .homography import HomographyEstimator, CoordinateTransform
from .detector import ObjectDetector, DetectedObject
from .capture import (
    CaptureSessionController, CaptureDecision, CapturePosition,
    ScanSession, SessionState
)
from .consensus import ConsensusProcessor, ConsensusResult, SessionIncompleteError
from .metrics import MetricsCollector
from .logger import SessionLogger


@dataclass
class FrameResult:
    """Everything the driver loop needs after one frame."""
    frame_index: int
    timestamp: float
    observed: List[FiducialMarker]
    snapshot: RegistrySnapshot
    alignment: AlignmentStatus
    transform: CoordinateTransform
    transform_current: bool
    objects: List[DetectedObject] = field(default_factory=list)
    decision: Optional[CaptureDecision] = None
    captured: bool = False
    ignored: int = 0
    processing_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_index": self.frame_index,
            "timestamp": self.timestamp,
            "detections": [m.to_dict() for m in self.observed],
            "fresh": [label.value for label in self.snapshot.fresh_labels],
            "stale": [label.value for label in self.snapshot.stale_labels],
            "alignment": self.alignment.to_dict(),
            "transform": self.transform.to_dict(),
            "transform_current": self.transform_current,
            "objects": [o.to_dict() for o in self.objects],
            "decision": self.decision.to_dict() if self.decision else None,
            "captured": self.captured,
            "ignored": self.ignored,
            "processing_ms": round(self.processing_s * 1000, 3),
        }


def iter_marker_records(detections: Iterable[Any]) -> Iterator[Tuple[Any, Any]]:
    """
    Normalize decoder output to (identity, payload) pairs.

    Accepts dict records carrying "id" or "identity" next to "corners"/"pose",
    or (identity, MarkerDetection | dict) pairs. Anything else yields
    (None, None) so the registry counts it as ignored.
    """
    for record in detections:
        if isinstance(record, dict):
            yield record.get("id", record.get("identity")), record
        elif isinstance(record, (tuple, list)) and len(record) == 2:
            yield record[0], record[1]
        else:
            yield None, None


class ScanPipeline:
    """
    Complete scan pipeline from decoder output and frames to cone positions.

    Each pipeline owns its registry, estimators, detector and controller.

    Usage:
        pipeline = ScanPipeline(PipelineConfig())
        pipeline.start_session()
        while not pipeline.session.is_complete:
            result = pipeline.process_frame(marker_records, frame, now)
        consensus = pipeline.process_session()
        pipeline.stop()
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        """
        Initialize the scan pipeline.

        Args:
            config: Pipeline configuration (defaults for every component if None)
        """
        self.config = config or PipelineConfig()
        cfg = self.config

        self.registry = FiducialTrackerRegistry(cfg.tracker)
        self.alignment = AlignmentEstimator(cfg.alignment)
        self.homography = HomographyEstimator(cfg.surface)
        self.detector = ObjectDetector(cfg.detector)
        self.controller = CaptureSessionController(cfg.capture)
        self.consensus = ConsensusProcessor(cfg.consensus)
        self.metrics = MetricsCollector(
            history_size=cfg.metrics_history,
            frame_budget_s=cfg.frame_budget_s,
        )

        self.logger: Optional[SessionLogger] = None
        if cfg.enable_logging:
            self.logger = SessionLogger(log_dir=cfg.log_dir)

        self._frame_lock = threading.Lock()
        self._frame_callback: Optional[Callable[[FrameResult], None]] = None
        self._last_result: Optional[FrameResult] = None

        self.frames_processed = 0
        self.frames_dropped = 0
        self.start_time: Optional[float] = None

        self.controller.on_capture(self._on_capture)

    @property
    def session(self) -> Optional[ScanSession]:
        return self.controller.session

    def set_frame_callback(self, callback: Callable[[FrameResult], None]) -> None:
        """Set callback invoked with every processed FrameResult."""
        self._frame_callback = callback

    def on_capture(self, callback: Callable[[ScanSession], None]) -> None:
        self.controller.on_capture(callback)

    def start_session(
        self,
        positions: Optional[Sequence[CapturePosition]] = None,
        now: Optional[float] = None,
        session_name: Optional[str] = None
    ) -> ScanSession:
        """
        Start a new scan session.

        Tracked cones from a previous session are discarded; marker records
        and the current transform are kept.
        """
        now = time.time() if now is None else now
        self.detector.clear()
        session = self.controller.start(positions=positions, now=now)
        self.start_time = time.time()

        if self.logger:
            if self.logger.is_recording:
                self.logger.stop_recording()
            self.logger.start_recording(
                session.session_id,
                config=self.config.to_dict(),
                session_name=session_name,
            )
        return session

    def process_frame(
        self,
        detections: Iterable[Any],
        frame: Optional[np.ndarray] = None,
        now: Optional[float] = None
    ) -> Optional[FrameResult]:
        """
        Run one frame through the chain.

        Args:
            detections: Decoder output for this frame
            frame: Optional image for cone detection
            now: Frame time in seconds (default: time.time())

        Returns:
            FrameResult, or None when the frame was dropped because another
            frame was still being processed
        """
        if not self._frame_lock.acquire(blocking=False):
            self.frames_dropped += 1
            self.metrics.record_dropped()
            return None

        try:
            return self._process_locked(detections, frame, time.time() if now is None else now)
        finally:
            self._frame_lock.release()

    def _process_locked(
        self,
        detections: Iterable[Any],
        frame: Optional[np.ndarray],
        now: float
    ) -> FrameResult:
        started = time.perf_counter()

        ignored_before = self.registry.ignored_count
        observed: List[FiducialMarker] = []
        for identity, payload in iter_marker_records(detections):
            marker = self.registry.observe(identity, payload, now)
            if marker is not None:
                observed.append(marker)
        ignored = self.registry.ignored_count - ignored_before
        if ignored:
            self.metrics.record_ignored(ignored)

        self.registry.evict(now)
        snapshot = self.registry.snapshot(now)
        alignment = self.alignment.evaluate(snapshot.fresh, snapshot.stale)
        transform = self.homography.update(snapshot.fresh, now)

        if frame is not None:
            objects = self.detector.detect(frame, now, transform)
        else:
            self.detector.evict_stale(now)
            objects = []

        decision: Optional[CaptureDecision] = None
        captured = False
        if self.controller.state == SessionState.ACTIVE:
            decision = self.controller.evaluate(alignment, snapshot.fresh, objects, now)
            if decision.should_capture and self.config.auto_capture:
                captured = self.controller.capture(alignment, snapshot.fresh, objects, now)
            elif not decision.should_capture:
                self.metrics.record_rejected_evaluation()

        result = FrameResult(
            frame_index=self.frames_processed,
            timestamp=now,
            observed=observed,
            snapshot=snapshot,
            alignment=alignment,
            transform=transform,
            transform_current=self.homography.is_current,
            objects=objects,
            decision=decision,
            captured=captured,
            ignored=ignored,
        )
        result.processing_s = time.perf_counter() - started

        self.metrics.record_frame(
            processing_s=result.processing_s,
            fresh_markers=len(snapshot.fresh),
            object_count=len(objects),
            transform_valid=transform.is_valid,
            received_at=now,
        )
        if self.logger and self.logger.is_recording:
            self.logger.log_frame(result)

        self.frames_processed += 1
        self._last_result = result

        if self._frame_callback:
            self._frame_callback(result)

        return result

    def capture_now(self) -> bool:
        """
        Capture using the latest frame, bypassing the gate.

        Returns:
            True if a slot was filled
        """
        last = self._last_result
        if last is None:
            return False
        return self.controller.capture(
            last.alignment, last.snapshot.fresh, last.objects, last.timestamp
        )

    def _on_capture(self, session: ScanSession) -> None:
        captured = [p for p in session.positions if p.captured]
        latest = max(captured, key=lambda p: p.timestamp or 0.0)
        self.metrics.record_capture(latest.quality)

        if self.logger and self.logger.is_recording:
            self.logger.log_capture(session, latest)
            if session.is_complete:
                self.logger.log_session_complete(session)

    def process_session(self) -> ConsensusResult:
        """
        Run consensus on the current session.

        Raises:
            SessionIncompleteError: If no session exists or it is not complete
        """
        session = self.controller.session
        if session is None:
            raise SessionIncompleteError("No session started")

        result = self.consensus.process(session)

        if self.logger and self.logger.is_recording:
            self.logger.log_consensus(session.session_id, result)
        return result

    def stop(self) -> Dict[str, Any]:
        """Stop recording and return run statistics."""
        log_metadata: Dict[str, Any] = {}
        if self.logger:
            log_metadata = self.logger.stop_recording()

        return {
            "frames_processed": self.frames_processed,
            "frames_dropped": self.frames_dropped,
            "captures": self.session.completed if self.session else 0,
            "duration_seconds": time.time() - self.start_time if self.start_time else 0,
            "log_metadata": log_metadata,
        }

    def reset(self) -> None:
        """Forget all markers, cones, transform and session state."""
        self.registry.clear()
        self.homography.reset()
        self.detector.clear()
        self.controller.reset()
        self._last_result = None

    def get_status(self) -> Dict[str, Any]:
        """Get current pipeline status."""
        session = self.session
        return {
            "state": self.controller.state.value,
            "session": {
                "id": session.session_id,
                "completed": session.completed,
                "total_needed": session.total_needed,
                "confidence": session.confidence,
                "instructions": session.instructions,
            } if session else None,
            "frames_processed": self.frames_processed,
            "frames_dropped": self.frames_dropped,
            "markers_tracked": len(self.registry),
            "objects_tracked": len(self.detector.tracked_objects),
            "transform_valid": self.homography.current.is_valid,
            "transform_current": self.homography.is_current,
            "recording": bool(self.logger and self.logger.is_recording),
            "metrics": self.metrics.get_summary(),
        }
