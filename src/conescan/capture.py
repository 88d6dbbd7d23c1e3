"""
Capture session state machine.

Provides functionality to:
- Start a session over an ordered, priority-ranked list of viewpoints
- Gate captures on alignment quality, capture spacing and camera movement
- Freeze marker / alignment / object snapshots into capture slots
- Track completion and a running session confidence
"""

import math
import uuid
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Sequence, Callable
from dataclasses import dataclass, replace

from .tracker import FiducialMarker, distance
from .alignment import AlignmentStatus
from .detector import DetectedObject


MARKER_COUNT = 4


class SessionState(Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CapturePosition:
    """One target viewpoint; replaced by a frozen captured copy when filled."""
    position_id: str
    name: str
    description: str
    priority: int
    captured: bool = False
    timestamp: Optional[float] = None
    markers: Tuple[FiducialMarker, ...] = ()
    alignment: Optional[AlignmentStatus] = None
    objects: Tuple[DetectedObject, ...] = ()
    quality: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.position_id,
            "name": self.name,
            "priority": self.priority,
            "captured": self.captured,
            "timestamp": self.timestamp,
            "quality": self.quality,
            "markers": [m.to_dict() for m in self.markers],
            "alignment": self.alignment.to_dict() if self.alignment else None,
            "objects": [o.to_dict() for o in self.objects],
        }


DEFAULT_POSITIONS: Tuple[CapturePosition, ...] = (
    CapturePosition("center_top", "Center Overview",
                    "Hold camera directly above center of surface", 1),
    CapturePosition("angle_ne", "Northeast Angle",
                    "Move to upper-right, slight angle for depth", 2),
    CapturePosition("angle_nw", "Northwest Angle",
                    "Move to upper-left, slight angle for depth", 2),
    CapturePosition("angle_se", "Southeast Angle",
                    "Move to lower-right, slight angle for depth", 3),
    CapturePosition("angle_sw", "Southwest Angle",
                    "Move to lower-left, slight angle for depth", 3),
    CapturePosition("center_close", "Center Close-up",
                    "Move closer to center for detail capture", 4),
)


@dataclass
class ScanSession:
    """A scanning session. Mutated only by CaptureSessionController."""
    session_id: str
    start_time: float
    positions: List[CapturePosition]
    total_needed: int
    completed: int = 0
    is_complete: bool = False
    last_capture_time: Optional[float] = None
    confidence: float = 0.0
    instructions: str = ""

    @property
    def captured_positions(self) -> List[CapturePosition]:
        return [p for p in self.positions if p.captured]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "start_time": self.start_time,
            "total_needed": self.total_needed,
            "completed": self.completed,
            "is_complete": self.is_complete,
            "last_capture_time": self.last_capture_time,
            "confidence": self.confidence,
            "positions": [p.to_dict() for p in self.positions],
        }


@dataclass
class CaptureConfig:
    min_quality: float = 0.8
    capture_spacing_s: float = 2.0
    movement_threshold_px: float = 50.0

    def __post_init__(self) -> None:
        if not (0.0 <= self.min_quality <= 1.0):
            raise ValueError("min_quality must be in [0, 1]")
        if self.capture_spacing_s < 0 or self.movement_threshold_px < 0:
            raise ValueError("capture_spacing_s and movement_threshold_px must be >= 0")


@dataclass
class CaptureDecision:
    should_capture: bool
    reason: str
    quality: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_capture": self.should_capture,
            "reason": self.reason,
            "quality": self.quality,
        }


def alignment_quality(alignment: AlignmentStatus) -> float:
    """1.0 minus proportional penalties for missing and stale markers, clamped."""
    score = 1.0
    score -= (len(alignment.missing) / MARKER_COUNT) * 0.5
    score -= (len(alignment.stale) / MARKER_COUNT) * 0.3
    return max(0.0, min(1.0, score))


def camera_position(markers: Sequence[FiducialMarker]) -> Optional[Tuple[float, float]]:
    """Centroid of marker centers, used as a proxy for camera position."""
    if not markers:
        return None
    xs = [m.center[0] for m in markers]
    ys = [m.center[1] for m in markers]
    return (sum(xs) / len(xs), sum(ys) / len(ys))


class CaptureSessionController:
    """
    Decide when to freeze observations into capture slots.

    States: NOT_STARTED -> ACTIVE -> COMPLETE.

    Usage:
        controller = CaptureSessionController()
        controller.start(now=t0)
        decision = controller.evaluate(alignment, fresh_markers, objects, now)
        if decision.should_capture:
            controller.capture(alignment, fresh_markers, objects, now)
    """

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self.session: Optional[ScanSession] = None
        self._last_capture_position: Optional[Tuple[float, float]] = None
        self._callbacks: List[Callable[[ScanSession], None]] = []

    @property
    def state(self) -> SessionState:
        if self.session is None:
            return SessionState.NOT_STARTED
        if self.session.is_complete:
            return SessionState.COMPLETE
        return SessionState.ACTIVE

    def start(
        self,
        positions: Optional[Sequence[CapturePosition]] = None,
        now: float = 0.0
    ) -> ScanSession:
        """
        Start a new session, discarding any previous one.

        Args:
            positions: Target viewpoints (defaults to DEFAULT_POSITIONS)
            now: Session start time

        Returns:
            The new ScanSession
        """
        slots = [
            replace(p, captured=False, timestamp=None, markers=(), alignment=None,
                    objects=(), quality=0.0)
            for p in (DEFAULT_POSITIONS if positions is None else positions)
        ]
        self.session = ScanSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            start_time=float(now),
            positions=slots,
            total_needed=len(slots),
        )
        # An empty viewpoint list is complete from the start
        if not slots:
            self.session.is_complete = True
        self.session.instructions = self.next_instruction()
        self._last_capture_position = None
        return self.session

    def evaluate(
        self,
        alignment: AlignmentStatus,
        markers: Sequence[FiducialMarker],
        objects: Sequence[DetectedObject],
        now: float
    ) -> CaptureDecision:
        """
        Check whether conditions allow a capture right now.

        All of quality, spacing and movement must pass.
        """
        session = self.session
        if session is None or session.is_complete:
            return CaptureDecision(False, "No active session")

        quality = alignment_quality(alignment)
        if quality < self.config.min_quality:
            return CaptureDecision(
                False,
                f"Alignment quality {quality * 100:.0f}% < "
                f"{self.config.min_quality * 100:.0f}% required",
                quality,
            )

        if session.last_capture_time is not None:
            elapsed = float(now) - session.last_capture_time
            if elapsed < self.config.capture_spacing_s:
                remaining = math.ceil(self.config.capture_spacing_s - elapsed)
                return CaptureDecision(False, f"Wait {remaining}s before next capture", quality)

        position = camera_position(markers)
        if self._last_capture_position is not None and position is not None:
            moved = distance(position, self._last_capture_position)
            if moved < self.config.movement_threshold_px:
                needed = math.ceil(self.config.movement_threshold_px - moved)
                return CaptureDecision(False, f"Move {needed}px for new angle", quality)

        return CaptureDecision(True, "Conditions met for capture", quality)

    def capture(
        self,
        alignment: AlignmentStatus,
        markers: Sequence[FiducialMarker],
        objects: Sequence[DetectedObject],
        now: float
    ) -> bool:
        """
        Freeze the next open slot (lowest priority number first).

        Returns:
            True if a slot was filled; False when there is no active session
            or every slot is already captured
        """
        session = self.session
        if session is None or session.is_complete:
            return False

        open_slots = [i for i, p in enumerate(session.positions) if not p.captured]
        if not open_slots:
            return False
        index = min(open_slots, key=lambda i: session.positions[i].priority)

        session.positions[index] = replace(
            session.positions[index],
            captured=True,
            timestamp=float(now),
            markers=tuple(replace(m) for m in markers),
            alignment=replace(alignment, missing=list(alignment.missing), stale=list(alignment.stale)),
            objects=tuple(o.copy() for o in objects),
            quality=alignment_quality(alignment),
        )

        session.completed += 1
        session.last_capture_time = float(now)
        session.confidence = self._session_confidence()
        if session.completed >= session.total_needed:
            session.is_complete = True
        session.instructions = self.next_instruction()

        position = camera_position(markers)
        if position is not None:
            self._last_capture_position = position

        for callback in self._callbacks:
            callback(session)

        return True

    def _session_confidence(self) -> float:
        session = self.session
        if session is None or session.total_needed == 0:
            return 0.0
        captured = session.captured_positions
        if not captured:
            return 0.0
        avg_quality = sum(p.quality for p in captured) / len(captured)
        return avg_quality * (len(captured) / session.total_needed)

    def next_instruction(self) -> str:
        """Guidance for the next viewpoint still needed."""
        if self.session is None:
            return "Start a scan session"
        open_slots = [p for p in self.session.positions if not p.captured]
        if not open_slots:
            return "All positions captured"
        nxt = min(open_slots, key=lambda p: p.priority)
        return f"{nxt.name}: {nxt.description}"

    def on_capture(self, callback: Callable[[ScanSession], None]) -> None:
        self._callbacks.append(callback)

    def update_config(self, **kwargs: Any) -> None:
        self.config = replace(self.config, **kwargs)

    def reset(self) -> None:
        self.session = None
        self._last_capture_position = None
