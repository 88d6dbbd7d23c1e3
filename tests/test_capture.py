from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from conescan.alignment import AlignmentStatus  # noqa: E402
from conescan.capture import (  # noqa: E402
    CaptureConfig,
    CapturePosition,
    CaptureSessionController,
    DEFAULT_POSITIONS,
    SessionState,
    alignment_quality,
)
from conescan.detector import DetectedObject  # noqa: E402
from conescan.tracker import GridLabel, MarkerDetection, marker_from_detection  # noqa: E402


def _aligned(missing=(), stale=()) -> AlignmentStatus:
    return AlignmentStatus(
        is_aligned=not missing and not stale,
        translation=(0.0, 0.0),
        rotation=0.0,
        scale=1.0,
        missing=list(missing),
        stale=list(stale),
        detected_count=4 - len(missing) - len(stale),
    )


def _markers(shift: float = 0.0):
    layout = [(100.0, 100.0), (300.0, 100.0), (300.0, 300.0), (100.0, 300.0)]
    markers = []
    for label, (cx, cy) in zip(
        [GridLabel.TAG_01, GridLabel.TAG_02, GridLabel.TAG_03, GridLabel.TAG_04], layout
    ):
        x = cx + shift
        corners = np.array([[x - 10, cy - 10], [x + 10, cy - 10], [x + 10, cy + 10], [x - 10, cy + 10]])
        markers.append(marker_from_detection(label, MarkerDetection(corners=corners), 0.0))
    return markers


def _objects():
    return [
        DetectedObject(1, (150.0, 150.0), 12.0, 0.9, 0.0, surface_position=(50.0, 60.0)),
        DetectedObject(2, (250.0, 220.0), 12.0, 0.8, 0.0, surface_position=(120.0, 200.0)),
    ]


def _positions(n: int):
    return [CapturePosition(f"p{i}", f"Pos {i}", f"Go to {i}", priority=i) for i in range(1, n + 1)]


def _run_captures(controller: CaptureSessionController, n: int, start: float = 0.0) -> None:
    for i in range(n):
        assert controller.capture(_aligned(), _markers(shift=60.0 * i), _objects(), now=start + 3.0 * i)


def test_alignment_quality_penalties() -> None:
    assert alignment_quality(_aligned()) == pytest.approx(1.0)
    assert alignment_quality(_aligned(missing=[GridLabel.TAG_04])) == pytest.approx(0.875)
    assert alignment_quality(_aligned(stale=[GridLabel.TAG_04])) == pytest.approx(0.925)
    everything_missing = _aligned(missing=list(GridLabel))
    assert alignment_quality(everything_missing) == pytest.approx(0.5)


def test_session_lifecycle_completes_after_every_slot() -> None:
    controller = CaptureSessionController()
    assert controller.state is SessionState.NOT_STARTED

    session = controller.start(_positions(3), now=10.0)
    assert controller.state is SessionState.ACTIVE
    assert session.total_needed == 3
    assert session.session_id.startswith("session_")

    _run_captures(controller, 3, start=10.0)

    assert session.is_complete
    assert session.completed == 3
    assert controller.state is SessionState.COMPLETE
    assert all(p.captured for p in session.positions)

    # Further captures are no-ops
    assert controller.capture(_aligned(), _markers(500.0), _objects(), now=100.0) is False
    assert session.completed == 3
    assert controller.evaluate(_aligned(), _markers(500.0), _objects(), now=100.0).reason == (
        "No active session"
    )


def test_default_positions_are_used_and_not_mutated() -> None:
    controller = CaptureSessionController()
    session = controller.start(now=0.0)
    assert [p.position_id for p in session.positions] == [p.position_id for p in DEFAULT_POSITIONS]

    controller.capture(_aligned(), _markers(), _objects(), now=0.0)
    assert session.positions[0].captured
    assert not any(p.captured for p in DEFAULT_POSITIONS)


def test_empty_position_list_is_complete_immediately() -> None:
    controller = CaptureSessionController()
    session = controller.start([], now=0.0)
    assert session.is_complete
    assert controller.capture(_aligned(), _markers(), _objects(), now=1.0) is False


def test_capture_fills_lowest_priority_first() -> None:
    positions = [
        CapturePosition("late", "Late", "", priority=3),
        CapturePosition("first", "First", "", priority=1),
        CapturePosition("tie_a", "Tie A", "", priority=2),
        CapturePosition("tie_b", "Tie B", "", priority=2),
    ]
    controller = CaptureSessionController()
    session = controller.start(positions, now=0.0)

    order = []
    for i in range(4):
        controller.capture(_aligned(), _markers(60.0 * i), _objects(), now=3.0 * i)
        newest = max(
            (p for p in session.positions if p.captured), key=lambda p: p.timestamp
        )
        order.append(newest.position_id)

    assert order == ["first", "tie_a", "tie_b", "late"]


def test_capture_freezes_snapshots() -> None:
    controller = CaptureSessionController()
    session = controller.start(_positions(2), now=0.0)
    markers = _markers()
    objects = _objects()
    alignment = _aligned()

    controller.capture(alignment, markers, objects, now=1.0)
    objects[0].confidence = 0.1
    alignment.missing.append(GridLabel.TAG_01)

    slot = session.positions[0]
    assert slot.timestamp == 1.0
    assert slot.quality == pytest.approx(1.0)
    assert slot.objects[0].confidence == pytest.approx(0.9)
    assert slot.alignment.missing == []
    assert len(slot.markers) == 4
    with pytest.raises(AttributeError):
        slot.quality = 0.0  # type: ignore[misc]


def test_quality_gate() -> None:
    controller = CaptureSessionController()
    controller.start(_positions(2), now=0.0)

    decision = controller.evaluate(
        _aligned(missing=[GridLabel.TAG_03, GridLabel.TAG_04]), _markers()[:2], [], now=0.0
    )
    assert decision.should_capture is False
    assert decision.reason == "Alignment quality 75% < 80% required"
    assert decision.quality == pytest.approx(0.75)

    decision = controller.evaluate(_aligned(), _markers(), [], now=0.0)
    assert decision.should_capture is True
    assert decision.reason == "Conditions met for capture"


def test_spacing_and_movement_gates() -> None:
    controller = CaptureSessionController(CaptureConfig(capture_spacing_s=2.0, movement_threshold_px=50.0))
    controller.start(_positions(3), now=0.0)
    controller.capture(_aligned(), _markers(), _objects(), now=0.0)

    too_soon = controller.evaluate(_aligned(), _markers(100.0), [], now=1.2)
    assert too_soon.should_capture is False
    assert too_soon.reason == "Wait 1s before next capture"

    not_moved = controller.evaluate(_aligned(), _markers(20.0), [], now=2.5)
    assert not_moved.should_capture is False
    assert not_moved.reason == "Move 30px for new angle"

    ok = controller.evaluate(_aligned(), _markers(60.0), [], now=2.5)
    assert ok.should_capture is True


def test_session_confidence_and_instructions() -> None:
    controller = CaptureSessionController()
    assert controller.next_instruction() == "Start a scan session"

    session = controller.start(_positions(4), now=0.0)
    assert session.instructions == "Pos 1: Go to 1"

    controller.capture(_aligned(), _markers(), _objects(), now=0.0)
    controller.capture(_aligned(stale=[GridLabel.TAG_02]), _markers(60.0), _objects(), now=3.0)

    # mean(1.0, 0.925) * 2/4
    assert session.confidence == pytest.approx(0.48125)
    assert session.instructions == "Pos 3: Go to 3"

    _run_captures(controller, 2, start=10.0)
    assert session.instructions == "All positions captured"


def test_on_capture_callback_and_reset() -> None:
    controller = CaptureSessionController()
    seen = []
    controller.on_capture(lambda s: seen.append(s.completed))
    controller.start(_positions(2), now=0.0)
    _run_captures(controller, 2)

    assert seen == [1, 2]

    controller.reset()
    assert controller.state is SessionState.NOT_STARTED
    assert controller.capture(_aligned(), _markers(), _objects(), now=20.0) is False


def test_config_validation_and_update() -> None:
    with pytest.raises(ValueError):
        CaptureConfig(min_quality=1.2)
    controller = CaptureSessionController()
    controller.update_config(min_quality=0.5)
    controller.start(_positions(1), now=0.0)
    decision = controller.evaluate(
        _aligned(missing=[GridLabel.TAG_03, GridLabel.TAG_04]), [], [], now=0.0
    )
    assert decision.should_capture is True
