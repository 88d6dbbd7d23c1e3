from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from conescan.tracker import (  # noqa: E402
    FiducialTrackerRegistry,
    GridLabel,
    MarkerDetection,
    TrackerConfig,
    resolve_identity,
)


def _square(cx: float, cy: float, size: float = 40.0) -> np.ndarray:
    h = size / 2.0
    return np.array(
        [[cx - h, cy - h], [cx + h, cy - h], [cx + h, cy + h], [cx - h, cy + h]],
        dtype=np.float64,
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        (1, GridLabel.TAG_01),
        ("2", GridLabel.TAG_02),
        ("TAG_03", GridLabel.TAG_03),
        ("tag_04", GridLabel.TAG_04),
        (GridLabel.TAG_01, GridLabel.TAG_01),
        (np.int64(3), GridLabel.TAG_03),
        (5, None),
        ("hello", None),
        (True, None),
        (None, None),
        (2.0, None),
    ],
)
def test_resolve_identity(raw, expected) -> None:
    assert resolve_identity(raw) is expected


def test_observe_derives_center_and_extent() -> None:
    registry = FiducialTrackerRegistry()
    marker = registry.observe(1, MarkerDetection(corners=_square(100.0, 50.0, 40.0)), now=1.0)

    assert marker is not None
    assert marker.label is GridLabel.TAG_01
    assert marker.center == pytest.approx((100.0, 50.0))
    assert marker.width == pytest.approx(40.0)
    assert marker.height == pytest.approx(40.0)
    assert marker.last_seen == 1.0


def test_observe_replaces_previous_record() -> None:
    registry = FiducialTrackerRegistry()
    registry.observe(2, MarkerDetection(corners=_square(10.0, 10.0)), now=1.0)
    registry.observe(2, MarkerDetection(corners=_square(30.0, 40.0)), now=2.0)

    assert len(registry) == 1
    marker = registry.markers[GridLabel.TAG_02]
    assert marker.center == pytest.approx((30.0, 40.0))
    assert marker.last_seen == 2.0


def test_unknown_identity_and_malformed_payload_are_ignored() -> None:
    registry = FiducialTrackerRegistry()

    assert registry.observe(9, MarkerDetection(corners=_square(0.0, 0.0)), now=0.0) is None
    assert registry.observe(1, MarkerDetection(corners=np.zeros((3, 2))), now=0.0) is None
    bad = _square(0.0, 0.0)
    bad[0, 0] = np.nan
    assert registry.observe(1, MarkerDetection(corners=bad), now=0.0) is None
    assert registry.observe(1, {"corners": [[0, 0], [1, 0]]}, now=0.0) is None
    assert registry.observe(1, None, now=0.0) is None
    assert registry.observe(1, [[0, 0], [10, 0], [10, 10], [0, 10]], now=0.0) is None
    assert registry.observe(1, "garbage", now=0.0) is None
    assert registry.observe(1, MarkerDetection(corners=[["a", "b"]] * 4), now=0.0) is None
    assert registry.observe(1, MarkerDetection(corners=[[0, 0], [1]]), now=0.0) is None

    assert len(registry) == 0
    assert registry.ignored_count == 9


def test_observe_accepts_decoder_dicts() -> None:
    registry = FiducialTrackerRegistry()
    record = {
        "corners": [{"x": 0, "y": 0}, {"x": 10, "y": 0}, {"x": 10, "y": 10}, {"x": 0, "y": 10}],
        "pose": {"R": np.eye(3).tolist(), "t": [0, 0, 1], "e": 0.1},
    }
    marker = registry.observe("3", record, now=0.5)

    assert marker is not None
    assert marker.center == pytest.approx((5.0, 5.0))
    assert marker.pose is not None
    assert marker.pose.error == pytest.approx(0.1)


def test_snapshot_splits_fresh_and_stale_in_grid_order() -> None:
    registry = FiducialTrackerRegistry(TrackerConfig(stale_after_s=2.0, cleanup_after_s=3.0))
    registry.observe(4, MarkerDetection(corners=_square(0, 100)), now=10.0)
    registry.observe(1, MarkerDetection(corners=_square(0, 0)), now=10.0)
    registry.observe(3, MarkerDetection(corners=_square(100, 100)), now=7.5)
    registry.observe(2, MarkerDetection(corners=_square(100, 0)), now=6.0)

    snap = registry.snapshot(now=10.0)
    assert snap.fresh_labels == [GridLabel.TAG_01, GridLabel.TAG_04]
    assert snap.stale_labels == [GridLabel.TAG_03]
    # Past cleanup: in neither list, though still stored until evicted
    assert GridLabel.TAG_02 not in snap.fresh_labels + snap.stale_labels
    assert GridLabel.TAG_02 in registry.markers


def test_freshness_boundaries() -> None:
    registry = FiducialTrackerRegistry()
    registry.observe(1, MarkerDetection(corners=_square(0, 0)), now=0.0)

    assert registry.snapshot(now=2.0).fresh_labels == [GridLabel.TAG_01]
    assert registry.snapshot(now=2.01).stale_labels == [GridLabel.TAG_01]
    assert registry.snapshot(now=3.0).stale_labels == [GridLabel.TAG_01]
    snap = registry.snapshot(now=3.01)
    assert snap.fresh == [] and snap.stale == []


def test_evict_is_explicit() -> None:
    registry = FiducialTrackerRegistry()
    registry.observe(1, MarkerDetection(corners=_square(0, 0)), now=0.0)
    registry.observe(2, MarkerDetection(corners=_square(50, 0)), now=2.0)

    assert registry.evict(now=2.5) == []
    assert registry.evict(now=3.5) == [GridLabel.TAG_01]
    assert list(registry.markers) == [GridLabel.TAG_02]
    assert registry.age(GridLabel.TAG_02, now=3.5) == pytest.approx(1.5)
    assert registry.age(GridLabel.TAG_01, now=3.5) is None

    registry.clear()
    assert len(registry) == 0


def test_tracker_config_validation() -> None:
    with pytest.raises(ValueError):
        TrackerConfig(stale_after_s=0.0)
    with pytest.raises(ValueError):
        TrackerConfig(stale_after_s=3.0, cleanup_after_s=2.0)
