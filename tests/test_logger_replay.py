"""
Tests for session recording, replay and log reprocessing.
"""

import json
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conescan.alignment import AlignmentConfig
from conescan.config import PipelineConfig
from conescan.logger import SessionLogger, list_log_files
from conescan.pipeline import ScanPipeline
from conescan.replay import SessionReplay, reprocess_log, validate_log_integrity
from conescan.capture import CapturePosition
from conescan.tracker import GridLabel


LAYOUT = {
    GridLabel.TAG_01: (200.0, 140.0),
    GridLabel.TAG_02: (440.0, 140.0),
    GridLabel.TAG_03: (440.0, 340.0),
    GridLabel.TAG_04: (200.0, 340.0),
}


def _records(shift=0.0):
    out = []
    for label, (cx, cy) in LAYOUT.items():
        cx += shift
        out.append({
            "id": label.value,
            "corners": [[cx - 60, cy - 60], [cx + 60, cy - 60], [cx + 60, cy + 60], [cx - 60, cy + 60]],
        })
    return out


@pytest.fixture()
def recorded_log_file(tmp_path) -> str:
    """Record ten frames and one capture through the typed logger calls."""
    pipeline = ScanPipeline(PipelineConfig(alignment=AlignmentConfig(target_positions=LAYOUT)))
    session = pipeline.start_session(
        [CapturePosition("a", "A", "", 1), CapturePosition("b", "B", "", 2)], now=100.0
    )

    logger = SessionLogger(log_dir=str(tmp_path))
    log_file = logger.start_recording(session.session_id, session_name="test_session")

    for i in range(10):
        result = pipeline.process_frame(_records(), now=100.0 + i * 0.1)
        assert logger.log_frame(result) == i

    logger.log_capture(session, session.captured_positions[0])
    metadata = logger.stop_recording()

    assert metadata["session_id"] == session.session_id
    assert metadata["total_frames"] == 10
    assert metadata["events"] == {"capture": 1}
    assert os.path.exists(log_file)
    return log_file


@pytest.fixture()
def pipeline_log_file(tmp_path) -> str:
    """Record a short two-capture session through the pipeline."""
    config = PipelineConfig(
        alignment=AlignmentConfig(target_positions=LAYOUT),
        enable_logging=True,
        log_dir=str(tmp_path),
    )
    pipeline = ScanPipeline(config)
    pipeline.start_session(
        [CapturePosition("a", "A", "", 1), CapturePosition("b", "B", "", 2)],
        now=0.0,
        session_name="pipeline_session",
    )
    for i in range(31):
        t = i / 10.0
        pipeline.process_frame(_records(shift=60.0 if t >= 2.0 else 0.0), now=t)
    pipeline.process_session()
    stats = pipeline.stop()

    assert stats["frames_processed"] == 31
    return stats["log_metadata"]["log_file"]


def test_logger_rejects_double_start(tmp_path) -> None:
    logger = SessionLogger(log_dir=str(tmp_path))
    logger.start_recording("a")
    with pytest.raises(RuntimeError):
        logger.start_recording("b")
    logger.stop_recording()

    assert logger.stop_recording() == {"status": "not_recording"}
    with pytest.raises(RuntimeError):
        logger.log_frame({})


def test_replay_reads_header_frames_and_footer(recorded_log_file: str) -> None:
    replay = SessionReplay(recorded_log_file)

    assert replay.header is not None
    assert replay.header.schema_version == "1.0"
    assert replay.header.metadata["config"] == {}
    assert replay.footer is not None
    assert replay.footer.total_frames == 10
    assert replay.frame_count == 10
    assert len(replay.get_events("capture")) == 1

    assert replay.get_timestamp_range() == pytest.approx((100.0, 100.9))
    assert replay.get_duration_seconds() == pytest.approx(0.9)
    assert replay.get_frame_at(3).frame_index == 3
    assert replay.get_frame_at(99) is None

    frames = list(replay.replay(realtime=False, start_frame=2, end_frame=5))
    assert [f.frame_index for f in frames] == [2, 3, 4]


def test_realtime_replay_respects_speed(recorded_log_file: str) -> None:
    replay = SessionReplay(recorded_log_file)
    frames = list(replay.replay(realtime=True, speed=100.0))
    assert len(frames) == 10
    with pytest.raises(ValueError):
        list(replay.replay(speed=0.0))


def test_validate_log_integrity(recorded_log_file: str) -> None:
    validation = validate_log_integrity(recorded_log_file)

    assert validation["valid"]
    assert validation["errors"] == []
    assert validation["warnings"] == []
    assert validation["stats"]["total_frames"] == 10
    assert validation["stats"]["captures"] == 1


def test_validate_reports_gaps_and_missing_parts(tmp_path) -> None:
    path = tmp_path / "broken.jsonl"
    lines = [
        {"_type": "frame", "frame_index": 0, "received_at": "", "data": {"timestamp": 1.0}},
        {"_type": "frame", "frame_index": 3, "received_at": "", "data": {"timestamp": 0.5}},
    ]
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")

    validation = validate_log_integrity(str(path))

    assert validation["valid"] is False
    assert "Missing header" in validation["errors"]
    assert any("missing" in w for w in validation["warnings"])
    assert "Frame timestamps are not monotonic" in validation["warnings"]
    assert "Missing footer (log may be incomplete)" in validation["warnings"]

    missing = validate_log_integrity(str(tmp_path / "nope.jsonl"))
    assert missing["valid"] is False


def test_pipeline_log_records_session_events(pipeline_log_file: str) -> None:
    replay = SessionReplay(pipeline_log_file)

    assert replay.header.metadata["session_id"].startswith("session_")
    assert replay.header.metadata["config"]["capture"]["min_quality"] == 0.8
    assert replay.frame_count == 31
    assert [f.frame_index for f in replay.frames if f.captured] == [0, 20]
    assert len(replay.get_events("capture")) == 2
    assert len(replay.get_events("session_complete")) == 1
    consensus = replay.get_events("consensus")[0].data
    assert consensus["clusters"] == []
    assert consensus["outliers"] == 0
    assert set(consensus["metrics"]) == {
        "overall_quality", "spatial_accuracy", "detection_reliability", "image_quality_average"
    }

    first_capture = replay.get_events("capture")[0].data
    assert first_capture["position_id"] == "a"
    assert first_capture["aligned"] is True
    assert first_capture["markers"] == ["1", "2", "3", "4"]
    assert first_capture["completed"] == 1
    complete = replay.get_events("session_complete")[0].data
    assert complete["positions"] == ["a", "b"]

    validation = validate_log_integrity(pipeline_log_file)
    assert validation["valid"], validation["errors"]
    assert validation["stats"]["captures"] == 2


def test_reprocess_log_reproduces_frames(pipeline_log_file: str) -> None:
    config = PipelineConfig(alignment=AlignmentConfig(target_positions=LAYOUT))
    results = reprocess_log(pipeline_log_file, config=config, start_session=True)

    assert len(results) == 31
    assert all(r.transform.is_valid for r in results)
    assert all(r.alignment.detected_count == 4 for r in results)
    # Default session has six slots; the same two frames pass the gate
    assert [i for i, r in enumerate(results) if r.captured] == [0, 20]

    original = SessionReplay(pipeline_log_file).frames
    for entry, result in zip(original, results):
        assert result.alignment.is_aligned == entry.is_aligned
        np.testing.assert_allclose(
            result.transform.matrix, np.array(entry.data["transform"]["matrix"])
        )


def test_frame_is_recorded_as_logged(tmp_path) -> None:
    pipeline = ScanPipeline(PipelineConfig(alignment=AlignmentConfig(target_positions=LAYOUT)))
    logger = SessionLogger(log_dir=str(tmp_path))
    log_file = logger.start_recording("snap")

    result = pipeline.process_frame(_records(), now=0.0)
    logger.log_frame(result)
    result.ignored = 99
    logger.stop_recording()

    assert SessionReplay(log_file).get_frame_at(0).data["ignored"] == 0


def test_list_log_files(recorded_log_file: str, tmp_path) -> None:
    interrupted = tmp_path / "interrupted.jsonl"
    interrupted.write_text(json.dumps({
        "_type": "header", "schema_version": "1.0", "metadata": {"session_id": "s0"},
    }) + "\n")

    logs = list_log_files(str(tmp_path))

    assert [log["name"] for log in logs] == ["test_session", "interrupted"]
    recorded, partial = logs
    assert recorded["schema_version"] == "1.0"
    assert recorded["session_id"].startswith("session_")
    assert recorded["total_frames"] == 10
    assert recorded["events"] == {"capture": 1}
    assert partial["session_id"] == "s0"
    assert partial["total_frames"] is None
    assert list_log_files(str(tmp_path / "absent")) == []
