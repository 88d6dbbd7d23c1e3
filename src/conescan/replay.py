"""
Replay module for recorded scan sessions.

Provides functionality to:
- Read recorded session logs (JSONL format)
- Replay frames with original timing or at accelerated speed
- Validate log integrity (header, footer, frame index continuity)
- Re-run logged marker records through a fresh pipeline
"""

import json
import time
from typing import Optional, Dict, Any, List, Callable, Generator, Tuple
from pathlib import Path
import threading
from dataclasses import dataclass, field, replace

from .config import PipelineConfig
from .pipeline import ScanPipeline, FrameResult


@dataclass
class LogHeader:
    """Metadata from log file header."""
    schema_version: str
    capture_start: str
    log_format: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LogFooter:
    """Metadata from log file footer."""
    capture_end: str
    total_frames: int
    events: Dict[str, int] = field(default_factory=dict)


@dataclass
class FrameEntry:
    """A single frame entry from the log."""
    frame_index: int
    received_at: str
    data: Dict[str, Any]

    @property
    def timestamp(self) -> float:
        return float(self.data.get("timestamp", 0.0))

    @property
    def detections(self) -> List[Dict[str, Any]]:
        return self.data.get("detections", [])

    @property
    def captured(self) -> bool:
        return bool(self.data.get("captured", False))

    @property
    def is_aligned(self) -> bool:
        return bool(self.data.get("alignment", {}).get("is_aligned", False))


@dataclass
class EventEntry:
    """A session event from the log."""
    event_type: str
    timestamp: str
    data: Dict[str, Any]


class SessionReplay:
    """
    Replay recorded session logs with timing control.

    Usage:
        replay = SessionReplay("logs/20260222_120000.jsonl")

        for entry in replay.replay(realtime=False):
            handle(entry)

        replay.start_realtime_replay(callback=handle, speed=4.0)
        replay.stop()
    """

    def __init__(self, log_file: str):
        """
        Initialize the replay reader.

        Args:
            log_file: Path to the JSONL log file
        """
        self.log_file = Path(log_file)
        if not self.log_file.exists():
            raise FileNotFoundError(f"Log file not found: {log_file}")

        self._header: Optional[LogHeader] = None
        self._footer: Optional[LogFooter] = None
        self._frames: List[FrameEntry] = []
        self._events: List[EventEntry] = []
        self._stop_flag = threading.Event()
        self._replay_thread: Optional[threading.Thread] = None

        self._load_log()

    def _load_log(self) -> None:
        """Load and parse the log file."""
        with open(self.log_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                entry_type = entry.get("_type")

                if entry_type == "header":
                    self._header = LogHeader(
                        schema_version=entry.get("schema_version", "unknown"),
                        capture_start=entry.get("capture_start", ""),
                        log_format=entry.get("log_format", "jsonl"),
                        metadata=entry.get("metadata", {}),
                    )
                elif entry_type == "footer":
                    self._footer = LogFooter(
                        capture_end=entry.get("capture_end", ""),
                        total_frames=entry.get("total_frames", 0),
                        events=entry.get("events", {}),
                    )
                elif entry_type == "frame":
                    self._frames.append(FrameEntry(
                        frame_index=entry.get("frame_index", len(self._frames)),
                        received_at=entry.get("received_at", ""),
                        data=entry.get("data", {}),
                    ))
                elif entry_type == "event":
                    self._events.append(EventEntry(
                        event_type=entry.get("event_type", ""),
                        timestamp=entry.get("timestamp", ""),
                        data=entry.get("data", {}),
                    ))

    @property
    def header(self) -> Optional[LogHeader]:
        return self._header

    @property
    def footer(self) -> Optional[LogFooter]:
        return self._footer

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def frames(self) -> List[FrameEntry]:
        return self._frames.copy()

    @property
    def events(self) -> List[EventEntry]:
        return self._events.copy()

    def get_events(self, event_type: str) -> List[EventEntry]:
        return [e for e in self._events if e.event_type == event_type]

    def replay(
        self,
        realtime: bool = True,
        speed: float = 1.0,
        start_frame: int = 0,
        end_frame: Optional[int] = None
    ) -> Generator[FrameEntry, None, None]:
        """
        Replay frames from the log.

        Args:
            realtime: If True, sleep between frames according to their timestamps
            speed: Playback speed multiplier (2.0 = twice as fast)
            start_frame: Frame position to start from
            end_frame: Frame position to end at (None = until end)

        Yields:
            FrameEntry objects in order
        """
        if speed <= 0:
            raise ValueError("speed must be > 0")

        frames = self._frames[start_frame:end_frame]

        if not realtime:
            for frame in frames:
                yield frame
            return

        prev_ts: Optional[float] = None
        for frame in frames:
            if self._stop_flag.is_set():
                break

            if prev_ts is not None:
                delay = (frame.timestamp - prev_ts) / speed
                if delay > 0:
                    time.sleep(delay)

            prev_ts = frame.timestamp
            yield frame

    def start_realtime_replay(
        self,
        callback: Callable[[FrameEntry], None],
        speed: float = 1.0,
        on_complete: Optional[Callable[[], None]] = None
    ) -> None:
        """
        Start asynchronous realtime replay with callback.

        Args:
            callback: Function to call for each frame
            speed: Playback speed multiplier
            on_complete: Optional callback when replay finishes
        """
        self._stop_flag.clear()

        def _replay_thread():
            try:
                for frame in self.replay(realtime=True, speed=speed):
                    if self._stop_flag.is_set():
                        break
                    callback(frame)
            finally:
                if on_complete:
                    on_complete()

        self._replay_thread = threading.Thread(target=_replay_thread, daemon=True)
        self._replay_thread.start()

    def stop(self) -> None:
        """Stop an ongoing replay."""
        self._stop_flag.set()
        if self._replay_thread:
            self._replay_thread.join(timeout=2.0)

    def get_frame_at(self, index: int) -> Optional[FrameEntry]:
        if 0 <= index < len(self._frames):
            return self._frames[index]
        return None

    def get_timestamp_range(self) -> Tuple[float, float]:
        """
        Get the frame timestamp range of the log.

        Returns:
            Tuple of (min_timestamp, max_timestamp) in seconds
        """
        if not self._frames:
            return (0.0, 0.0)
        timestamps = [f.timestamp for f in self._frames]
        return (min(timestamps), max(timestamps))

    def get_duration_seconds(self) -> float:
        min_ts, max_ts = self.get_timestamp_range()
        return max_ts - min_ts


def validate_log_integrity(log_file: str) -> Dict[str, Any]:
    """
    Validate a session log for integrity and consistency.

    Args:
        log_file: Path to the JSONL log file

    Returns:
        Validation result dictionary
    """
    result: Dict[str, Any] = {
        "valid": True,
        "errors": [],
        "warnings": [],
        "stats": {}
    }

    try:
        replay = SessionReplay(log_file)
    except (OSError, ValueError) as e:
        result["valid"] = False
        result["errors"].append(str(e))
        return result

    if not replay.header:
        result["errors"].append("Missing header")
        result["valid"] = False
    elif replay.header.schema_version != "1.0":
        result["warnings"].append(f"Unknown schema version: {replay.header.schema_version}")

    if not replay.footer:
        result["warnings"].append("Missing footer (log may be incomplete)")
    elif replay.footer.total_frames != replay.frame_count:
        result["warnings"].append(
            f"Footer reports {replay.footer.total_frames} frame(s), found {replay.frame_count}"
        )

    indices = [f.frame_index for f in replay.frames]
    if indices:
        expected_count = max(indices) - min(indices) + 1
        actual_count = len(set(indices))
        if expected_count != actual_count:
            result["warnings"].append(f"{expected_count - actual_count} frame(s) missing")

    timestamps = [f.timestamp for f in replay.frames]
    if any(b < a for a, b in zip(timestamps, timestamps[1:])):
        result["warnings"].append("Frame timestamps are not monotonic")

    result["stats"] = {
        "total_frames": replay.frame_count,
        "duration_seconds": replay.get_duration_seconds(),
        "events_count": len(replay.events),
        "captures": len(replay.get_events("capture")),
    }

    return result


def reprocess_log(
    log_file: str,
    config: Optional[PipelineConfig] = None,
    start_session: bool = False
) -> List[FrameResult]:
    """
    Feed logged marker records back through a fresh pipeline.

    Frames are not stored in logs, so cone detection is skipped; marker
    tracking, alignment, the transform lifecycle and (optionally) the capture
    gate are reproduced.

    Args:
        log_file: Path to the JSONL log file
        config: Pipeline configuration (logging is always disabled)
        start_session: Start a capture session before the first frame

    Returns:
        FrameResult for every logged frame
    """
    replay = SessionReplay(log_file)
    cfg = replace(config or PipelineConfig(), enable_logging=False)
    pipeline = ScanPipeline(cfg)

    entries = replay.frames
    if start_session:
        first_ts = entries[0].timestamp if entries else 0.0
        pipeline.start_session(now=first_ts)

    results: List[FrameResult] = []
    for entry in entries:
        result = pipeline.process_frame(entry.detections, frame=None, now=entry.timestamp)
        if result is not None:
            results.append(result)
    return results
