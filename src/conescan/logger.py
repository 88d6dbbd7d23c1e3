"""
Session recorder for scan runs.

One scan session becomes one JSONL file:

    {"_type": "header", "schema_version": "1.0", "metadata": {"session_id": ..., "config": ...}}
    {"_type": "frame", "frame_index": 0, "received_at": ..., "data": <FrameResult>}
    {"_type": "event", "event_type": "capture", "data": {...}}
    {"_type": "event", "event_type": "session_complete", "data": {...}}
    {"_type": "event", "event_type": "consensus", "data": {...}}
    {"_type": "footer", "total_frames": N, "events": {"capture": 6, ...}}

Records are serialized on the calling thread and appended by a background
writer, so later mutation of a result cannot change what was recorded.
"""

import json
import queue
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Dict, Any, List, IO

from .capture import CapturePosition, ScanSession
from .consensus import ConsensusResult

if TYPE_CHECKING:
    from .pipeline import FrameResult


SCHEMA_VERSION = "1.0"


class _LineWriter:
    """Appends pre-serialized lines to a file from a daemon thread."""

    def __init__(self, handle: IO[str]):
        self._handle = handle
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def put(self, record: Dict[str, Any]) -> None:
        self._lines.put(json.dumps(record))

    def close(self, final: Dict[str, Any]) -> None:
        """Flush queued lines, append the final record and close the file."""
        self._lines.put(None)
        self._thread.join(timeout=5.0)
        self._handle.write(json.dumps(final) + "\n")
        self._handle.close()

    def _drain(self) -> None:
        for line in iter(self._lines.get, None):
            self._handle.write(line + "\n")
            self._handle.flush()


class SessionLogger:
    """
    Records pipeline frames and session events for later replay.

    Usage:
        logger = SessionLogger(log_dir="./logs")
        logger.start_recording(session.session_id, config=cfg.to_dict())
        logger.log_frame(result)
        logger.log_capture(session, position)
        logger.log_consensus(session.session_id, consensus)
        logger.stop_recording()
    """

    def __init__(self, log_dir: str = "./logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._writer: Optional[_LineWriter] = None
        self._log_file: Optional[Path] = None
        self._session_id: Optional[str] = None
        self._started_at: Optional[str] = None
        self._frame_count = 0
        self._event_counts: Dict[str, int] = {}

    def start_recording(
        self,
        session_id: str,
        config: Optional[Dict[str, Any]] = None,
        session_name: Optional[str] = None
    ) -> str:
        """
        Open a new log file for a scan session.

        Args:
            session_id: Id of the session being recorded
            config: Pipeline config as a dict, stored in the header
            session_name: File stem (default: the session id)

        Returns:
            Path to the created log file

        Raises:
            RuntimeError: If a session is already being recorded
        """
        with self._lock:
            if self._writer is not None:
                raise RuntimeError("Recording already in progress")

            self._log_file = self.log_dir / f"{session_name or session_id}.jsonl"
            self._session_id = session_id
            self._started_at = datetime.now().isoformat()
            self._frame_count = 0
            self._event_counts = {}

            handle = open(self._log_file, "w", encoding="utf-8")
            handle.write(json.dumps({
                "_type": "header",
                "schema_version": SCHEMA_VERSION,
                "capture_start": self._started_at,
                "log_format": "jsonl",
                "metadata": {"session_id": session_id, "config": config or {}},
            }) + "\n")
            self._writer = _LineWriter(handle)
            return str(self._log_file)

    def stop_recording(self) -> Dict[str, Any]:
        """
        Write the footer and close the log.

        Returns:
            Summary of the recording, or {"status": "not_recording"}
        """
        with self._lock:
            if self._writer is None:
                return {"status": "not_recording"}

            ended_at = datetime.now().isoformat()
            self._writer.close({
                "_type": "footer",
                "capture_end": ended_at,
                "total_frames": self._frame_count,
                "events": dict(self._event_counts),
            })
            self._writer = None

            return {
                "log_file": str(self._log_file),
                "session_id": self._session_id,
                "start_time": self._started_at,
                "end_time": ended_at,
                "total_frames": self._frame_count,
                "events": dict(self._event_counts),
            }

    def log_frame(self, result: "FrameResult") -> int:
        """
        Record one processed frame.

        Returns:
            Index of the frame within this log

        Raises:
            RuntimeError: If not currently recording
        """
        writer = self._require_writer()
        frame_index = self._frame_count
        writer.put({
            "_type": "frame",
            "frame_index": frame_index,
            "received_at": datetime.now().isoformat(),
            "data": result.to_dict(),
        })
        self._frame_count += 1
        return frame_index

    def log_capture(self, session: ScanSession, position: CapturePosition) -> None:
        """Record a filled capture slot."""
        self._event("capture", {
            "session_id": session.session_id,
            "position_id": position.position_id,
            "priority": position.priority,
            "timestamp": position.timestamp,
            "quality": position.quality,
            "aligned": bool(position.alignment and position.alignment.is_aligned),
            "markers": [m.label.value for m in position.markers],
            "objects": len(position.objects),
            "completed": session.completed,
            "total_needed": session.total_needed,
        })

    def log_session_complete(self, session: ScanSession) -> None:
        self._event("session_complete", {
            "session_id": session.session_id,
            "confidence": session.confidence,
            "positions": [p.position_id for p in session.captured_positions],
        })

    def log_consensus(self, session_id: str, result: ConsensusResult) -> None:
        """Record final cone positions (supporters are summarized by count)."""
        self._event("consensus", {
            "session_id": session_id,
            "clusters": [
                {
                    "id": c.cluster_id,
                    "position": [c.position[0], c.position[1]],
                    "confidence": c.confidence,
                    "variance": c.variance,
                    "supporters": len(c.supporters),
                }
                for c in result.clusters
            ],
            "outliers": len(result.outliers),
            "confidence": result.confidence,
            "metrics": result.metrics.to_dict(),
        })

    def _event(self, event_type: str, data: Dict[str, Any]) -> None:
        writer = self._require_writer()
        writer.put({
            "_type": "event",
            "event_type": event_type,
            "timestamp": datetime.now().isoformat(),
            "data": data,
        })
        self._event_counts[event_type] = self._event_counts.get(event_type, 0) + 1

    def _require_writer(self) -> _LineWriter:
        writer = self._writer
        if writer is None:
            raise RuntimeError("Not currently recording")
        return writer

    @property
    def is_recording(self) -> bool:
        return self._writer is not None

    @property
    def current_log_file(self) -> Optional[str]:
        return str(self._log_file) if self._log_file else None


def _read_edges(path: Path) -> List[Dict[str, Any]]:
    """First and last JSON records of a log, skipping unparsable lines."""
    records = []
    with open(path, "r", encoding="utf-8") as fp:
        lines = [line for line in fp if line.strip()]
    for line in (lines[:1] + lines[-1:]) if lines else []:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def list_log_files(log_dir: str = "./logs") -> List[Dict[str, Any]]:
    """
    Summarize the session logs in a directory, newest name first.

    total_frames is None for logs without a footer (interrupted sessions).
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return []

    logs = []
    for path in sorted(log_path.glob("*.jsonl"), reverse=True):
        header: Dict[str, Any] = {}
        footer: Dict[str, Any] = {}
        for record in _read_edges(path):
            if record.get("_type") == "header":
                header = record
            elif record.get("_type") == "footer":
                footer = record

        logs.append({
            "path": str(path),
            "name": path.stem,
            "size_bytes": path.stat().st_size,
            "schema_version": header.get("schema_version", "unknown"),
            "session_id": header.get("metadata", {}).get("session_id"),
            "capture_start": header.get("capture_start"),
            "total_frames": footer.get("total_frames"),
            "events": footer.get("events", {}),
        })
    return logs
