"""
Metrics module for monitoring scan pipeline performance.

Provides functionality to:
- Track frame rate and per-frame processing time
- Track fresh-marker counts, cone counts and transform validity
- Count dropped / over-budget frames, ignored detections and captures
- Export metrics for visualization (JSON, Prometheus format)
"""

import time
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from collections import deque
import threading
import json


@dataclass
class CaptureMetrics:
    """Capture counters and quality history."""
    total: int = 0
    rejected_evaluations: int = 0
    qualities: deque = field(default_factory=lambda: deque(maxlen=60))

    @property
    def mean_quality(self) -> float:
        if not self.qualities:
            return 0.0
        return sum(self.qualities) / len(self.qualities)


class MetricsCollector:
    """
    Thread-safe metrics collector for the scan pipeline.

    Usage:
        metrics = MetricsCollector()
        metrics.record_frame(processing_s=0.012, fresh_markers=4,
                             object_count=3, transform_valid=True)
        metrics.record_capture(quality=0.95)
        summary = metrics.get_summary()
    """

    def __init__(self, history_size: int = 60, frame_budget_s: float = 0.1):
        """
        Initialize metrics collector.

        Args:
            history_size: Number of frames to keep for rolling averages
            frame_budget_s: Processing time above which a frame counts as over budget
        """
        self.history_size = history_size
        self.frame_budget_s = frame_budget_s
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._init_counters()

    def _init_counters(self) -> None:
        self._frame_count = 0
        self._dropped_frames = 0
        self._over_budget_frames = 0
        self._ignored_detections = 0
        self._frame_times: deque = deque(maxlen=self.history_size)
        self._processing_times: deque = deque(maxlen=self.history_size)
        self._fresh_markers: deque = deque(maxlen=self.history_size)
        self._object_counts: deque = deque(maxlen=self.history_size)
        self._transform_valid: deque = deque(maxlen=self.history_size)
        self._captures = CaptureMetrics(qualities=deque(maxlen=self.history_size))

    def record_frame(
        self,
        processing_s: float,
        fresh_markers: int,
        object_count: int,
        transform_valid: bool,
        received_at: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Record one processed frame.

        Args:
            processing_s: Wall time spent processing the frame
            fresh_markers: Number of fresh markers after ingestion
            object_count: Number of cones accepted in the frame
            transform_valid: Whether a usable transform existed
            received_at: Frame time in seconds (default: now)

        Returns:
            Rolling stats after this frame
        """
        with self._lock:
            now = time.time() if received_at is None else received_at

            self._frame_count += 1
            if processing_s > self.frame_budget_s:
                self._over_budget_frames += 1

            self._frame_times.append(now)
            self._processing_times.append(processing_s)
            self._fresh_markers.append(fresh_markers)
            self._object_counts.append(object_count)
            self._transform_valid.append(1 if transform_valid else 0)

            return {
                "fps": round(self._fps(), 2),
                "processing_ms": round(processing_s * 1000, 3),
                "fresh_markers": fresh_markers,
                "object_count": object_count,
            }

    def record_dropped(self) -> None:
        with self._lock:
            self._dropped_frames += 1

    def record_ignored(self, count: int = 1) -> None:
        """Record detector records that failed the input contract."""
        with self._lock:
            self._ignored_detections += count

    def record_capture(self, quality: float) -> None:
        with self._lock:
            self._captures.total += 1
            self._captures.qualities.append(quality)

    def record_rejected_evaluation(self) -> None:
        with self._lock:
            self._captures.rejected_evaluations += 1

    def _fps(self) -> float:
        if len(self._frame_times) >= 2:
            time_span = self._frame_times[-1] - self._frame_times[0]
            if time_span > 0:
                return (len(self._frame_times) - 1) / time_span
        return 0.0

    @staticmethod
    def _mean(values: deque) -> float:
        return sum(values) / len(values) if values else 0.0

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all metrics
        """
        with self._lock:
            max_processing = max(self._processing_times) if self._processing_times else 0.0
            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "frames": {
                    "total": self._frame_count,
                    "fps": round(self._fps(), 2),
                    "dropped": self._dropped_frames,
                    "over_budget": self._over_budget_frames,
                    "processing_ms_avg": round(self._mean(self._processing_times) * 1000, 3),
                    "processing_ms_max": round(max_processing * 1000, 3),
                },
                "markers": {
                    "fresh_avg": round(self._mean(self._fresh_markers), 2),
                    "ignored_detections": self._ignored_detections,
                },
                "objects": {
                    "count_avg": round(self._mean(self._object_counts), 2),
                },
                "transform": {
                    "valid_ratio": round(self._mean(self._transform_valid), 4),
                },
                "captures": {
                    "total": self._captures.total,
                    "rejected_evaluations": self._captures.rejected_evaluations,
                    "quality_avg": round(self._captures.mean_quality, 4),
                },
            }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        summary = self.get_summary()

        lines = [
            "# HELP conescan_frames_total Total frames processed",
            "# TYPE conescan_frames_total counter",
            f"conescan_frames_total {summary['frames']['total']}",
            "",
            "# HELP conescan_frames_dropped_total Frames dropped while another was in flight",
            "# TYPE conescan_frames_dropped_total counter",
            f"conescan_frames_dropped_total {summary['frames']['dropped']}",
            "",
            "# HELP conescan_fps Current frames per second",
            "# TYPE conescan_fps gauge",
            f"conescan_fps {summary['frames']['fps']}",
            "",
            "# HELP conescan_processing_ms Average per-frame processing time in milliseconds",
            "# TYPE conescan_processing_ms gauge",
            f"conescan_processing_ms {summary['frames']['processing_ms_avg']}",
            "",
            "# HELP conescan_fresh_markers Average fresh marker count",
            "# TYPE conescan_fresh_markers gauge",
            f"conescan_fresh_markers {summary['markers']['fresh_avg']}",
            "",
            "# HELP conescan_transform_valid_ratio Share of frames with a usable transform",
            "# TYPE conescan_transform_valid_ratio gauge",
            f"conescan_transform_valid_ratio {summary['transform']['valid_ratio']}",
            "",
            "# HELP conescan_captures_total Captures taken",
            "# TYPE conescan_captures_total counter",
            f"conescan_captures_total {summary['captures']['total']}",
        ]

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._init_counters()
            self._start_time = time.time()


class MetricsExporter:
    """
    Export metrics to file.
    """

    @staticmethod
    def to_json(metrics: Dict[str, Any], filepath: str) -> None:
        """Write metrics to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(metrics, f, indent=2)

    @staticmethod
    def to_jsonl(metrics: Dict[str, Any], filepath: str) -> None:
        """Append metrics as JSONL line."""
        with open(filepath, 'a') as f:
            f.write(json.dumps(metrics) + '\n')

    @staticmethod
    def to_prometheus_file(metrics: MetricsCollector, filepath: str) -> None:
        """Write Prometheus-format metrics to file."""
        content = metrics.export_prometheus()
        with open(filepath, 'w') as f:
            f.write(content)
