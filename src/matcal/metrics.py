"""
Metrics module for monitoring calibration sessions.

Provides functionality to:
- Count ticks, recorded samples and instability interruptions
- Track time spent in each phase
- Keep per-tracker solve validity and reprojection error
- Export metrics (JSON, Prometheus format)
"""

import time
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
import threading
import json


@dataclass
class TrackerMetrics:
    """Per-tracker metrics."""
    tracker_id: str
    sample_count: int = 0
    solve_count: int = 0
    valid: bool = False
    reprojection_error: float = 0.0


@dataclass
class SessionMetrics:
    """Session-wide counters."""
    tick_count: int = 0
    location_resets: int = 0
    hmd_resets: int = 0
    successes: int = 0
    failures: int = 0
    resets_by_location: Dict[int, int] = field(default_factory=dict)
    phase_ticks: Dict[str, int] = field(default_factory=dict)
    phase_seconds: Dict[str, float] = field(default_factory=dict)


class CalibrationMetrics:
    """
    Thread-safe metrics collector for calibration sessions.

    Usage:
        metrics = CalibrationMetrics()
        session = CalibrationSession(..., metrics=metrics)
        ...
        summary = metrics.get_summary()
    """

    def __init__(self):
        self._trackers: Dict[str, TrackerMetrics] = {}
        self._session = SessionMetrics()
        self._lock = threading.Lock()
        self._start_time = time.time()

    def _tracker(self, tracker_id: str) -> TrackerMetrics:
        if tracker_id not in self._trackers:
            self._trackers[tracker_id] = TrackerMetrics(tracker_id=tracker_id)
        return self._trackers[tracker_id]

    def record_tick(self, phase: str) -> None:
        with self._lock:
            self._session.tick_count += 1
            self._session.phase_ticks[phase] = self._session.phase_ticks.get(phase, 0) + 1

    def record_phase_duration(self, phase: str, seconds: float) -> None:
        with self._lock:
            self._session.phase_seconds[phase] = (
                self._session.phase_seconds.get(phase, 0.0) + max(0.0, float(seconds))
            )

    def record_sample(self, tracker_id: str) -> None:
        with self._lock:
            self._tracker(tracker_id).sample_count += 1

    def record_location_reset(self, location_index: int) -> None:
        """Record the controller moving before a location finished recording."""
        with self._lock:
            self._session.location_resets += 1
            counts = self._session.resets_by_location
            counts[location_index] = counts.get(location_index, 0) + 1

    def record_hmd_reset(self) -> None:
        with self._lock:
            self._session.hmd_resets += 1

    def record_solve(self, tracker_id: str, valid: bool, reprojection_error: float) -> None:
        """
        Record the outcome of one tracker pose solve.

        Args:
            tracker_id: Tracker identifier
            valid: Whether the solve produced a pose
            reprojection_error: Squared pixel error diagnostic
        """
        with self._lock:
            tracker = self._tracker(tracker_id)
            tracker.solve_count += 1
            tracker.valid = bool(valid)
            tracker.reprojection_error = float(reprojection_error)

    def record_result(self, success: bool) -> None:
        with self._lock:
            if success:
                self._session.successes += 1
            else:
                self._session.failures += 1

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all metrics
        """
        with self._lock:
            trackers = {}
            for tracker_id, tracker in self._trackers.items():
                trackers[tracker_id] = {
                    "sample_count": tracker.sample_count,
                    "solve_count": tracker.solve_count,
                    "valid": tracker.valid,
                    "reprojection_error": round(tracker.reprojection_error, 6)
                }

            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "session": {
                    "tick_count": self._session.tick_count,
                    "location_resets": self._session.location_resets,
                    "hmd_resets": self._session.hmd_resets,
                    "successes": self._session.successes,
                    "failures": self._session.failures,
                    "resets_by_location": {
                        str(k): v for k, v in sorted(self._session.resets_by_location.items())
                    },
                    "phase_ticks": dict(self._session.phase_ticks),
                    "phase_seconds": {
                        k: round(v, 3) for k, v in self._session.phase_seconds.items()
                    }
                },
                "trackers": trackers
            }

    def get_tracker_metrics(self, tracker_id: str) -> Optional[Dict[str, Any]]:
        """Get metrics for a specific tracker."""
        with self._lock:
            if tracker_id not in self._trackers:
                return None
            tracker = self._trackers[tracker_id]
            return {
                "tracker_id": tracker_id,
                "sample_count": tracker.sample_count,
                "solve_count": tracker.solve_count,
                "valid": tracker.valid,
                "reprojection_error": round(tracker.reprojection_error, 6)
            }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        summary = self.get_summary()
        session = summary["session"]

        lines = [
            "# HELP matcal_ticks_total Total session ticks",
            "# TYPE matcal_ticks_total counter",
            f"matcal_ticks_total {session['tick_count']}",
            "",
            "# HELP matcal_location_resets_total Controller moved before a location finished",
            "# TYPE matcal_location_resets_total counter",
            f"matcal_location_resets_total {session['location_resets']}",
            "",
            "# HELP matcal_hmd_resets_total HMD moved before its samples finished",
            "# TYPE matcal_hmd_resets_total counter",
            f"matcal_hmd_resets_total {session['hmd_resets']}",
            "",
            "# HELP matcal_tracker_samples_total Screen samples recorded per tracker",
            "# TYPE matcal_tracker_samples_total counter",
        ]

        for tracker_id, data in summary["trackers"].items():
            lines.append(f'matcal_tracker_samples_total{{tracker="{tracker_id}"}} {data["sample_count"]}')

        lines.extend([
            "",
            "# HELP matcal_tracker_reprojection_error Squared pixel reprojection error of the last solve",
            "# TYPE matcal_tracker_reprojection_error gauge",
        ])

        for tracker_id, data in summary["trackers"].items():
            lines.append(
                f'matcal_tracker_reprojection_error{{tracker="{tracker_id}"}} {data["reprojection_error"]}'
            )

        lines.extend([
            "",
            "# HELP matcal_tracker_pose_valid Whether the last solve produced a pose",
            "# TYPE matcal_tracker_pose_valid gauge",
        ])

        for tracker_id, data in summary["trackers"].items():
            lines.append(f'matcal_tracker_pose_valid{{tracker="{tracker_id}"}} {int(data["valid"])}')

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._trackers.clear()
            self._session = SessionMetrics()
            self._start_time = time.time()


class MetricsExporter:
    """
    Export metrics to file or external systems.
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
    def to_prometheus_file(metrics: CalibrationMetrics, filepath: str) -> None:
        """Write Prometheus-format metrics to file."""
        content = metrics.export_prometheus()
        with open(filepath, 'w') as f:
            f.write(content)
