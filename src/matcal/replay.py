"""
Replay module for recorded calibration sessions.

Provides functionality to:
- Read session logs written by CalibrationLogger (JSONL format)
- Recover tracker intrinsics and averaged mat observations
- Re-run the tracker pose solve offline
"""

import json
from typing import Optional, Dict, Any, List, Tuple
from pathlib import Path
from dataclasses import dataclass

import numpy as np

from .geo import CameraParams
from .sampling import (
    CalibrationLocation, MAT_LOCATIONS, build_mat_locations, location_points,
    HEIGHT_TO_BULB_CENTER_CM, SAMPLE_X_OFFSET_CM, SAMPLE_Z_OFFSET_CM
)
from .solver import PoseSolver, SolveResult


@dataclass
class LogHeader:
    """Metadata from log file header."""
    schema_version: str
    capture_start: str
    log_format: str


@dataclass
class LogFooter:
    """Metadata from log file footer."""
    capture_end: str
    total_events: int


@dataclass
class EventEntry:
    """A session event from the log."""
    event_type: str
    timestamp: str
    data: Dict[str, Any]


class CalibrationReplay:
    """
    Read a recorded calibration session.

    Usage:
        replay = CalibrationReplay("logs/20260222_120000.jsonl")
        for event in replay.get_events("phase_change"):
            print(event.data["new"])
        results = replay.recompute_poses()
    """

    def __init__(self, log_file: str):
        """
        Initialize the replay reader.

        Args:
            log_file: Path to the JSONL log file

        Raises:
            FileNotFoundError: If the log file does not exist
            ValueError: If a line is not valid JSON
        """
        self.log_file = Path(log_file)
        if not self.log_file.exists():
            raise FileNotFoundError(f"Log file not found: {log_file}")

        self._header: Optional[LogHeader] = None
        self._footer: Optional[LogFooter] = None
        self._events: List[EventEntry] = []

        self._load_log()

    def _load_log(self) -> None:
        """Load and parse the log file."""
        with open(self.log_file, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid JSON on line {line_no}: {e}") from e

                entry_type = entry.get("_type")
                if entry_type == "header":
                    self._header = LogHeader(
                        schema_version=entry.get("schema_version", "unknown"),
                        capture_start=entry.get("capture_start", ""),
                        log_format=entry.get("log_format", "jsonl")
                    )
                elif entry_type == "footer":
                    self._footer = LogFooter(
                        capture_end=entry.get("capture_end", ""),
                        total_events=entry.get("total_events", 0)
                    )
                elif entry_type == "event":
                    self._events.append(EventEntry(
                        event_type=entry.get("event_type", ""),
                        timestamp=entry.get("timestamp", ""),
                        data=entry.get("data", {})
                    ))

    @property
    def header(self) -> Optional[LogHeader]:
        return self._header

    @property
    def footer(self) -> Optional[LogFooter]:
        return self._footer

    @property
    def events(self) -> List[EventEntry]:
        return self._events.copy()

    @property
    def event_count(self) -> int:
        return len(self._events)

    def get_events(self, event_type: str) -> List[EventEntry]:
        return [e for e in self._events if e.event_type == event_type]

    def get_phases(self) -> List[str]:
        """Phases entered, in order."""
        return [e.data.get("new", "") for e in self.get_events("phase_change")]

    def get_result(self) -> Optional[bool]:
        """Success flag of the last computed result, if any."""
        results = self.get_events("session_result")
        if not results:
            return None
        return bool(results[-1].data.get("success"))

    def get_tracker_params(self) -> Dict[str, CameraParams]:
        """
        Tracker intrinsics from the most recent session_start event.

        Returns:
            Dict mapping tracker_id to CameraParams
        """
        starts = self.get_events("session_start")
        if not starts:
            return {}

        params = {}
        for tracker_id, data in starts[-1].data.get("trackers", {}).items():
            width, height = data.get("resolution", [640, 480])
            params[tracker_id] = CameraParams(
                camera_id=tracker_id,
                intrinsic_matrix=np.asarray(data["camera_matrix"], dtype=np.float64),
                resolution=(int(width), int(height))
            )
        return params

    def get_locations(self) -> Tuple[CalibrationLocation, ...]:
        """Mat locations from the most recent session_start config, else the defaults."""
        starts = self.get_events("session_start")
        config = starts[-1].data.get("config") if starts else None
        if not config:
            return MAT_LOCATIONS
        return build_mat_locations(
            float(config.get("x_offset_cm", SAMPLE_X_OFFSET_CM)),
            float(config.get("z_offset_cm", SAMPLE_Z_OFFSET_CM)),
            float(config.get("bulb_height_cm", HEIGHT_TO_BULB_CENTER_CM))
        )

    def get_averaged_points(self, location_count: int = len(MAT_LOCATIONS)) -> Dict[str, List[Optional[Tuple[float, float]]]]:
        """
        Averaged observations per tracker and location.

        Later location_complete events for the same location replace
        earlier ones; a restart discards everything before it.

        Returns:
            Dict mapping tracker_id to a list (one entry per location) of
            (x, y) or None
        """
        points: Dict[str, List[Optional[Tuple[float, float]]]] = {}
        for event in self._events:
            if event.event_type in ("session_start", "restart"):
                points = {}
                continue
            if event.event_type != "location_complete":
                continue

            average = event.data.get("average")
            index = int(event.data.get("location_index", -1))
            if average is None or not 0 <= index < location_count:
                continue
            tracker_points = points.setdefault(event.data["tracker_id"], [None] * location_count)
            tracker_points[index] = (float(average["x"]), float(average["y"]))
        return points

    def recompute_poses(
        self,
        solver: Optional[PoseSolver] = None,
        locations: Optional[Tuple[CalibrationLocation, ...]] = None
    ) -> Dict[str, SolveResult]:
        """
        Re-run the tracker pose solve from the recorded observations.

        Trackers missing an observation for any location are skipped.

        Args:
            solver: PoseSolver to use (default: mean squared error solver)
            locations: Mat locations (default: those the session recorded)

        Returns:
            Dict mapping tracker_id to SolveResult
        """
        solver = solver or PoseSolver()
        if locations is None:
            locations = self.get_locations()
        params = self.get_tracker_params()
        object_points = location_points(locations)

        results = {}
        for tracker_id, observed in self.get_averaged_points(len(locations)).items():
            if tracker_id not in params or any(p is None for p in observed):
                continue
            cam = params[tracker_id]
            results[tracker_id] = solver.solve(
                object_points,
                np.asarray(observed, dtype=np.float64),
                cam.intrinsic_matrix,
                cam.height
            )
        return results


def validate_log_integrity(log_file: str) -> Dict[str, Any]:
    """
    Validate a session log for integrity and consistency.

    Args:
        log_file: Path to the JSONL log file

    Returns:
        Validation result dictionary
    """
    result = {
        "valid": True,
        "errors": [],
        "warnings": [],
        "event_count": 0
    }

    try:
        replay = CalibrationReplay(log_file)
    except (OSError, ValueError) as e:
        result["valid"] = False
        result["errors"].append(str(e))
        return result

    result["event_count"] = replay.event_count

    if not replay.header:
        result["errors"].append("Missing header")
        result["valid"] = False
    elif replay.header.schema_version != "1.0":
        result["warnings"].append(f"Unknown schema version: {replay.header.schema_version}")

    if not replay.footer:
        result["errors"].append("Missing footer (log may be incomplete)")
        result["valid"] = False
    elif replay.footer.total_events != replay.event_count:
        result["errors"].append(
            f"Footer total_events {replay.footer.total_events} != counted {replay.event_count}"
        )
        result["valid"] = False

    if not replay.get_events("session_start"):
        result["warnings"].append("No session_start event")

    return result
