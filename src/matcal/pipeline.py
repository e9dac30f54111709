"""
Calibration driving loop and result sinks.

Provides the pieces around a CalibrationSession:
- CalibrationRunner: periodic tick loop until a terminal phase
- MemoryPoseSink / PoseFileSink: receivers for solved tracker poses
"""

import csv
import json
import time
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from .geo import Pose
from .session import CalibrationSession


class MemoryPoseSink:
    """Keep solved tracker poses in memory."""

    def __init__(self):
        self.poses: Dict[str, Dict[str, Optional[Pose]]] = {}
        self.updated_at: Optional[str] = None

    def set_tracker_pose(
        self,
        tracker_id: str,
        tracker_pose: Pose,
        hmd_relative_pose: Optional[Pose]
    ) -> None:
        self.poses[tracker_id] = {
            "tracker_pose": tracker_pose,
            "hmd_relative_pose": hmd_relative_pose,
        }
        self.updated_at = datetime.now().isoformat()

    def get_tracker_pose(self, tracker_id: str) -> Optional[Pose]:
        entry = self.poses.get(tracker_id)
        return entry["tracker_pose"] if entry else None

    def get_hmd_relative_pose(self, tracker_id: str) -> Optional[Pose]:
        entry = self.poses.get(tracker_id)
        return entry["hmd_relative_pose"] if entry else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated_at": self.updated_at,
            "trackers": {
                tracker_id: {
                    name: pose.to_dict() if pose is not None else None
                    for name, pose in entry.items()
                }
                for tracker_id, entry in self.poses.items()
            }
        }


class PoseFileSink(MemoryPoseSink):
    """
    Persist solved tracker poses to a file as they arrive.

    Usage:
        sink = PoseFileSink("tracker_poses.json")
        session = CalibrationSession(..., sink=sink)
    """

    def __init__(self, filepath: str, format: str = "json"):
        """
        Initialize sink.

        Args:
            filepath: Output file path
            format: Output format ("json", "csv")
        """
        super().__init__()
        if format not in ("json", "csv"):
            raise ValueError(f"Unknown format {format!r}; expected json or csv")
        self.filepath = filepath
        self.format = format

    def set_tracker_pose(
        self,
        tracker_id: str,
        tracker_pose: Pose,
        hmd_relative_pose: Optional[Pose]
    ) -> None:
        super().set_tracker_pose(tracker_id, tracker_pose, hmd_relative_pose)
        self.export(self.filepath, self.format)

    def export(self, filepath: str, format: str = "json") -> None:
        """
        Write all received poses to file.

        Args:
            filepath: Output file path
            format: Output format ("json", "csv")
        """
        if format == "json":
            with open(filepath, 'w') as f:
                json.dump(self.to_dict(), f, indent=2)

        elif format == "csv":
            with open(filepath, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow([
                    "tracker_id", "frame",
                    "pos_x", "pos_y", "pos_z",
                    "quat_w", "quat_x", "quat_y", "quat_z"
                ])
                for tracker_id, entry in self.poses.items():
                    for frame, pose in entry.items():
                        if pose is None:
                            continue
                        writer.writerow([
                            tracker_id, frame,
                            *pose.position.tolist(),
                            *pose.orientation.tolist()
                        ])

        else:
            raise ValueError(f"Unknown format {format!r}; expected json or csv")


class CalibrationRunner:
    """
    External driving loop for a calibration session.

    Usage:
        runner = CalibrationRunner(session, tick_interval_s=1 / 60)
        status = runner.run(timeout_s=120)
    """

    def __init__(
        self,
        session: CalibrationSession,
        tick_interval_s: float = 1.0 / 60.0,
        sleep: Callable[[float], None] = time.sleep,
        on_tick: Optional[Callable[[CalibrationSession], None]] = None
    ):
        """
        Initialize runner.

        Args:
            session: Session to drive
            tick_interval_s: Delay between ticks
            sleep: Sleep function (swap for tests and simulations)
            on_tick: Called after every tick, e.g. to move simulated devices
        """
        if tick_interval_s < 0:
            raise ValueError("tick_interval_s must be >= 0")
        self.session = session
        self.tick_interval_s = float(tick_interval_s)
        self._sleep = sleep
        self._on_tick = on_tick
        self.ticks = 0
        self.start_time: Optional[float] = None

    def run(
        self,
        max_ticks: Optional[int] = None,
        timeout_s: Optional[float] = None,
        session_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Enter the session and tick until it reaches a terminal phase.

        Args:
            max_ticks: Stop after this many ticks (None = unbounded)
            timeout_s: Stop after this much wall time (None = unbounded)
            session_name: Name for the session recording, if any

        Returns:
            Status dict: final session status plus tick count and duration
        """
        self.start_time = time.time()
        self.ticks = 0
        self.session.enter(session_name=session_name)

        phases: List[str] = []
        try:
            while not self.session.phase.is_terminal:
                if max_ticks is not None and self.ticks >= max_ticks:
                    break
                if timeout_s is not None and time.time() - self.start_time >= timeout_s:
                    break

                phase = self.session.tick()
                self.ticks += 1
                if not phases or phases[-1] != phase.value:
                    phases.append(phase.value)
                if self._on_tick is not None:
                    self._on_tick(self.session)
                if self.tick_interval_s > 0:
                    self._sleep(self.tick_interval_s)
            status = self.session.get_status()
        finally:
            self.session.exit()

        status["ticks"] = self.ticks
        status["phases"] = phases
        status["duration_seconds"] = time.time() - self.start_time
        return status
