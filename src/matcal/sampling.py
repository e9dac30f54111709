"""
Sampling primitives for mat calibration.

Provides functionality to:
- Define the five calibration mat locations
- Debounce a "stable and upright" signal into a stable-for-threshold event
- Buffer per-tracker screen samples and per-HMD pose samples, averaging on completion
- Sequence the calibration locations
"""

import logging
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Iterable, Union
from dataclasses import dataclass, field

import numpy as np

from .geo import Pose, normalize_quaternion

logger = logging.getLogger(__name__)


# Mat geometry in centimeters, y up
HEIGHT_TO_BULB_CENTER_CM = 17.7  # base to bulb center of an upright controller
SAMPLE_X_OFFSET_CM = 14.0  # half the long side of a letter sheet
SAMPLE_Z_OFFSET_CM = 10.75  # half the short side of a letter sheet

DEFAULT_STABILIZE_WAIT_MS = 1000.0
DEFAULT_SAMPLES_PER_LOCATION = 5


@dataclass(frozen=True)
class CalibrationLocation:
    """A fixed position on the calibration mat (bulb center, mat space)."""
    name: str
    position: Tuple[float, float, float]

    def as_array(self) -> np.ndarray:
        return np.asarray(self.position, dtype=np.float64)


def build_mat_locations(
    x_offset: float = SAMPLE_X_OFFSET_CM,
    z_offset: float = SAMPLE_Z_OFFSET_CM,
    height: float = HEIGHT_TO_BULB_CENTER_CM
) -> Tuple[CalibrationLocation, ...]:
    """
    Build the five sample locations: four sheet corners and the center.

    Args:
        x_offset: Half extent of the mat along x
        z_offset: Half extent of the mat along z
        height: Bulb center height above the mat

    Returns:
        Locations in sampling order
    """
    return (
        CalibrationLocation("+X+Z Corner", (x_offset, height, z_offset)),
        CalibrationLocation("-X+Z Corner", (-x_offset, height, z_offset)),
        CalibrationLocation("Center", (0.0, height, 0.0)),
        CalibrationLocation("-X-Z Corner", (-x_offset, height, -z_offset)),
        CalibrationLocation("+X-Z Corner", (x_offset, height, -z_offset)),
    )


MAT_LOCATIONS = build_mat_locations()


def location_points(locations: Iterable[CalibrationLocation]) -> np.ndarray:
    """Nx3 array of location positions."""
    return np.array([loc.position for loc in locations], dtype=np.float64)


class StabilityGate:
    """
    Debounce a boolean stability reading into a single edge event.

    update() returns True exactly once: on the first reading at which the
    signal has been continuously true for at least threshold_ms. Any false
    reading clears the flag; timing restarts on the next true reading.
    """

    def __init__(self, threshold_ms: float = DEFAULT_STABILIZE_WAIT_MS):
        if threshold_ms < 0:
            raise ValueError("threshold_ms must be >= 0")
        self.threshold_ms = float(threshold_ms)
        self._stable = False
        self._stable_start: Optional[float] = None
        self._fired = False

    def update(self, is_stable: bool, now: float) -> bool:
        """
        Feed one reading.

        Args:
            is_stable: Current "stable and aligned with gravity" reading
            now: Monotonic time in seconds

        Returns:
            True if this reading completes the stable-for-threshold period
        """
        if not is_stable:
            self._stable = False
            self._stable_start = None
            self._fired = False
            return False

        if not self._stable:
            self._stable = True
            self._stable_start = now
        elif not self._fired and self.stable_duration_ms(now) >= self.threshold_ms:
            self._fired = True
            return True
        return False

    def stable_duration_ms(self, now: float) -> float:
        if not self._stable or self._stable_start is None:
            return 0.0
        return max(0.0, (now - self._stable_start) * 1000.0)

    def reset(self) -> None:
        self._stable = False
        self._stable_start = None
        self._fired = False

    @property
    def is_stable(self) -> bool:
        return self._stable

    @property
    def stable_start(self) -> Optional[float]:
        return self._stable_start


@dataclass(frozen=True)
class ScreenSample:
    """Observed pixel location of the controller light on one tracker image."""
    x: float
    y: float

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=np.float64)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class TrackerLocationSamples:
    """Bounded screen sample buffer for one (tracker, location) pair."""
    capacity: int = DEFAULT_SAMPLES_PER_LOCATION
    samples: List[ScreenSample] = field(default_factory=list)
    average: Optional[ScreenSample] = None

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def is_full(self) -> bool:
        return len(self.samples) >= self.capacity

    def add(self, sample: ScreenSample) -> bool:
        """Append a sample; returns True if it completed the buffer."""
        if self.is_full:
            return False
        self.samples.append(sample)
        if self.is_full:
            mean = np.mean([s.as_array() for s in self.samples], axis=0)
            self.average = ScreenSample(float(mean[0]), float(mean[1]))
            return True
        return False

    def clear(self) -> None:
        self.samples.clear()
        self.average = None


@dataclass
class TrackerPoseContext:
    """Per-tracker calibration state for one session."""
    tracker_id: str
    location_count: int = len(MAT_LOCATIONS)
    samples_per_location: int = DEFAULT_SAMPLES_PER_LOCATION
    avg_screen_points: List[Optional[ScreenSample]] = field(default_factory=list)
    current: TrackerLocationSamples = field(default_factory=TrackerLocationSamples)
    valid: bool = False
    tracker_pose: Optional[Pose] = None
    hmd_relative_pose: Optional[Pose] = None
    reprojection_error: float = 0.0

    def __post_init__(self) -> None:
        if not self.avg_screen_points:
            self.avg_screen_points = [None] * self.location_count
        self.current = TrackerLocationSamples(capacity=self.samples_per_location)

    @property
    def has_all_locations(self) -> bool:
        return all(p is not None for p in self.avg_screen_points)

    def image_points(self) -> np.ndarray:
        """Nx2 averaged observations; raises if a location is missing."""
        if not self.has_all_locations:
            raise ValueError(f"Tracker {self.tracker_id} is missing averaged samples")
        return np.array([p.as_array() for p in self.avg_screen_points], dtype=np.float64)

    def clear_results(self) -> None:
        self.valid = False
        self.tracker_pose = None
        self.hmd_relative_pose = None
        self.reprojection_error = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracker_id": self.tracker_id,
            "avg_screen_points": [p.to_dict() if p else None for p in self.avg_screen_points],
            "valid": self.valid,
            "tracker_pose": self.tracker_pose.to_dict() if self.tracker_pose else None,
            "hmd_relative_pose": self.hmd_relative_pose.to_dict() if self.hmd_relative_pose else None,
            "reprojection_error": self.reprojection_error,
        }


@dataclass
class HMDPoseContext:
    """World-space HMD samples taken at the calibration origin."""
    capacity: int = len(MAT_LOCATIONS)
    positions: List[np.ndarray] = field(default_factory=list)
    orientations: List[np.ndarray] = field(default_factory=list)
    avg_position: Optional[np.ndarray] = None
    avg_orientation: Optional[np.ndarray] = None

    @property
    def count(self) -> int:
        return len(self.positions)

    @property
    def is_full(self) -> bool:
        return len(self.positions) >= self.capacity

    @property
    def average_pose(self) -> Optional[Pose]:
        if self.avg_position is None or self.avg_orientation is None:
            return None
        return Pose(position=self.avg_position, orientation=self.avg_orientation)

    def add(self, pose: Pose) -> bool:
        """
        Append an HMD pose sample; returns True if it completed the buffer.

        Orientations are averaged per component and renormalized, falling back
        to identity on a zero-length mean. This only approximates a rotation
        average and holds for near-identical samples.
        """
        if self.is_full:
            return False
        self.positions.append(np.asarray(pose.position, dtype=np.float64).copy())
        self.orientations.append(np.asarray(pose.orientation, dtype=np.float64).copy())
        if self.is_full:
            self.avg_position = np.mean(self.positions, axis=0)
            self.avg_orientation = normalize_quaternion(np.mean(self.orientations, axis=0))
            return True
        return False

    def clear(self) -> None:
        self.positions.clear()
        self.orientations.clear()
        self.avg_position = None
        self.avg_orientation = None


class _HMDTarget:
    def __repr__(self) -> str:
        return "HMD_TARGET"


# Accumulator key for the HMD buffer, distinct from every tracker id
HMD_TARGET = _HMDTarget()


class SampleAccumulator:
    """
    Collect raw samples for every tracker and for the HMD.

    Usage:
        acc = SampleAccumulator(["tracker_0", "tracker_1"])
        done = acc.record("tracker_0", 0, ScreenSample(320.0, 240.0))
        done = acc.record(HMD_TARGET, 0, hmd_pose)
    """

    def __init__(
        self,
        tracker_ids: Iterable[str],
        location_count: int = len(MAT_LOCATIONS),
        samples_per_location: int = DEFAULT_SAMPLES_PER_LOCATION,
        hmd_sample_count: Optional[int] = None
    ):
        if samples_per_location <= 0:
            raise ValueError("samples_per_location must be > 0")
        self.location_count = int(location_count)
        self.samples_per_location = int(samples_per_location)
        self.trackers: Dict[str, TrackerPoseContext] = {
            tid: TrackerPoseContext(
                tracker_id=tid,
                location_count=self.location_count,
                samples_per_location=self.samples_per_location,
            )
            for tid in tracker_ids
        }
        self.hmd = HMDPoseContext(
            capacity=int(hmd_sample_count) if hmd_sample_count else self.location_count
        )

    def record(
        self,
        target: Union[str, _HMDTarget],
        location_index: int,
        sample: Union[ScreenSample, Pose]
    ) -> bool:
        """
        Append a sample for a tracker (or HMD_TARGET) at a location.

        Args:
            target: Tracker id, or HMD_TARGET for the HMD buffer
            location_index: Active location index (ignored for the HMD)
            sample: ScreenSample for trackers, Pose for the HMD

        Returns:
            True if this sample completed the buffer; the average is stored
        """
        if target is HMD_TARGET:
            if not isinstance(sample, Pose):
                raise ValueError("HMD samples must be Pose instances")
            completed = self.hmd.add(sample)
            if completed:
                logger.debug("HMD sampling complete: %s", self.hmd.avg_position)
            return completed

        context = self.trackers.get(target)  # type: ignore[arg-type]
        if context is None:
            raise ValueError(f"Unknown tracker id: {target!r}")
        if not 0 <= location_index < self.location_count:
            raise ValueError(f"location_index out of range: {location_index}")
        if not isinstance(sample, ScreenSample):
            raise ValueError("Tracker samples must be ScreenSample instances")

        completed = context.current.add(sample)
        if completed:
            context.avg_screen_points[location_index] = context.current.average
            logger.debug(
                "Tracker %s location %d averaged to %s",
                target, location_index, context.current.average
            )
        return completed

    def tracker_needs_samples(self, tracker_id: str) -> bool:
        return not self.trackers[tracker_id].current.is_full

    @property
    def location_complete(self) -> bool:
        """True once every tracker has a full buffer at the current location."""
        return all(ctx.current.is_full for ctx in self.trackers.values())

    def progress(self) -> Dict[str, Tuple[int, int]]:
        return {
            tid: (ctx.current.count, ctx.current.capacity)
            for tid, ctx in self.trackers.items()
        }

    def clear_current_location(self) -> None:
        for ctx in self.trackers.values():
            ctx.current.clear()

    def clear_hmd(self) -> None:
        self.hmd.clear()

    def reset(self) -> None:
        """Discard every buffer, average and result."""
        for ctx in self.trackers.values():
            ctx.current.clear()
            ctx.avg_screen_points = [None] * self.location_count
            ctx.clear_results()
        self.hmd.clear()


class LocationAction(Enum):
    """Outcome of the controller being lifted during location recording."""
    RESET_LOCATION = "reset_location"
    NEXT_LOCATION = "next_location"
    FINISHED = "finished"


class LocationSequencer:
    """
    Walk the calibration locations in order.

    The index only moves forward and never exceeds the location count.
    """

    def __init__(self, locations: Tuple[CalibrationLocation, ...] = MAT_LOCATIONS):
        if not locations:
            raise ValueError("At least one calibration location is required")
        self.locations = tuple(locations)
        self._index = 0

    @property
    def index(self) -> int:
        return self._index

    @property
    def location_count(self) -> int:
        return len(self.locations)

    @property
    def is_finished(self) -> bool:
        return self._index >= len(self.locations)

    @property
    def current(self) -> Optional[CalibrationLocation]:
        if self.is_finished:
            return None
        return self.locations[self._index]

    def advance(self) -> bool:
        """Move to the next location; returns False once past the last one."""
        if not self.is_finished:
            self._index += 1
        return not self.is_finished

    def on_controller_lifted(self, location_complete: bool) -> LocationAction:
        """
        Decide what instability means for the active location.

        Args:
            location_complete: Every tracker has a full sample set here

        Returns:
            RESET_LOCATION if recording was interrupted, otherwise
            NEXT_LOCATION or FINISHED after advancing
        """
        if not location_complete:
            return LocationAction.RESET_LOCATION
        return LocationAction.NEXT_LOCATION if self.advance() else LocationAction.FINISHED

    def reset(self) -> None:
        self._index = 0
