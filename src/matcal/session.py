"""
Calibration session state machine.

Drives the mat calibration sequence one tick at a time:
- Place/record the controller at each of the five mat locations
- Place/record the HMD at the calibration origin (when an HMD is present)
- Solve every tracker pose and, with an HMD, its HMD-relative pose

Each phase has a handler that reads the device views and returns the next
phase; entry hooks reset the state the phase depends on.
"""

import logging
import time
from enum import Enum
from typing import Optional, Dict, Any, Callable, Iterable, Tuple

from .config import CalibrationConfig
from .logger import CalibrationLogger
from .metrics import CalibrationMetrics
from .sampling import (
    SampleAccumulator, LocationSequencer, LocationAction, StabilityGate,
    TrackerPoseContext, HMDPoseContext, CalibrationLocation,
    HMD_TARGET, location_points
)
from .solver import PoseSolver, FrameComposer
from .views import ControllerView, TrackerView, HMDView, ResultSink, CalibrationPresenter

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    PLACE_CONTROLLER = "place_controller"
    RECORD_CONTROLLER = "record_controller"
    PLACE_HMD = "place_hmd"
    RECORD_HMD = "record_hmd"
    COMPUTE_TRACKER_POSES = "compute_tracker_poses"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.SUCCESS, Phase.FAILED)


class CalibrationSession:
    """
    Mat calibration for one or more trackers, optionally relative to an HMD.

    Usage:
        session = CalibrationSession(controller, trackers, hmd=hmd, sink=sink)
        session.enter()
        while not session.phase.is_terminal:
            session.tick()
        session.exit()
    """

    def __init__(
        self,
        controller: ControllerView,
        trackers: Iterable[TrackerView],
        hmd: Optional[HMDView] = None,
        config: Optional[CalibrationConfig] = None,
        sink: Optional[ResultSink] = None,
        presenter: Optional[CalibrationPresenter] = None,
        event_logger: Optional[CalibrationLogger] = None,
        metrics: Optional[CalibrationMetrics] = None,
        solver: Optional[PoseSolver] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize a calibration session.

        Args:
            controller: View of the handheld light controller
            trackers: Tracker views to calibrate
            hmd: Optional HMD view; without one the HMD phases are skipped
            config: Session settings (defaults when None)
            sink: Receives every tracker pose once all solves succeed
            presenter: Receives phase changes and per-tick progress
            event_logger: JSONL session recorder
            metrics: Metrics collector
            solver: PnP solver (built from the config when None)
            clock: Monotonic time source in seconds, read once per tick
        """
        self.config = config or CalibrationConfig()
        self.controller = controller
        self.hmd = hmd
        self.sink = sink
        self.presenter = presenter
        self.metrics = metrics
        self.solver = solver or PoseSolver(error_mode=self.config.reprojection_error_mode)
        self._clock = clock

        self.trackers: Dict[str, TrackerView] = {}
        for view in trackers:
            tracker_id = str(view.tracker_id)
            if tracker_id in self.trackers:
                raise ValueError(f"Duplicate tracker id: {tracker_id}")
            self.trackers[tracker_id] = view
        if not self.trackers:
            raise ValueError("At least one tracker view is required")

        self.locations: Tuple[CalibrationLocation, ...] = self.config.locations
        self._accumulator = SampleAccumulator(
            self.trackers.keys(),
            location_count=len(self.locations),
            samples_per_location=self.config.samples_per_location,
            hmd_sample_count=self.config.hmd_capacity
        )
        self._sequencer = LocationSequencer(self.locations)
        self._gate = StabilityGate(self.config.stabilize_wait_ms)

        if event_logger is None and self.config.enable_logging:
            event_logger = CalibrationLogger(log_dir=self.config.log_dir)
        self._event_logger = event_logger
        self._owns_recording = False

        self._phase = Phase.IDLE
        self._phase_entered_at: Optional[float] = None
        self._now: Optional[float] = None
        self._result: Optional[bool] = None
        self.location_resets = 0
        self.hmd_resets = 0

        self._handlers: Dict[Phase, Callable[[float], Phase]] = {
            Phase.IDLE: self._tick_idle,
            Phase.PLACE_CONTROLLER: self._tick_place_controller,
            Phase.RECORD_CONTROLLER: self._tick_record_controller,
            Phase.PLACE_HMD: self._tick_place_hmd,
            Phase.RECORD_HMD: self._tick_record_hmd,
            Phase.COMPUTE_TRACKER_POSES: self._tick_compute_tracker_poses,
            Phase.SUCCESS: self._tick_terminal,
            Phase.FAILED: self._tick_terminal,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def enter(self, session_name: Optional[str] = None) -> None:
        """Start (or restart) the calibration sequence."""
        if self._event_logger is not None and not self._event_logger.is_recording:
            self._event_logger.start_recording(session_name=session_name)
            self._owns_recording = True
        self._log("session_start", {
            "trackers": {
                tid: {
                    "resolution": list(view.get_pixel_extents()),
                    "camera_matrix": view.get_intrinsic_matrix(),
                }
                for tid, view in self.trackers.items()
            },
            "has_hmd": self.has_hmd,
            "config": self.config.to_dict(),
        })
        self._now = self._clock()
        self._set_phase(Phase.IDLE)
        self._set_phase(Phase.PLACE_CONTROLLER)

    def exit(self) -> None:
        """Leave the sequence; stops a recording this session started."""
        self._now = self._clock()
        self._set_phase(Phase.IDLE)
        if self._owns_recording and self._event_logger is not None:
            self._event_logger.stop_recording()
            self._owns_recording = False

    def restart(self) -> None:
        """Discard all progress and wait for the controller at the first location."""
        logger.info("Calibration restarted from %s", self._phase.value)
        self._log("restart", {"from_phase": self._phase.value})
        self._now = self._clock()
        self._set_phase(Phase.IDLE)
        self._set_phase(Phase.PLACE_CONTROLLER)

    def tick(self) -> Phase:
        """
        Advance the state machine by one step.

        Returns:
            The phase after this tick
        """
        now = self._clock()
        self._now = now

        next_phase = self._handlers[self._phase](now)
        self._set_phase(next_phase)

        if self.metrics is not None:
            self.metrics.record_tick(self._phase.value)
        if self.presenter is not None:
            self.presenter.on_tick(self)
        return self._phase

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _set_phase(self, new_phase: Phase) -> None:
        old_phase = self._phase
        if new_phase is old_phase:
            return

        self._on_exit(old_phase)
        self._on_enter(new_phase, old_phase)
        self._phase = new_phase

        logger.info("Calibration phase %s -> %s", old_phase.value, new_phase.value)
        self._log("phase_change", {
            "old": old_phase.value,
            "new": new_phase.value,
            "location_index": self._sequencer.index,
        })
        if self.presenter is not None:
            self.presenter.on_phase_changed(self, old_phase, new_phase)

    def _on_exit(self, old_phase: Phase) -> None:
        if self.metrics is not None and self._phase_entered_at is not None and self._now is not None:
            self.metrics.record_phase_duration(old_phase.value, self._now - self._phase_entered_at)

    def _on_enter(self, new_phase: Phase, old_phase: Phase) -> None:
        self._phase_entered_at = self._now

        if new_phase is Phase.PLACE_CONTROLLER:
            if old_phase is Phase.IDLE:
                self._accumulator.reset()
                self._sequencer.reset()
                self._result = None
                self.location_resets = 0
                self.hmd_resets = 0
            self._accumulator.clear_current_location()
            self._accumulator.clear_hmd()
            self._gate.reset()
        elif new_phase is Phase.PLACE_HMD:
            self._accumulator.clear_hmd()
            self._gate.reset()

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------
    def _tick_idle(self, now: float) -> Phase:
        return Phase.PLACE_CONTROLLER

    def _tick_terminal(self, now: float) -> Phase:
        return self._phase

    def _tick_place_controller(self, now: float) -> Phase:
        if self._gate.update(self.controller.is_stable_and_aligned(), now):
            return Phase.RECORD_CONTROLLER
        return Phase.PLACE_CONTROLLER

    def _tick_record_controller(self, now: float) -> Phase:
        is_stable = self.controller.is_stable_and_aligned()
        location_complete = self._accumulator.location_complete

        if not location_complete:
            if is_stable:
                self._record_controller_samples()
                return Phase.RECORD_CONTROLLER

            # Moved before every tracker finished: redo this location
            self._sequencer.on_controller_lifted(location_complete=False)
            self.location_resets += 1
            logger.info("Controller moved during recording at location %d", self._sequencer.index)
            self._log("location_reset", {"location_index": self._sequencer.index})
            if self.metrics is not None:
                self.metrics.record_location_reset(self._sequencer.index)
            return Phase.PLACE_CONTROLLER

        if is_stable:
            # Complete; waiting for the controller to be picked up
            return Phase.RECORD_CONTROLLER

        completed_index = self._sequencer.index
        action = self._sequencer.on_controller_lifted(location_complete=True)
        self._log("location_advance", {
            "completed_index": completed_index,
            "location_index": self._sequencer.index,
        })
        if action is LocationAction.NEXT_LOCATION:
            return Phase.PLACE_CONTROLLER
        return Phase.PLACE_HMD if self.has_hmd else Phase.COMPUTE_TRACKER_POSES

    def _record_controller_samples(self) -> None:
        if not self.controller.is_tracking():
            return

        location_index = self._sequencer.index
        for tracker_id, context in self._accumulator.trackers.items():
            if context.current.is_full:
                continue
            sample = self.controller.get_pixel_location(tracker_id)
            if sample is None:
                continue

            completed = self._accumulator.record(tracker_id, location_index, sample)
            if self.metrics is not None:
                self.metrics.record_sample(tracker_id)
            if completed:
                average = context.avg_screen_points[location_index]
                self._log("location_complete", {
                    "tracker_id": tracker_id,
                    "location_index": location_index,
                    "location_name": self.locations[location_index].name,
                    "average": average.to_dict() if average else None,
                })

    def _tick_place_hmd(self, now: float) -> Phase:
        if self._gate.update(self.hmd.is_stable_and_aligned(), now):
            return Phase.RECORD_HMD
        return Phase.PLACE_HMD

    def _tick_record_hmd(self, now: float) -> Phase:
        if not self.hmd.is_stable_and_aligned():
            self.hmd_resets += 1
            logger.info("HMD moved during recording")
            self._log("hmd_reset", {"samples": self._accumulator.hmd.count})
            if self.metrics is not None:
                self.metrics.record_hmd_reset()
            return Phase.PLACE_HMD

        if self.hmd.is_tracking() and not self._accumulator.hmd.is_full:
            if self._accumulator.record(HMD_TARGET, self._sequencer.index, self.hmd.get_pose()):
                hmd_context = self._accumulator.hmd
                self._log("hmd_complete", {
                    "avg_position": hmd_context.avg_position,
                    "avg_orientation": hmd_context.avg_orientation,
                })
                return Phase.COMPUTE_TRACKER_POSES
        return Phase.RECORD_HMD

    def _tick_compute_tracker_poses(self, now: float) -> Phase:
        success = self._compute_tracker_poses()
        return Phase.SUCCESS if success else Phase.FAILED

    def _compute_tracker_poses(self) -> bool:
        hmd_transform = None
        hmd_ok = True
        if self.has_hmd:
            hmd_pose = self._accumulator.hmd.average_pose
            if hmd_pose is None:
                logger.warning("No averaged HMD pose; cannot compose HMD-relative poses")
                hmd_ok = False
            else:
                hmd_transform = FrameComposer.compose(
                    self.hmd.get_tracker_pose(),
                    hmd_pose,
                    self.config.calibration_offset
                )

        object_points = location_points(self.locations)
        all_valid = hmd_ok
        for tracker_id, view in self.trackers.items():
            context = self._accumulator.trackers[tracker_id]
            context.clear_results()

            if context.has_all_locations:
                _, height = view.get_pixel_extents()
                result = self.solver.solve(
                    object_points,
                    context.image_points(),
                    view.get_intrinsic_matrix(),
                    height
                )
                context.valid = result.valid
                if result.valid:
                    context.tracker_pose = result.pose
                    context.reprojection_error = result.reprojection_error
                    if hmd_transform is not None:
                        context.hmd_relative_pose = FrameComposer.apply(hmd_transform, result.transform)
            else:
                logger.warning("Tracker %s is missing averaged samples", tracker_id)

            if not context.valid:
                logger.warning("Tracker %s pose could not be solved", tracker_id)
            self._log("tracker_solved", context.to_dict())
            if self.metrics is not None:
                self.metrics.record_solve(tracker_id, context.valid, context.reprojection_error)
            all_valid = all_valid and context.valid

        if all_valid and self.sink is not None:
            for tracker_id, context in self._accumulator.trackers.items():
                self.sink.set_tracker_pose(tracker_id, context.tracker_pose, context.hmd_relative_pose)

        self._result = all_valid
        self._log("session_result", {"success": all_valid})
        if self.metrics is not None:
            self.metrics.record_result(all_valid)
        return all_valid

    def _log(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_logger is not None and self._event_logger.is_recording:
            self._event_logger.log_event(event_type, data)

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------
    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def has_hmd(self) -> bool:
        return self.hmd is not None

    @property
    def location_index(self) -> int:
        return self._sequencer.index

    @property
    def location_count(self) -> int:
        return len(self.locations)

    @property
    def current_location(self) -> Optional[CalibrationLocation]:
        return self._sequencer.current

    @property
    def location_name(self) -> Optional[str]:
        location = self._sequencer.current
        return location.name if location else None

    @property
    def is_stable(self) -> bool:
        return self._gate.is_stable

    def stable_duration_ms(self) -> float:
        """Stable time of the controller/HMD being placed, as of the last tick."""
        if self._now is None:
            return 0.0
        return self._gate.stable_duration_ms(self._now)

    @property
    def tracker_contexts(self) -> Dict[str, TrackerPoseContext]:
        return dict(self._accumulator.trackers)

    @property
    def hmd_context(self) -> HMDPoseContext:
        return self._accumulator.hmd

    def tracker_progress(self) -> Dict[str, Tuple[int, int]]:
        """Samples recorded / needed at the current location, per tracker."""
        return self._accumulator.progress()

    def hmd_progress(self) -> Tuple[int, int]:
        return self._accumulator.hmd.count, self._accumulator.hmd.capacity

    @property
    def location_complete(self) -> bool:
        return self._accumulator.location_complete

    @property
    def result(self) -> Optional[bool]:
        """True on success, False on failure, None until poses are computed."""
        return self._result

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of session progress for presenters and runners."""
        trackers = {}
        for tracker_id, context in self._accumulator.trackers.items():
            trackers[tracker_id] = {
                "samples": context.current.count,
                "capacity": context.current.capacity,
                "locations_complete": sum(1 for p in context.avg_screen_points if p is not None),
                "valid": context.valid,
                "reprojection_error": context.reprojection_error,
            }

        return {
            "phase": self._phase.value,
            "location_index": self.location_index,
            "location_count": self.location_count,
            "location_name": self.location_name,
            "is_stable": self.is_stable,
            "stable_duration_ms": round(self.stable_duration_ms(), 1),
            "stabilize_wait_ms": self.config.stabilize_wait_ms,
            "trackers": trackers,
            "hmd": {
                "present": self.has_hmd,
                "samples": self._accumulator.hmd.count,
                "capacity": self._accumulator.hmd.capacity,
            },
            "location_resets": self.location_resets,
            "hmd_resets": self.hmd_resets,
            "result": self._result,
        }
