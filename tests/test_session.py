import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from matcal.config import CalibrationConfig  # type: ignore
from matcal.pipeline import MemoryPoseSink  # type: ignore
from matcal.session import CalibrationSession, Phase  # type: ignore
from matcal.sim import CalibrationScript, ManualClock, build_rig  # type: ignore

DT = 1.0 / 60.0


class RecordingPresenter:
    def __init__(self):
        self.transitions = []
        self.ticks = 0
        self.changes_since_tick = 0
        self.max_changes_per_tick = 0

    def on_phase_changed(self, session, old, new):
        self.transitions.append((old, new))
        self.changes_since_tick += 1

    def on_tick(self, session):
        self.max_changes_per_tick = max(self.max_changes_per_tick, self.changes_since_tick)
        self.changes_since_tick = 0
        self.ticks += 1


def _make(tracker_count=2, with_hmd=True, config=None, presenter=None, seed=0):
    trackers, controller, hmd = build_rig(tracker_count, with_hmd, seed=seed)
    clock = ManualClock()
    sink = MemoryPoseSink()
    session = CalibrationSession(
        controller, trackers, hmd=hmd, config=config, sink=sink,
        presenter=presenter, clock=clock,
    )
    return session, trackers, controller, hmd, clock, sink


def _drive_until(session, controller, hmd, clock, stop, max_ticks=5000):
    script = CalibrationScript(controller, hmd)
    for _ in range(max_ticks):
        if stop(session):
            return True
        session.tick()
        script(session)
        clock.advance(DT)
    return stop(session)


def _start(session, controller):
    session.enter()
    controller.place(session.current_location.position)


def _to_record_controller(session, controller, clock):
    session.tick()
    clock.advance(1.5)
    assert session.tick() is Phase.RECORD_CONTROLLER


def test_full_calibration_with_hmd_succeeds():
    presenter = RecordingPresenter()
    session, trackers, controller, hmd, clock, sink = _make(presenter=presenter)
    _start(session, controller)

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    assert session.phase is Phase.SUCCESS
    assert session.result is True

    assert set(sink.poses) == {t.tracker_id for t in trackers}
    for tracker in trackers:
        pose = sink.get_tracker_pose(tracker.tracker_id)
        np.testing.assert_allclose(pose.position, tracker.eye, atol=1e-2)
        assert sink.get_hmd_relative_pose(tracker.tracker_id) is not None

    entered = [new for _, new in presenter.transitions]
    assert entered.count(Phase.RECORD_CONTROLLER) == 5
    assert entered[-4:] == [
        Phase.PLACE_HMD, Phase.RECORD_HMD, Phase.COMPUTE_TRACKER_POSES, Phase.SUCCESS
    ]


def test_calibration_without_hmd_skips_hmd_phases():
    presenter = RecordingPresenter()
    session, trackers, controller, hmd, clock, sink = _make(with_hmd=False, presenter=presenter)
    assert hmd is None
    assert not session.has_hmd
    _start(session, controller)

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    assert session.phase is Phase.SUCCESS

    entered = [new for _, new in presenter.transitions]
    assert Phase.PLACE_HMD not in entered
    assert Phase.RECORD_HMD not in entered
    for tracker in trackers:
        assert sink.get_tracker_pose(tracker.tracker_id) is not None
        assert sink.get_hmd_relative_pose(tracker.tracker_id) is None


def test_controller_must_be_stable_for_wait_period():
    session, _, controller, _, clock, _ = _make()
    _start(session, controller)

    assert session.tick() is Phase.PLACE_CONTROLLER
    clock.advance(0.5)
    assert session.tick() is Phase.PLACE_CONTROLLER
    assert session.stable_duration_ms() == pytest.approx(500.0)

    controller.lift()
    clock.advance(0.25)
    assert session.tick() is Phase.PLACE_CONTROLLER
    assert not session.is_stable

    controller.place(session.current_location.position)
    session.tick()
    clock.advance(0.5)
    assert session.tick() is Phase.PLACE_CONTROLLER
    clock.advance(0.5)
    assert session.tick() is Phase.RECORD_CONTROLLER


def test_controller_moved_mid_record_resets_location():
    session, _, controller, hmd, clock, _ = _make()
    _start(session, controller)

    # Finish the first location, then interrupt the second
    assert _drive_until(session, controller, hmd, clock, lambda s: s.location_index == 1)
    assert session.phase is Phase.PLACE_CONTROLLER
    _to_record_controller(session, controller, clock)
    session.tick()
    assert all(count == 1 for count, _ in session.tracker_progress().values())

    controller.lift()
    assert session.tick() is Phase.PLACE_CONTROLLER
    assert session.location_index == 1
    assert session.location_resets == 1
    assert all(count == 0 for count, _ in session.tracker_progress().values())
    for context in session.tracker_contexts.values():
        assert context.avg_screen_points[0] is not None
        assert context.avg_screen_points[1] is None


def test_completed_location_waits_for_controller_lift():
    session, _, controller, _, clock, _ = _make()
    _start(session, controller)
    _to_record_controller(session, controller, clock)

    for _ in range(5):
        session.tick()
    assert session.location_complete

    for _ in range(10):
        assert session.tick() is Phase.RECORD_CONTROLLER
    assert session.location_index == 0

    controller.lift()
    assert session.tick() is Phase.PLACE_CONTROLLER
    assert session.location_index == 1
    assert session.location_resets == 0


def test_no_samples_while_controller_not_tracking():
    session, _, controller, _, clock, _ = _make()
    _start(session, controller)
    _to_record_controller(session, controller, clock)

    controller.tracking = False
    for _ in range(10):
        assert session.tick() is Phase.RECORD_CONTROLLER
    assert all(count == 0 for count, _ in session.tracker_progress().values())


def test_hmd_moved_mid_record_returns_to_place_hmd():
    session, _, controller, hmd, clock, _ = _make()
    _start(session, controller)

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase is Phase.RECORD_HMD)
    session.tick()
    assert session.hmd_progress() == (1, 5)

    hmd.stable = False
    assert session.tick() is Phase.PLACE_HMD
    assert session.hmd_resets == 1
    assert session.hmd_progress() == (0, 5)

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    assert session.phase is Phase.SUCCESS


@pytest.mark.parametrize(
    "target",
    [
        Phase.PLACE_CONTROLLER,
        Phase.RECORD_CONTROLLER,
        Phase.PLACE_HMD,
        Phase.RECORD_HMD,
        Phase.COMPUTE_TRACKER_POSES,
        Phase.SUCCESS,
    ],
)
def test_restart_from_any_phase_discards_progress(target):
    session, _, controller, hmd, clock, sink = _make()
    _start(session, controller)
    assert _drive_until(
        session, controller, hmd, clock,
        lambda s: s.phase is target and (target is not Phase.PLACE_CONTROLLER or s.location_index > 0)
    )

    session.restart()

    assert session.phase is Phase.PLACE_CONTROLLER
    assert session.location_index == 0
    assert session.result is None
    assert session.hmd_progress() == (0, 5)
    for context in session.tracker_contexts.values():
        assert context.avg_screen_points == [None] * 5
        assert context.current.count == 0
        assert not context.valid


def test_restart_from_idle_and_tick_from_idle():
    session, _, controller, _, _, _ = _make()
    assert session.phase is Phase.IDLE
    assert session.tick() is Phase.PLACE_CONTROLLER

    session.exit()
    assert session.phase is Phase.IDLE
    session.restart()
    assert session.phase is Phase.PLACE_CONTROLLER


def test_at_most_one_transition_per_tick():
    presenter = RecordingPresenter()
    session, _, controller, hmd, clock, _ = _make(presenter=presenter)
    _start(session, controller)
    presenter.changes_since_tick = 0

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    assert presenter.max_changes_per_tick == 1


def test_terminal_phase_is_sticky():
    session, _, controller, hmd, clock, _ = _make(with_hmd=False)
    _start(session, controller)
    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    for _ in range(3):
        assert session.tick() is Phase.SUCCESS


def test_degenerate_mat_fails_without_publishing():
    config = CalibrationConfig(x_offset_cm=0.0, z_offset_cm=0.0)
    session, _, controller, hmd, clock, sink = _make(config=config)
    _start(session, controller)

    assert _drive_until(session, controller, hmd, clock, lambda s: s.phase.is_terminal)
    assert session.phase is Phase.FAILED
    assert session.result is False
    assert sink.poses == {}
    for context in session.tracker_contexts.values():
        assert not context.valid
        assert context.tracker_pose is None


def test_constructor_rejects_bad_tracker_sets():
    trackers, controller, _ = build_rig(2, with_hmd=False)
    with pytest.raises(ValueError):
        CalibrationSession(controller, [])
    with pytest.raises(ValueError):
        CalibrationSession(controller, [trackers[0], trackers[0]])


def test_status_snapshot():
    session, trackers, controller, _, clock, _ = _make()
    _start(session, controller)
    session.tick()

    status = session.get_status()
    assert status["phase"] == "place_controller"
    assert status["location_index"] == 0
    assert status["location_count"] == 5
    assert status["location_name"] == "+X+Z Corner"
    assert status["is_stable"] is True
    assert status["stabilize_wait_ms"] == 1000.0
    assert status["hmd"] == {"present": True, "samples": 0, "capacity": 5}
    assert set(status["trackers"]) == {t.tracker_id for t in trackers}
    assert status["result"] is None
