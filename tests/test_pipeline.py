import csv
import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from matcal.geo import Pose  # type: ignore
from matcal.pipeline import CalibrationRunner, MemoryPoseSink, PoseFileSink  # type: ignore
from matcal.session import CalibrationSession, Phase  # type: ignore
from matcal.sim import CalibrationScript, ManualClock, build_rig  # type: ignore
from matcal.visualize import ConsolePresenter  # type: ignore


def _session(with_hmd=True, presenter=None, sink=None):
    trackers, controller, hmd = build_rig(2, with_hmd=with_hmd)
    clock = ManualClock()
    session = CalibrationSession(
        controller, trackers, hmd=hmd, sink=sink, presenter=presenter, clock=clock
    )
    controller.place(session.locations[0].position)
    return session, controller, hmd, clock


def test_runner_drives_session_to_success():
    session, controller, hmd, clock = _session()
    runner = CalibrationRunner(
        session, sleep=clock.advance, on_tick=CalibrationScript(controller, hmd)
    )
    status = runner.run(max_ticks=5000)

    assert status["phase"] == "success"
    assert status["result"] is True
    assert status["ticks"] == runner.ticks
    assert status["phases"][0] == "place_controller"
    assert status["phases"][-1] == "success"
    # The runner always leaves the session
    assert session.phase is Phase.IDLE


def test_runner_stops_at_tick_limit():
    session, controller, hmd, clock = _session()
    status = CalibrationRunner(session, sleep=clock.advance).run(max_ticks=10)

    assert status["ticks"] == 10
    assert status["phase"] == "place_controller"
    assert status["result"] is None


def test_runner_rejects_negative_interval():
    session, _, _, _ = _session()
    with pytest.raises(ValueError):
        CalibrationRunner(session, tick_interval_s=-1.0)


def test_console_presenter_prompts():
    presenter = ConsolePresenter(enable_console=False)
    session, controller, hmd, clock = _session(presenter=presenter)
    runner = CalibrationRunner(
        session, sleep=clock.advance, on_tick=CalibrationScript(controller, hmd)
    )
    runner.run(max_ticks=5000)

    text = "\n".join(presenter.lines)
    assert "Stand the controller upright on location #1 (+X+Z Corner)" in text
    assert "Stand the controller upright on location #5 (+X-Z Corner)" in text
    assert "Location sampling complete. Please pick up the controller." in text
    assert "Set the HMD at the tracking origin" in text
    assert "Recording HMD sample 1/5" in text
    assert "Calibration succeeded" in text
    assert "tracker_0: reprojection error" in text


def test_console_presenter_render_place_and_record():
    presenter = ConsolePresenter(enable_console=False)
    session, controller, _, clock = _session()
    session.enter()

    controller.lift()
    session.tick()
    assert presenter.render(session) == [
        "Stand the controller upright on location #1 (+X+Z Corner)",
        "[Not stable and upright]",
    ]

    controller.place(session.current_location.position)
    session.tick()
    clock.advance(0.5)
    session.tick()
    assert presenter.render(session)[1] == "[stable for 500/1000ms]"

    clock.advance(0.5)
    session.tick()
    session.tick()
    lines = presenter.render(session)
    assert lines[1] == "Tracker 1 (tracker_0): sample 1/5"


def test_console_presenter_status_file(tmp_path):
    presenter = ConsolePresenter(output_dir=str(tmp_path), enable_console=False, session_name="run")
    session, _, _, _ = _session(presenter=presenter)
    session.enter()
    session.tick()
    presenter.close()

    lines = (tmp_path / "run_status.jsonl").read_text().splitlines()
    assert json.loads(lines[0])["status"]["phase"] == "place_controller"


def test_memory_sink():
    sink = MemoryPoseSink()
    sink.set_tracker_pose("a", Pose(position=[1.0, 2.0, 3.0]), None)
    assert sink.get_tracker_pose("a").position.tolist() == [1.0, 2.0, 3.0]
    assert sink.get_hmd_relative_pose("a") is None
    assert sink.get_tracker_pose("b") is None
    assert sink.to_dict()["trackers"]["a"]["hmd_relative_pose"] is None


def test_pose_file_sink_json_and_csv(tmp_path):
    json_path = tmp_path / "poses.json"
    sink = PoseFileSink(str(json_path))
    sink.set_tracker_pose("a", Pose(position=[1.0, 2.0, 3.0]), Pose(position=[4.0, 5.0, 6.0]))
    data = json.loads(json_path.read_text())
    assert data["trackers"]["a"]["tracker_pose"]["position"] == [1.0, 2.0, 3.0]

    csv_path = tmp_path / "poses.csv"
    sink.export(str(csv_path), format="csv")
    with open(csv_path, newline='') as f:
        rows = list(csv.DictReader(f))
    assert [row["frame"] for row in rows] == ["tracker_pose", "hmd_relative_pose"]
    assert float(rows[1]["pos_z"]) == 6.0

    with pytest.raises(ValueError):
        sink.export(str(tmp_path / "poses.xml"), format="xml")
    with pytest.raises(ValueError):
        PoseFileSink(str(tmp_path / "p"), format="yaml")


def test_sink_untouched_before_compute():
    sink = MemoryPoseSink()
    session, controller, hmd, clock = _session(with_hmd=False, sink=sink)
    runner = CalibrationRunner(session, sleep=clock.advance)
    runner.run(max_ticks=200)
    assert sink.poses == {}
