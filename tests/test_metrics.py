import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from matcal.metrics import CalibrationMetrics, MetricsExporter  # type: ignore
from matcal.session import CalibrationSession  # type: ignore
from matcal.sim import CalibrationScript, ManualClock, build_rig  # type: ignore


def test_counters_and_summary():
    metrics = CalibrationMetrics()
    metrics.record_tick("place_controller")
    metrics.record_tick("place_controller")
    metrics.record_tick("record_controller")
    metrics.record_phase_duration("place_controller", 1.25)
    metrics.record_phase_duration("place_controller", -3.0)
    metrics.record_sample("t0")
    metrics.record_sample("t0")
    metrics.record_location_reset(1)
    metrics.record_location_reset(1)
    metrics.record_hmd_reset()
    metrics.record_solve("t0", True, 0.125)
    metrics.record_result(True)

    summary = metrics.get_summary()
    session = summary["session"]
    assert session["tick_count"] == 3
    assert session["phase_ticks"] == {"place_controller": 2, "record_controller": 1}
    assert session["phase_seconds"] == {"place_controller": 1.25}
    assert session["location_resets"] == 2
    assert session["resets_by_location"] == {"1": 2}
    assert session["hmd_resets"] == 1
    assert session["successes"] == 1
    assert session["failures"] == 0
    assert summary["trackers"]["t0"] == {
        "sample_count": 2,
        "solve_count": 1,
        "valid": True,
        "reprojection_error": 0.125,
    }

    assert metrics.get_tracker_metrics("t0")["tracker_id"] == "t0"
    assert metrics.get_tracker_metrics("missing") is None

    metrics.reset()
    assert metrics.get_summary()["session"]["tick_count"] == 0
    assert metrics.get_summary()["trackers"] == {}


def test_prometheus_export():
    metrics = CalibrationMetrics()
    metrics.record_sample("t0")
    metrics.record_solve("t0", False, 0.0)
    text = metrics.export_prometheus()

    assert "# TYPE matcal_ticks_total counter" in text
    assert 'matcal_tracker_samples_total{tracker="t0"} 1' in text
    assert 'matcal_tracker_pose_valid{tracker="t0"} 0' in text


def test_exporter_files(tmp_path):
    metrics = CalibrationMetrics()
    metrics.record_tick("idle")

    json_path = tmp_path / "metrics.json"
    MetricsExporter.to_json(metrics.get_summary(), str(json_path))
    assert json.loads(json_path.read_text())["session"]["tick_count"] == 1

    jsonl_path = tmp_path / "metrics.jsonl"
    MetricsExporter.to_jsonl(metrics.get_summary(), str(jsonl_path))
    MetricsExporter.to_jsonl(metrics.get_summary(), str(jsonl_path))
    assert len(jsonl_path.read_text().splitlines()) == 2

    prom_path = tmp_path / "metrics.prom"
    MetricsExporter.to_prometheus_file(metrics, str(prom_path))
    assert "matcal_ticks_total 1" in prom_path.read_text()


def test_session_feeds_metrics():
    trackers, controller, hmd = build_rig(2, with_hmd=True)
    clock = ManualClock()
    metrics = CalibrationMetrics()
    session = CalibrationSession(controller, trackers, hmd=hmd, metrics=metrics, clock=clock)
    script = CalibrationScript(controller, hmd, interruptions=1)

    session.enter()
    controller.place(session.current_location.position)
    ticks = 0
    while not session.phase.is_terminal and ticks < 5000:
        session.tick()
        script(session)
        clock.advance(1.0 / 60.0)
        ticks += 1

    summary = metrics.get_summary()
    assert summary["session"]["tick_count"] == ticks
    assert summary["session"]["location_resets"] == 1
    assert summary["session"]["resets_by_location"] == {"0": 1}
    assert summary["session"]["successes"] == 1
    assert summary["session"]["phase_seconds"]["place_controller"] > 5.0
    for tracker in trackers:
        data = summary["trackers"][tracker.tracker_id]
        # One sample lost to the interruption
        assert data["sample_count"] == 5 * 5 + 1
        assert data["solve_count"] == 1
        assert data["valid"] is True
