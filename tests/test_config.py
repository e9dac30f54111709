import json
import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
sys.path.insert(0, str(SRC))

from matcal.config import CalibrationConfig  # type: ignore
from matcal.geo import CalibrationLoader, Pose, create_dummy_intrinsics  # type: ignore


def test_defaults():
    config = CalibrationConfig()
    assert config.stabilize_wait_ms == 1000.0
    assert config.samples_per_location == 5
    assert config.hmd_capacity == 5
    assert config.reprojection_error_mode == "mean"
    assert [loc.name for loc in config.locations][2] == "Center"
    np.testing.assert_allclose(config.locations[0].position, [14.0, 17.7, 10.75])


def test_from_dict_and_round_trip():
    config = CalibrationConfig.from_dict({
        "stabilize_wait_ms": 500,
        "samples_per_location": 3,
        "hmd_sample_count": 8,
        "x_offset_cm": 20.0,
        "calibration_offset": {"position": [1.0, 2.0, 3.0], "orientation": [2.0, 0.0, 0.0, 0.0]},
    })
    assert config.hmd_capacity == 8
    assert config.locations[0].position == (20.0, 17.7, 10.75)
    np.testing.assert_allclose(config.calibration_offset.position, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(config.calibration_offset.orientation, [1.0, 0.0, 0.0, 0.0])

    again = CalibrationConfig.from_dict(config.to_dict())
    assert again.to_dict() == config.to_dict()


def test_load_from_file(tmp_path):
    path = tmp_path / "matcal.json"
    path.write_text(json.dumps({"reprojection_error_mode": "sum"}), encoding="utf-8")
    assert CalibrationConfig.load(str(path)).reprojection_error_mode == "sum"

    path.write_text(json.dumps([1, 2]), encoding="utf-8")
    with pytest.raises(ValueError):
        CalibrationConfig.load(str(path))


@pytest.mark.parametrize(
    "data",
    [
        {"stabilize_wait_ms": -1},
        {"samples_per_location": 0},
        {"hmd_sample_count": 0},
        {"reprojection_error_mode": "median"},
        {"calibration_offset": [0, 0, 0]},
        {"unknown_key": 1},
    ],
)
def test_invalid_values_rejected(data):
    with pytest.raises(ValueError):
        CalibrationConfig.from_dict(data)


def test_pose_matrix_round_trip():
    q = np.array([np.cos(0.3), np.sin(0.3), 0.0, 0.0])
    pose = Pose(position=[1.0, -2.0, 3.0], orientation=q)
    back = Pose.from_matrix(pose.to_matrix())
    np.testing.assert_allclose(back.to_matrix(), pose.to_matrix(), atol=1e-12)

    ident = pose.to_matrix() @ pose.inverse().to_matrix()
    np.testing.assert_allclose(ident, np.eye(4), atol=1e-12)

    with pytest.raises(ValueError):
        Pose.from_matrix(np.eye(3))


def test_calibration_loader_formats(tmp_path):
    single = tmp_path / "single.json"
    single.write_text(json.dumps({
        "camera_id": "tracker_a",
        "camera_matrix": {"fx": 600.0, "fy": 610.0, "cx": 330.0, "cy": 250.0},
        "resolution": {"width": 640, "height": 480},
    }), encoding="utf-8")
    params = CalibrationLoader.load(str(single))
    assert params["tracker_a"].fx == 600.0
    assert params["tracker_a"].cy == 250.0

    listing = tmp_path / "list.json"
    listing.write_text(json.dumps([
        {"camera_matrix": {"matrix": np.eye(3).tolist()}},
        {"camera_id": "b", "camera_matrix": {"matrix": [[1, 0, 0], [0, 1, 0]]}},
    ]), encoding="utf-8")
    with pytest.raises(ValueError):
        CalibrationLoader.load(str(listing))

    dummy = create_dummy_intrinsics(["x"], resolution=(800, 600))["x"]
    assert (dummy.cx, dummy.cy, dummy.height) == (400.0, 300.0, 600)
