"""Simulation utilities for mat calibration.

Synthetic trackers, controller and HMD with known ground truth, plus a
closed-loop runner that scripts the whole placement sequence through a
CalibrationSession so calibration can be exercised deterministically without
hardware.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
import argparse
import json
import logging
import sys
from typing import Iterable

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from .config import CalibrationConfig
from .geo import (
    CameraParams, Pose, create_dummy_intrinsics, invert_transform, make_transform,
    rotation_error_deg,
)
from .logger import CalibrationLogger
from .metrics import CalibrationMetrics, MetricsExporter
from .pipeline import CalibrationRunner, PoseFileSink
from .sampling import HEIGHT_TO_BULB_CENTER_CM, ScreenSample
from .session import CalibrationSession, Phase
from .solver import FrameComposer
from .visualize import ConsolePresenter

logger = logging.getLogger(__name__)


def _sample_gaussian_pixel_noise(
    rng: np.random.Generator,
    noise_px: float,
) -> tuple[float, float]:
    """Sample additive pixel noise."""
    if noise_px <= 0.0:
        return 0.0, 0.0
    dx, dy = rng.normal(0.0, noise_px, size=2)
    return float(dx), float(dy)


def look_at(
    eye: Iterable[float],
    target: Iterable[float],
    up: Iterable[float] = (0.0, 1.0, 0.0),
) -> tuple[np.ndarray, np.ndarray]:
    """World -> camera rotation and translation for a camera at eye facing target.

    Camera axes follow OpenCV: x right, y down, z forward.
    """
    eye = np.asarray(eye, dtype=np.float64).reshape(3)
    target = np.asarray(target, dtype=np.float64).reshape(3)
    up = np.asarray(up, dtype=np.float64).reshape(3)

    z_axis = target - eye
    z_norm = float(np.linalg.norm(z_axis))
    if z_norm < 1e-9:
        raise ValueError("eye and target must differ")
    z_axis /= z_norm

    x_axis = np.cross(z_axis, up)
    x_norm = float(np.linalg.norm(x_axis))
    if x_norm < 1e-9:
        raise ValueError("viewing direction is parallel to up")
    x_axis /= x_norm
    y_axis = np.cross(z_axis, x_axis)

    rotation = np.vstack([x_axis, y_axis, z_axis])
    translation = -rotation @ eye
    return rotation, translation


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        if seconds < 0.0:
            raise ValueError("seconds must be >= 0")
        self.now += float(seconds)


class SimulatedTracker:
    """Pinhole tracker camera with a known pose in mat space."""

    def __init__(
        self,
        camera_params: CameraParams,
        eye: Iterable[float],
        target: Iterable[float] = (0.0, HEIGHT_TO_BULB_CENTER_CM, 0.0),
    ):
        self.camera_params = camera_params
        self.eye = np.asarray(eye, dtype=np.float64).reshape(3)
        self._rotation, self._translation = look_at(self.eye, target)
        self._rvec, _ = cv2.Rodrigues(self._rotation)
        self._dist = np.zeros((4, 1), dtype=np.float64)

    @property
    def tracker_id(self) -> str:
        return self.camera_params.camera_id

    def get_pixel_extents(self) -> tuple[int, int]:
        return self.camera_params.width, self.camera_params.height

    def get_intrinsic_matrix(self) -> np.ndarray:
        return self.camera_params.intrinsic_matrix.copy()

    @property
    def true_transform(self) -> np.ndarray:
        """Ground-truth camera -> world transform."""
        return invert_transform(make_transform(self._rotation, self._translation))

    @property
    def true_pose(self) -> Pose:
        return Pose.from_matrix(self.true_transform)

    def project(self, point_world: Iterable[float]) -> tuple[float, float] | None:
        """Pixel location (top-left origin) of a world point, None when behind the camera."""
        point = np.asarray(point_world, dtype=np.float64).reshape(1, 3)
        if float((self._rotation @ point[0] + self._translation)[2]) <= 0.0:
            return None
        projected, _ = cv2.projectPoints(
            point,
            self._rvec,
            self._translation,
            self.camera_params.intrinsic_matrix,
            self._dist,
        )
        u, v = projected.reshape(2)
        return float(u), float(v)


class SimulatedController:
    """Handheld light controller seen by a set of simulated trackers.

    Screen locations are reported with the y axis measured up from the bottom
    image row, as tracker screen coordinates are.
    """

    def __init__(
        self,
        trackers: Iterable[SimulatedTracker],
        noise_px: float = 0.0,
        seed: int = 0,
    ):
        if noise_px < 0.0:
            raise ValueError("noise_px must be >= 0")
        self.trackers = {t.tracker_id: t for t in trackers}
        self.noise_px = float(noise_px)
        self._rng = np.random.default_rng(int(seed))
        self.position: np.ndarray | None = None
        self.stable = False
        self.tracking = True

    def place(self, position: Iterable[float]) -> None:
        """Stand the controller upright with its bulb center at position."""
        self.position = np.asarray(position, dtype=np.float64).reshape(3)
        self.stable = True

    def lift(self) -> None:
        self.stable = False

    def is_stable_and_aligned(self) -> bool:
        return self.stable and self.position is not None

    def is_tracking(self) -> bool:
        return self.tracking

    def get_pixel_location(self, tracker_id: str) -> ScreenSample | None:
        tracker = self.trackers.get(tracker_id)
        if tracker is None or self.position is None:
            return None
        proj = tracker.project(self.position)
        if proj is None:
            return None
        dx, dy = _sample_gaussian_pixel_noise(self._rng, self.noise_px)
        u, v = proj
        return ScreenSample(u + dx, float(tracker.camera_params.height) - (v + dy))


class SimulatedHMD:
    """HMD with fixed poses in its own tracking space."""

    def __init__(self, pose: Pose, tracker_pose: Pose):
        self.pose = pose
        self.tracker_pose = tracker_pose
        self.stable = False
        self.tracking = True

    def is_stable_and_aligned(self) -> bool:
        return self.stable

    def is_tracking(self) -> bool:
        return self.tracking

    def get_pose(self) -> Pose:
        return self.pose

    def get_tracker_pose(self) -> Pose:
        return self.tracker_pose

    def get_tracker_frustum(self) -> dict:
        return {"pose": self.tracker_pose.to_dict()}


def _pose_from_euler(position: Iterable[float], euler_deg: Iterable[float]) -> Pose:
    rotation = Rotation.from_euler("xyz", list(euler_deg), degrees=True).as_matrix()
    return Pose.from_matrix(make_transform(rotation, np.asarray(position, dtype=np.float64)))


def build_rig(
    tracker_count: int = 2,
    with_hmd: bool = True,
    noise_px: float = 0.0,
    seed: int = 0,
) -> tuple[list[SimulatedTracker], SimulatedController, SimulatedHMD | None]:
    """Trackers spread around the mat, a controller and optionally an HMD."""
    if tracker_count <= 0:
        raise ValueError("tracker_count must be > 0")

    rng = np.random.default_rng(int(seed))
    tracker_ids = [f"tracker_{i}" for i in range(int(tracker_count))]
    intrinsics = create_dummy_intrinsics(tracker_ids)

    trackers = []
    for i, tracker_id in enumerate(tracker_ids):
        azimuth = 2.0 * np.pi * i / tracker_count + float(rng.uniform(-0.3, 0.3))
        radius = 110.0 + float(rng.uniform(-10.0, 10.0))
        height = 60.0 + float(rng.uniform(-10.0, 10.0))
        eye = (radius * np.sin(azimuth), height, radius * np.cos(azimuth))
        target = (
            float(rng.uniform(-3.0, 3.0)),
            HEIGHT_TO_BULB_CENTER_CM,
            float(rng.uniform(-3.0, 3.0)),
        )
        trackers.append(SimulatedTracker(intrinsics[tracker_id], eye, target))

    controller = SimulatedController(trackers, noise_px=noise_px, seed=int(seed) + 1)

    hmd = None
    if with_hmd:
        hmd = SimulatedHMD(
            pose=_pose_from_euler(
                (float(rng.uniform(-20.0, 20.0)), 2.0, float(rng.uniform(-50.0, -30.0))),
                (0.0, float(rng.uniform(-45.0, 45.0)), 0.0),
            ),
            tracker_pose=_pose_from_euler((0.0, 150.0, 200.0), (-20.0, 180.0, 0.0)),
        )
    return trackers, controller, hmd


class CalibrationScript:
    """Moves the simulated devices the way a user follows the prompts."""

    def __init__(
        self,
        controller: SimulatedController,
        hmd: SimulatedHMD | None,
        interruptions: int = 0,
    ):
        self.controller = controller
        self.hmd = hmd
        self.interruptions_left = int(interruptions)

    def __call__(self, session: CalibrationSession) -> None:
        phase = session.phase
        if phase is Phase.PLACE_CONTROLLER:
            location = session.current_location
            if location is not None:
                self.controller.place(location.position)
        elif phase is Phase.RECORD_CONTROLLER:
            if session.location_complete:
                self.controller.lift()
            elif self.interruptions_left > 0 and any(
                count > 0 for count, _ in session.tracker_progress().values()
            ):
                self.interruptions_left -= 1
                self.controller.lift()
        elif phase is Phase.PLACE_HMD:
            self.controller.lift()
            if self.hmd is not None:
                self.hmd.stable = True


def run_simulated_calibration(
    *,
    tracker_count: int = 2,
    with_hmd: bool = True,
    noise_px: float = 0.0,
    seed: int = 0,
    interruptions: int = 0,
    out_dir: str | None = None,
    max_ticks: int = 20000,
    tick_interval_s: float = 1.0 / 60.0,
    config: CalibrationConfig | None = None,
    verbose: bool = False,
) -> dict:
    """Run a full calibration against a synthetic rig and write artifacts.

    Returns a summary dict with keys:
      success, phase, ticks, location_resets, hmd_resets, trackers,
      mean_position_error_cm, mean_rotation_error_deg, event_log, pose_file,
      metrics_json, eval_json
    """
    if interruptions < 0:
        raise ValueError("interruptions must be >= 0")
    if tick_interval_s <= 0.0:
        raise ValueError("tick_interval_s must be > 0")

    if out_dir is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        out_path = Path("./output/sim") / f"{ts}-{seed}"
    else:
        out_path = Path(out_dir)
    out_path.mkdir(parents=True, exist_ok=True)

    trackers, controller, hmd = build_rig(tracker_count, with_hmd, noise_px, seed)
    config = config or CalibrationConfig()
    clock = ManualClock()
    metrics = CalibrationMetrics()
    sink = PoseFileSink(str(out_path / "tracker_poses.json"))
    presenter = ConsolePresenter(enable_console=verbose)

    event_logger = CalibrationLogger(log_dir=str(out_path))
    event_log = event_logger.start_recording(session_name="calibration")

    session = CalibrationSession(
        controller,
        trackers,
        hmd=hmd,
        config=config,
        sink=sink,
        presenter=presenter,
        event_logger=event_logger,
        metrics=metrics,
        clock=clock,
    )
    script = CalibrationScript(controller, hmd, interruptions=interruptions)
    runner = CalibrationRunner(
        session,
        tick_interval_s=tick_interval_s,
        sleep=clock.advance,
        on_tick=script,
    )

    first = session.locations[0]
    controller.place(first.position)
    try:
        status = runner.run(max_ticks=max_ticks)
    finally:
        event_logger.stop_recording()

    hmd_transform = None
    if hmd is not None:
        hmd_transform = FrameComposer.compose(hmd.tracker_pose, hmd.pose, config.calibration_offset)

    tracker_summaries: dict[str, dict] = {}
    pos_errors: list[float] = []
    rot_errors: list[float] = []
    contexts = session.tracker_contexts
    for tracker in trackers:
        context = contexts[tracker.tracker_id]
        entry: dict = {
            "valid": bool(context.valid),
            "reprojection_error": float(context.reprojection_error),
            "true_position": tracker.eye.tolist(),
        }
        if context.valid and context.tracker_pose is not None:
            pos_err = float(np.linalg.norm(context.tracker_pose.position - tracker.eye))
            rot_err = rotation_error_deg(context.tracker_pose.rotation, tracker.true_transform[:3, :3])
            entry["position"] = context.tracker_pose.position.tolist()
            entry["position_error_cm"] = pos_err
            entry["rotation_error_deg"] = rot_err
            pos_errors.append(pos_err)
            rot_errors.append(rot_err)

            if hmd_transform is not None and context.hmd_relative_pose is not None:
                expected = hmd_transform @ tracker.true_transform
                entry["hmd_relative_position_error_cm"] = float(
                    np.linalg.norm(context.hmd_relative_pose.position - expected[:3, 3])
                )
        tracker_summaries[tracker.tracker_id] = entry

    mean_pos = float(np.mean(pos_errors)) if pos_errors else float("nan")
    mean_rot = float(np.mean(rot_errors)) if rot_errors else float("nan")

    metrics_path = out_path / "metrics.json"
    MetricsExporter.to_json(metrics.get_summary(), str(metrics_path))

    summary = {
        "success": status["result"] is True,
        "phase": status["phase"],
        "ticks": int(status["ticks"]),
        "location_resets": int(status["location_resets"]),
        "hmd_resets": int(status["hmd_resets"]),
        "trackers": tracker_summaries,
        "mean_position_error_cm": mean_pos,
        "mean_rotation_error_deg": mean_rot,
        "event_log": str(event_log),
        "pose_file": str(sink.filepath),
        "metrics_json": str(metrics_path),
    }

    eval_path = out_path / "eval.json"
    eval_summary = dict(summary)
    eval_summary["params"] = {
        "tracker_count": int(tracker_count),
        "with_hmd": bool(with_hmd),
        "noise_px": float(noise_px),
        "seed": int(seed),
        "interruptions": int(interruptions),
    }
    eval_path.write_text(json.dumps(eval_summary, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    summary["eval_json"] = str(eval_path)

    logger.info(
        "Simulated calibration %s after %d ticks (mean position error %.4f cm)",
        summary["phase"], summary["ticks"], mean_pos,
    )
    return summary


def assert_metrics(
    summary: dict,
    *,
    max_mean_position_error_cm: float,
    max_mean_rotation_error_deg: float | None = None,
) -> None:
    mean_pos = float(summary.get("mean_position_error_cm"))
    if not np.isfinite(mean_pos) or mean_pos > float(max_mean_position_error_cm):
        raise AssertionError(
            f"mean_position_error_cm={mean_pos} exceeds max_mean_position_error_cm={float(max_mean_position_error_cm)}"
        )

    if max_mean_rotation_error_deg is None:
        return

    mean_rot = float(summary.get("mean_rotation_error_deg"))
    if not np.isfinite(mean_rot) or mean_rot > float(max_mean_rotation_error_deg):
        raise AssertionError(
            f"mean_rotation_error_deg={mean_rot} exceeds max_mean_rotation_error_deg={float(max_mean_rotation_error_deg)}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m matcal.sim")
    parser.add_argument("--trackers", type=int, default=2, help="Number of trackers (>0)")
    parser.add_argument("--no-hmd", action="store_true", help="Calibrate without an HMD")
    parser.add_argument("--noise-px", type=float, default=0.0, help="Pixel noise stddev")
    parser.add_argument("--interruptions", type=int, default=0, help="Times the controller is lifted mid-recording")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed")
    parser.add_argument("--config", type=str, default=None, help="Calibration config JSON")
    parser.add_argument("--out-dir", type=str, default=None, help="Output directory")
    parser.add_argument("--verbose", action="store_true", help="Print prompts and debug logging")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    def _err(msg: str) -> int:
        print(f"error: {msg}", file=sys.stderr)
        return 2

    if args.trackers <= 0:
        return _err("--trackers must be > 0")
    if args.noise_px < 0.0:
        return _err("--noise-px must be >= 0")
    if args.interruptions < 0:
        return _err("--interruptions must be >= 0")

    try:
        config = CalibrationConfig.load(args.config) if args.config else None
        summary = run_simulated_calibration(
            tracker_count=int(args.trackers),
            with_hmd=not args.no_hmd,
            noise_px=float(args.noise_px),
            seed=int(args.seed),
            interruptions=int(args.interruptions),
            out_dir=args.out_dir,
            config=config,
            verbose=bool(args.verbose),
        )
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for k in [
        "phase",
        "ticks",
        "location_resets",
        "mean_position_error_cm",
        "mean_rotation_error_deg",
        "event_log",
        "eval_json",
    ]:
        print(f"{k}: {summary[k]}")

    return 0 if summary["success"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
