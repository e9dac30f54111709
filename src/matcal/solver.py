"""
Pose solving for tracker calibration.

Provides functionality to:
- Solve a tracker's camera pose from mat 2D/3D correspondences (PnP)
- Report a reprojection error diagnostic for the solve
- Chain the transforms that express tracker poses in HMD camera space
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import cv2 as cv
import numpy as np

from .geo import Pose, make_transform, invert_transform

logger = logging.getLogger(__name__)


REPROJECTION_ERROR_MODES = ("mean", "sum", "last")


@dataclass
class SolveResult:
    """Outcome of one tracker pose solve."""
    valid: bool
    pose: Optional[Pose] = None
    transform: Optional[np.ndarray] = None  # 4x4 camera -> world
    reprojection_error: float = 0.0
    point_errors: np.ndarray = field(default_factory=lambda: np.zeros(0))
    rvec: Optional[np.ndarray] = None  # world -> camera, as returned by solvePnP
    tvec: Optional[np.ndarray] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "pose": self.pose.to_dict() if self.pose else None,
            "reprojection_error": self.reprojection_error,
            "point_errors": np.asarray(self.point_errors).tolist(),
        }


def is_degenerate(object_points: np.ndarray, tolerance: float = 1e-6) -> bool:
    """
    Check whether object points are (nearly) collinear or coincident.

    Uses the singular values of the centered point cloud: a second singular
    value that vanishes relative to the first means rank < 2.
    """
    pts = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
    centered = pts - pts.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    if s[0] <= tolerance:
        return True
    return s[1] / s[0] <= tolerance


class PoseSolver:
    """
    Solve tracker camera poses with a Perspective-n-Point solve.

    Lens distortion is assumed to be zero. Tracker screen y counts up from the
    bottom image row; it is flipped with the image height into OpenCV's
    top-left pixel-row convention before solving.

    Usage:
        solver = PoseSolver()
        result = solver.solve(object_points, image_points, K, image_height)
        if result.valid:
            tracker_transform = result.transform
    """

    def __init__(self, error_mode: str = "mean", flags: int = cv.SOLVEPNP_ITERATIVE):
        """
        Initialize solver.

        Args:
            error_mode: How per-point squared errors are reduced: "mean",
                "sum", or "last" (error of the final point only)
            flags: OpenCV solvePnP method
        """
        if error_mode not in REPROJECTION_ERROR_MODES:
            raise ValueError(
                f"Unknown error_mode {error_mode!r}; expected one of: {', '.join(REPROJECTION_ERROR_MODES)}"
            )
        self.error_mode = error_mode
        self.flags = flags
        self.dist_coeffs = np.zeros((4, 1), dtype=np.float64)

    def solve(
        self,
        object_points: np.ndarray,
        image_points: np.ndarray,
        camera_matrix: np.ndarray,
        image_height: float
    ) -> SolveResult:
        """
        Solve a tracker pose from index-paired correspondences.

        Args:
            object_points: Nx3 calibration locations in mat space
            image_points: Nx2 averaged observations in tracker screen coordinates
            camera_matrix: 3x3 tracker intrinsic matrix
            image_height: Tracker image height in pixels

        Returns:
            SolveResult holding the camera -> world pose when valid

        Raises:
            ValueError: If array shapes are malformed or fewer than 4 points
        """
        obj = np.asarray(object_points, dtype=np.float64)
        img = np.asarray(image_points, dtype=np.float64)
        K = np.asarray(camera_matrix, dtype=np.float64)

        if obj.ndim != 2 or obj.shape[1] != 3:
            raise ValueError(f"object_points must be shape (N, 3), got {obj.shape}")
        if img.ndim != 2 or img.shape[1] != 2:
            raise ValueError(f"image_points must be shape (N, 2), got {img.shape}")
        if len(obj) != len(img):
            raise ValueError("Point counts must match")
        if len(obj) < 4:
            raise ValueError("Need at least 4 points for PnP")
        if K.shape != (3, 3):
            raise ValueError(f"camera_matrix must be 3x3, got shape {K.shape}")

        if not (np.all(np.isfinite(obj)) and np.all(np.isfinite(img))):
            logger.warning("PnP input contains non-finite values")
            return SolveResult(valid=False)

        if is_degenerate(obj):
            logger.warning("PnP object points are degenerate (collinear or coincident)")
            return SolveResult(valid=False)

        flipped = img.copy()
        flipped[:, 1] = float(image_height) - flipped[:, 1]

        try:
            success, rvec, tvec = cv.solvePnP(
                obj.reshape(-1, 1, 3),
                flipped.reshape(-1, 1, 2),
                K,
                self.dist_coeffs,
                flags=self.flags
            )
        except cv.error as e:
            logger.warning("solvePnP raised: %s", e)
            return SolveResult(valid=False)

        if not success or rvec is None or tvec is None:
            return SolveResult(valid=False)

        rvec = np.asarray(rvec, dtype=np.float64).reshape(3, 1)
        tvec = np.asarray(tvec, dtype=np.float64).reshape(3, 1)
        if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            return SolveResult(valid=False)

        projected, _ = cv.projectPoints(obj.reshape(-1, 1, 3), rvec, tvec, K, self.dist_coeffs)
        diff = flipped - projected.reshape(-1, 2)
        point_errors = np.sum(diff * diff, axis=1)

        # solvePnP gives world -> camera; the tracker pose is camera -> world
        R, _ = cv.Rodrigues(rvec)
        world_to_camera = make_transform(R, tvec.flatten())
        camera_to_world = invert_transform(world_to_camera)

        return SolveResult(
            valid=True,
            pose=Pose.from_matrix(camera_to_world),
            transform=camera_to_world,
            reprojection_error=self._reduce_errors(point_errors),
            point_errors=point_errors,
            rvec=rvec,
            tvec=tvec
        )

    def _reduce_errors(self, point_errors: np.ndarray) -> float:
        if len(point_errors) == 0:
            return 0.0
        if self.error_mode == "sum":
            return float(np.sum(point_errors))
        if self.error_mode == "last":
            return float(point_errors[-1])
        return float(np.mean(point_errors))


class FrameComposer:
    """
    Build the transform from controller tracking space to HMD camera space.

    The chain, applied right to left:
      inverse(HMD camera pose in HMD tracking space)
      @ calibration origin pose in HMD tracking space (averaged HMD pose)
      @ inverse(calibration mat offset in controller tracking space)
    """

    @staticmethod
    def compose(
        hmd_camera_pose: Pose,
        hmd_pose_at_origin: Pose,
        calibration_offset: Optional[Pose] = None
    ) -> np.ndarray:
        """
        Compose the tracking-space -> HMD-camera-space transform.

        Args:
            hmd_camera_pose: HMD tracking camera pose in HMD tracking space
            hmd_pose_at_origin: Averaged HMD pose recorded at the mat origin
            calibration_offset: Mat origin pose in controller tracking space

        Returns:
            4x4 transform
        """
        hmd_tracking_to_hmd_camera = invert_transform(hmd_camera_pose.to_matrix())
        calibration_to_hmd_tracking = hmd_pose_at_origin.to_matrix()
        offset = calibration_offset if calibration_offset is not None else Pose.identity()
        tracking_to_calibration = invert_transform(offset.to_matrix())

        return hmd_tracking_to_hmd_camera @ calibration_to_hmd_tracking @ tracking_to_calibration

    @staticmethod
    def apply(transform: np.ndarray, tracker_transform: np.ndarray) -> Pose:
        """Express a tracker pose (4x4) through a composed transform."""
        return Pose.from_matrix(np.asarray(transform, dtype=np.float64) @ tracker_transform)
