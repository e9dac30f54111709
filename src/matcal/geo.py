"""
Geometry module for tracker calibration.

Provides functionality to:
- Represent rigid poses (position + unit quaternion) and their 4x4 transforms
- Compose and invert homogeneous transforms
- Load and manage tracker intrinsic parameters
"""

import json
import numpy as np
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from scipy.spatial.transform import Rotation


IDENTITY_QUATERNION = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64)  # [w, x, y, z]


def _quat_wxyz_to_xyzw(q: np.ndarray) -> np.ndarray:
    return np.array([q[1], q[2], q[3], q[0]], dtype=np.float64)


def _quat_xyzw_to_wxyz(q: np.ndarray) -> np.ndarray:
    return np.array([q[3], q[0], q[1], q[2]], dtype=np.float64)


def normalize_quaternion(
    quaternion: np.ndarray,
    default: Optional[np.ndarray] = None,
    eps: float = 1e-9
) -> np.ndarray:
    """
    Normalize a [w, x, y, z] quaternion.

    Args:
        quaternion: Quaternion to normalize
        default: Returned when the quaternion has (near) zero length
        eps: Length below which the quaternion counts as degenerate

    Returns:
        Unit quaternion, or a copy of default (identity when None)
    """
    q = np.asarray(quaternion, dtype=np.float64).reshape(4)
    length = float(np.linalg.norm(q))
    if not np.isfinite(length) or length < eps:
        fallback = IDENTITY_QUATERNION if default is None else default
        return np.asarray(fallback, dtype=np.float64).reshape(4).copy()
    return q / length


@dataclass
class Pose:
    """Rigid pose: position plus [w, x, y, z] orientation quaternion."""
    position: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))
    orientation: np.ndarray = field(default_factory=lambda: IDENTITY_QUATERNION.copy())

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)
        self.orientation = normalize_quaternion(self.orientation)

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    @property
    def rotation(self) -> np.ndarray:
        """3x3 rotation matrix of the orientation."""
        return Rotation.from_quat(_quat_wxyz_to_xyzw(self.orientation)).as_matrix()

    def to_matrix(self) -> np.ndarray:
        """
        Homogeneous 4x4 transform, column-vector convention.

        Points map as p' = M @ [x, y, z, 1]; translation lives in M[:3, 3].
        """
        return make_transform(self.rotation, self.position)

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "Pose":
        """Build a pose from a 4x4 homogeneous transform."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected 4x4 transform, got shape {matrix.shape}")
        quat = Rotation.from_matrix(matrix[:3, :3]).as_quat()  # [x, y, z, w]
        return cls(position=matrix[:3, 3].copy(), orientation=_quat_xyzw_to_wxyz(quat))

    def inverse(self) -> "Pose":
        return Pose.from_matrix(invert_transform(self.to_matrix()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.tolist(),
            "orientation": self.orientation.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pose":
        return cls(
            position=np.asarray(data.get("position", [0.0, 0.0, 0.0]), dtype=np.float64),
            orientation=np.asarray(data.get("orientation", [1.0, 0.0, 0.0, 0.0]), dtype=np.float64),
        )


def make_transform(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """
    Assemble a 4x4 homogeneous transform.

    Args:
        rotation: 3x3 rotation matrix
        translation: 3-element translation vector

    Returns:
        4x4 transform [[R, t], [0, 1]]
    """
    transform = np.eye(4, dtype=np.float64)
    transform[:3, :3] = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    transform[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return transform


def invert_transform(transform: np.ndarray) -> np.ndarray:
    """
    Invert a rigid 4x4 transform.

    The rotation block is orthonormal, so its inverse is its transpose and the
    inverse translation is -R^T @ t.
    """
    transform = np.asarray(transform, dtype=np.float64)
    R = transform[:3, :3]
    t = transform[:3, 3]
    R_inv = R.T
    return make_transform(R_inv, -R_inv @ t)


def transform_points(transform: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to an Nx3 array of points."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    transform = np.asarray(transform, dtype=np.float64)
    return (transform[:3, :3] @ points.T).T + transform[:3, 3]


def rotation_error_deg(r_pred: np.ndarray, r_gt: np.ndarray) -> float:
    """Rotation error in degrees between two rotation matrices."""
    r_pred = np.asarray(r_pred, dtype=np.float64).reshape(3, 3)
    r_gt = np.asarray(r_gt, dtype=np.float64).reshape(3, 3)
    cos = (np.trace(r_pred @ r_gt.T) - 1.0) / 2.0
    cos = float(np.clip(cos, -1.0, 1.0))
    return float(np.degrees(np.arccos(cos)))


@dataclass
class CameraParams:
    """Tracker camera intrinsics. Lens distortion is assumed to be zero."""
    camera_id: str
    intrinsic_matrix: np.ndarray  # 3x3
    resolution: Tuple[int, int] = (640, 480)  # width, height

    @property
    def fx(self) -> float:
        return self.intrinsic_matrix[0, 0]

    @property
    def fy(self) -> float:
        return self.intrinsic_matrix[1, 1]

    @property
    def cx(self) -> float:
        return self.intrinsic_matrix[0, 2]

    @property
    def cy(self) -> float:
        return self.intrinsic_matrix[1, 2]

    @property
    def width(self) -> int:
        return int(self.resolution[0])

    @property
    def height(self) -> int:
        return int(self.resolution[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "camera_id": self.camera_id,
            "camera_matrix": {"matrix": np.asarray(self.intrinsic_matrix).tolist()},
            "resolution": {"width": self.width, "height": self.height},
        }


class CalibrationLoader:
    """
    Load tracker intrinsics from JSON files.

    Accepts a single calibration object, a list of them, or a directory of
    per-tracker JSON files. Each object carries "camera_id", "camera_matrix"
    (either {"matrix": 3x3} or {"fx", "fy", "cx", "cy"}) and "resolution".
    """

    @staticmethod
    def load_intrinsics(filepath: str) -> Dict[str, Dict[str, Any]]:
        """
        Load raw intrinsic calibration records.

        Args:
            filepath: Path to a calibration JSON file or a directory of them

        Returns:
            Dict mapping camera_id to calibration data
        """
        path = Path(filepath)

        if path.is_dir():
            calibrations = {}
            for f in sorted(path.glob("*.json")):
                try:
                    with open(f, 'r', encoding='utf-8') as fp:
                        data = json.load(fp)
                except json.JSONDecodeError:
                    continue
                if isinstance(data, dict) and "camera_id" in data:
                    calibrations[data["camera_id"]] = data
            return calibrations

        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if isinstance(data, list):
            return {d.get("camera_id", f"tracker_{i}"): d for i, d in enumerate(data)}
        elif "camera_id" in data:
            return {data["camera_id"]: data}
        else:
            return {"default": data}

    @staticmethod
    def to_camera_params(calibration: Dict[str, Any]) -> CameraParams:
        """
        Convert a calibration record to CameraParams.

        Args:
            calibration: Record from load_intrinsics

        Returns:
            CameraParams with the intrinsic matrix and resolution
        """
        res = calibration.get("resolution", {"width": 640, "height": 480})
        resolution = (int(res.get("width", 640)), int(res.get("height", 480)))

        cam_matrix = calibration.get("camera_matrix", {})
        if "matrix" in cam_matrix:
            K = np.array(cam_matrix["matrix"], dtype=np.float64)
        else:
            K = np.array([
                [cam_matrix.get("fx", 554.0), 0, cam_matrix.get("cx", resolution[0] / 2)],
                [0, cam_matrix.get("fy", 554.0), cam_matrix.get("cy", resolution[1] / 2)],
                [0, 0, 1]
            ], dtype=np.float64)

        if K.shape != (3, 3):
            raise ValueError(f"camera_matrix must be 3x3, got shape {K.shape}")

        return CameraParams(
            camera_id=str(calibration.get("camera_id", "unknown")),
            intrinsic_matrix=K,
            resolution=resolution
        )

    @staticmethod
    def load(filepath: str) -> Dict[str, CameraParams]:
        """Load and convert every calibration record found at filepath."""
        return {
            cam_id: CalibrationLoader.to_camera_params(calib)
            for cam_id, calib in CalibrationLoader.load_intrinsics(filepath).items()
        }


def create_dummy_intrinsics(
    camera_ids: List[str],
    resolution: Tuple[int, int] = (640, 480),
    focal_length: float = 554.0
) -> Dict[str, CameraParams]:
    """
    Create pinhole intrinsics for testing without real calibration data.

    Args:
        camera_ids: List of tracker identifiers
        resolution: Image resolution (width, height)
        focal_length: Focal length in pixels

    Returns:
        Dict mapping camera_id to CameraParams with a centered principal point
    """
    params = {}
    width, height = resolution
    for cam_id in camera_ids:
        K = np.array([
            [focal_length, 0, width / 2],
            [0, focal_length, height / 2],
            [0, 0, 1]
        ], dtype=np.float64)
        params[cam_id] = CameraParams(camera_id=cam_id, intrinsic_matrix=K, resolution=resolution)
    return params
