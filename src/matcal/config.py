"""
Configuration for mat calibration sessions.

Settings load from a JSON file or a dict; anything not given keeps its default.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

from .geo import Pose
from .sampling import (
    CalibrationLocation, build_mat_locations,
    HEIGHT_TO_BULB_CENTER_CM, SAMPLE_X_OFFSET_CM, SAMPLE_Z_OFFSET_CM,
    DEFAULT_STABILIZE_WAIT_MS, DEFAULT_SAMPLES_PER_LOCATION
)
from .solver import REPROJECTION_ERROR_MODES


@dataclass
class CalibrationConfig:
    """Tunable constants of a calibration session."""
    stabilize_wait_ms: float = DEFAULT_STABILIZE_WAIT_MS
    samples_per_location: int = DEFAULT_SAMPLES_PER_LOCATION
    hmd_sample_count: Optional[int] = None  # defaults to the location count
    bulb_height_cm: float = HEIGHT_TO_BULB_CENTER_CM
    x_offset_cm: float = SAMPLE_X_OFFSET_CM
    z_offset_cm: float = SAMPLE_Z_OFFSET_CM
    calibration_offset: Pose = field(default_factory=Pose.identity)
    reprojection_error_mode: str = "mean"
    enable_logging: bool = False
    log_dir: str = "./logs"

    def __post_init__(self) -> None:
        if self.stabilize_wait_ms < 0:
            raise ValueError("stabilize_wait_ms must be >= 0")
        if self.samples_per_location <= 0:
            raise ValueError("samples_per_location must be > 0")
        if self.hmd_sample_count is not None and self.hmd_sample_count <= 0:
            raise ValueError("hmd_sample_count must be > 0")
        if self.reprojection_error_mode not in REPROJECTION_ERROR_MODES:
            raise ValueError(
                f"reprojection_error_mode must be one of: {', '.join(REPROJECTION_ERROR_MODES)}"
            )
        if not isinstance(self.calibration_offset, Pose):
            raise ValueError("calibration_offset must be a Pose")

    @property
    def locations(self) -> Tuple[CalibrationLocation, ...]:
        return build_mat_locations(self.x_offset_cm, self.z_offset_cm, self.bulb_height_cm)

    @property
    def hmd_capacity(self) -> int:
        return self.hmd_sample_count or len(self.locations)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationConfig":
        """
        Build a config from a plain dict.

        Args:
            data: Keys matching the dataclass fields; calibration_offset is
                {"position": [x, y, z], "orientation": [w, x, y, z]}

        Returns:
            CalibrationConfig

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        kwargs = dict(data)
        offset = kwargs.get("calibration_offset")
        if offset is not None and not isinstance(offset, Pose):
            if not isinstance(offset, dict):
                raise ValueError("calibration_offset must be a mapping")
            kwargs["calibration_offset"] = Pose.from_dict(offset)
        return cls(**kwargs)

    @classmethod
    def load(cls, filepath: str) -> "CalibrationConfig":
        """Load a config from a JSON file."""
        with open(Path(filepath), 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("Config file must contain a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stabilize_wait_ms": self.stabilize_wait_ms,
            "samples_per_location": self.samples_per_location,
            "hmd_sample_count": self.hmd_sample_count,
            "bulb_height_cm": self.bulb_height_cm,
            "x_offset_cm": self.x_offset_cm,
            "z_offset_cm": self.z_offset_cm,
            "calibration_offset": self.calibration_offset.to_dict(),
            "reprojection_error_mode": self.reprojection_error_mode,
            "enable_logging": self.enable_logging,
            "log_dir": self.log_dir,
        }
