"""
Mat-based calibration of optical trackers for loutrack.

Modules:
- geo: Poses, rigid transforms and tracker intrinsics
- sampling: Mat locations, stability gate, sample buffers and sequencing
- solver: PnP tracker pose solve and HMD frame composition
- session: Calibration state machine
- config: Session settings
- logger: Session event recording
- replay: Log file playback and offline re-solve
- metrics: Session metrics collection
- pipeline: Driving loop and result sinks
- visualize: Text progress presenter
- sim: Synthetic rig and closed-loop simulation
"""

from .geo import (
    Pose, CameraParams, CalibrationLoader, create_dummy_intrinsics,
    make_transform, invert_transform
)
from .sampling import (
    CalibrationLocation, MAT_LOCATIONS, build_mat_locations,
    StabilityGate, ScreenSample, TrackerPoseContext, HMDPoseContext,
    SampleAccumulator, LocationSequencer, LocationAction, HMD_TARGET
)
from .solver import PoseSolver, SolveResult, FrameComposer
from .config import CalibrationConfig
from .logger import CalibrationLogger, list_log_files
from .replay import CalibrationReplay, validate_log_integrity, EventEntry
from .metrics import CalibrationMetrics, MetricsExporter
from .session import CalibrationSession, Phase
from .pipeline import CalibrationRunner, MemoryPoseSink, PoseFileSink
from .visualize import ConsolePresenter

__all__ = [
    # Geometry
    "Pose",
    "CameraParams",
    "CalibrationLoader",
    "create_dummy_intrinsics",
    "make_transform",
    "invert_transform",
    # Sampling
    "CalibrationLocation",
    "MAT_LOCATIONS",
    "build_mat_locations",
    "StabilityGate",
    "ScreenSample",
    "TrackerPoseContext",
    "HMDPoseContext",
    "SampleAccumulator",
    "LocationSequencer",
    "LocationAction",
    "HMD_TARGET",
    # Solver
    "PoseSolver",
    "SolveResult",
    "FrameComposer",
    # Config
    "CalibrationConfig",
    # Logger
    "CalibrationLogger",
    "list_log_files",
    # Replay
    "CalibrationReplay",
    "validate_log_integrity",
    "EventEntry",
    # Metrics
    "CalibrationMetrics",
    "MetricsExporter",
    # Session
    "CalibrationSession",
    "Phase",
    # Pipeline
    "CalibrationRunner",
    "MemoryPoseSink",
    "PoseFileSink",
    # Visualize
    "ConsolePresenter",
]
