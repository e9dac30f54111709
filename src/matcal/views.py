"""Interfaces of the collaborators the calibration session talks to.

Device views supply raw readings each tick; the result sink receives solved
poses; presenters receive progress. None of them is implemented here beyond
the protocol; see matcal.sim and matcal.pipeline for concrete ones.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from .geo import Pose
from .sampling import ScreenSample

if TYPE_CHECKING:
    from .session import CalibrationSession, Phase


class ControllerView(Protocol):
    def is_stable_and_aligned(self) -> bool: ...

    def is_tracking(self) -> bool: ...

    def get_pixel_location(self, tracker_id: str) -> ScreenSample | None: ...


class TrackerView(Protocol):
    @property
    def tracker_id(self) -> str: ...

    def get_pixel_extents(self) -> tuple[int, int]: ...

    def get_intrinsic_matrix(self) -> np.ndarray: ...


class HMDView(Protocol):
    def is_stable_and_aligned(self) -> bool: ...

    def is_tracking(self) -> bool: ...

    def get_pose(self) -> Pose: ...

    def get_tracker_pose(self) -> Pose: ...

    def get_tracker_frustum(self) -> Any: ...


class ResultSink(Protocol):
    def set_tracker_pose(
        self,
        tracker_id: str,
        tracker_pose: Pose,
        hmd_relative_pose: Pose | None,
    ) -> None: ...


class CalibrationPresenter(Protocol):
    def on_phase_changed(self, session: CalibrationSession, old: Phase, new: Phase) -> None: ...

    def on_tick(self, session: CalibrationSession) -> None: ...
