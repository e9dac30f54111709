"""
Presentation of calibration progress.

Renders the session prompts as text: console output while calibrating and an
optional JSONL file of status snapshots for external viewers.
"""

import json
from datetime import datetime
from typing import Optional, Dict, Any, List
from pathlib import Path

from .session import CalibrationSession, Phase


class ConsolePresenter:
    """
    Text presenter for a CalibrationSession.

    Prints the prompt for the current phase whenever it changes, so a stable
    controller produces one line per progress step rather than one per tick.
    """

    def __init__(
        self,
        output_dir: Optional[str] = None,
        enable_console: bool = True,
        session_name: Optional[str] = None
    ):
        """
        Initialize presenter.

        Args:
            output_dir: Directory for a status JSONL file (None = no file)
            enable_console: Print prompts to the console
            session_name: File name stem for the status file
        """
        self.enable_console = enable_console
        self.lines: List[str] = []
        self._last_prompt: Optional[List[str]] = None
        self._output_file = None

        if output_dir is not None:
            out = Path(output_dir)
            out.mkdir(parents=True, exist_ok=True)
            if session_name is None:
                session_name = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._output_file = open(out / f"{session_name}_status.jsonl", 'w')

    def on_phase_changed(self, session: CalibrationSession, old: Phase, new: Phase) -> None:
        self._emit(f"== {old.value} -> {new.value}")
        if new.is_terminal:
            for line in self.render(session):
                self._emit(line)
        self._last_prompt = None

    def on_tick(self, session: CalibrationSession) -> None:
        prompt = self.render(session, include_timing=False)
        if prompt != self._last_prompt:
            for line in self.render(session):
                self._emit(line)
            self._last_prompt = prompt

        if self._output_file:
            self._write_status(session.get_status())

    def render(self, session: CalibrationSession, include_timing: bool = True) -> List[str]:
        """
        Text for the current phase.

        Args:
            session: Session to describe
            include_timing: Include the stable-for duration line

        Returns:
            Lines of text
        """
        status = session.get_status()
        phase = session.phase
        lines: List[str] = []

        if phase is Phase.PLACE_CONTROLLER:
            lines.append(
                f"Stand the controller upright on location #{status['location_index'] + 1} "
                f"({status['location_name']})"
            )
            lines.append(self._stability_line(status, include_timing))

        elif phase is Phase.RECORD_CONTROLLER:
            lines.append(
                f"Recording controller samples at location #{status['location_index'] + 1} "
                f"({status['location_name']})"
            )
            any_sampling = False
            for number, (tracker_id, tracker) in enumerate(status["trackers"].items(), start=1):
                if tracker["samples"] < tracker["capacity"]:
                    lines.append(f"Tracker {number} ({tracker_id}): sample {tracker['samples']}/{tracker['capacity']}")
                    any_sampling = True
                else:
                    lines.append(f"Tracker {number} ({tracker_id}): COMPLETE")
            if not any_sampling:
                lines.append("Location sampling complete. Please pick up the controller.")

        elif phase is Phase.PLACE_HMD:
            lines.append("Set the HMD at the tracking origin")
            lines.append(self._stability_line(status, include_timing))

        elif phase is Phase.RECORD_HMD:
            hmd = status["hmd"]
            lines.append(f"Recording HMD sample {hmd['samples']}/{hmd['capacity']}")

        elif phase is Phase.COMPUTE_TRACKER_POSES:
            lines.append("Computing tracker poses...")

        elif phase is Phase.SUCCESS:
            lines.append("Calibration succeeded")
            lines.extend(self._tracker_results(status))

        elif phase is Phase.FAILED:
            lines.append("Calibration failed: one or more trackers could not be calibrated")
            lines.extend(self._tracker_results(status))

        return lines

    @staticmethod
    def _stability_line(status: Dict[str, Any], include_timing: bool) -> str:
        if not status["is_stable"]:
            return "[Not stable and upright]"
        if not include_timing:
            return "[stable]"
        return f"[stable for {int(status['stable_duration_ms'])}/{int(status['stabilize_wait_ms'])}ms]"

    @staticmethod
    def _tracker_results(status: Dict[str, Any]) -> List[str]:
        lines = []
        for tracker_id, tracker in status["trackers"].items():
            if tracker["valid"]:
                lines.append(f"  {tracker_id}: reprojection error {tracker['reprojection_error']:.4f} px^2")
            else:
                lines.append(f"  {tracker_id}: [INVALID]")
        return lines

    def _emit(self, line: str) -> None:
        self.lines.append(line)
        if self.enable_console:
            print(line)

    def _write_status(self, status: Dict[str, Any]) -> None:
        entry = {
            "_type": "status",
            "timestamp": datetime.now().isoformat(),
            "status": status
        }
        self._output_file.write(json.dumps(entry) + '\n')

    def close(self) -> None:
        if self._output_file:
            self._output_file.close()
            self._output_file = None
