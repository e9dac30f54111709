"""
Logger module for recording calibration sessions.

Provides functionality to:
- Record session events to a timestamped JSONL (JSON Lines) file
- Include metadata for replay (schema version, capture start time)
- List previously recorded sessions
"""

import json
import os
from datetime import datetime
from typing import Optional, Dict, Any, List
from pathlib import Path
import threading

import numpy as np


def _json_default(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class CalibrationLogger:
    """
    Logger for recording calibration session events.

    Writes are synchronous so the tick loop stays single-threaded.

    Usage:
        logger = CalibrationLogger(log_dir="./logs")
        logger.start_recording()
        logger.log_event("phase_change", {"old": "idle", "new": "place_controller"})
        logger.stop_recording()
    """

    SCHEMA_VERSION = "1.0"

    def __init__(self, log_dir: str = "./logs"):
        """
        Initialize the session logger.

        Args:
            log_dir: Directory to store log files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._recording = False
        self._log_file: Optional[os.PathLike] = None
        self._file_handle = None
        self._lock = threading.Lock()
        self._start_time: Optional[str] = None
        self._event_count = 0

    def start_recording(self, session_name: Optional[str] = None) -> str:
        """
        Start recording events to a new log file.

        Args:
            session_name: Optional name for the session (default: timestamp)

        Returns:
            Path to the created log file

        Raises:
            RuntimeError: If recording is already in progress
        """
        with self._lock:
            if self._recording:
                raise RuntimeError("Recording already in progress")

            self._start_time = datetime.now().isoformat()
            if session_name is None:
                session_name = datetime.now().strftime("%Y%m%d_%H%M%S")

            self._log_file = self.log_dir / f"{session_name}.jsonl"
            self._file_handle = open(self._log_file, 'w', encoding='utf-8')
            self._recording = True
            self._event_count = 0

            header = {
                "_type": "header",
                "schema_version": self.SCHEMA_VERSION,
                "capture_start": self._start_time,
                "log_format": "jsonl"
            }
            self._file_handle.write(json.dumps(header) + '\n')
            self._file_handle.flush()

            return str(self._log_file)

    def stop_recording(self) -> Dict[str, Any]:
        """
        Stop recording and close the log file.

        Returns:
            Metadata about the recording session
        """
        with self._lock:
            if not self._recording:
                return {"status": "not_recording"}

            self._recording = False

            footer = {
                "_type": "footer",
                "capture_end": datetime.now().isoformat(),
                "total_events": self._event_count
            }
            self._file_handle.write(json.dumps(footer) + '\n')
            self._file_handle.close()

            metadata = {
                "log_file": str(self._log_file),
                "start_time": self._start_time,
                "end_time": datetime.now().isoformat(),
                "total_events": self._event_count
            }

            self._log_file = None
            self._file_handle = None
            self._event_count = 0

            return metadata

    def log_event(self, event_type: str, event_data: Dict[str, Any]) -> None:
        """
        Log a session event (phase change, completed location, solve result...).

        Args:
            event_type: Type identifier for the event
            event_data: Event-specific data; numpy values are converted

        Raises:
            RuntimeError: If not currently recording
        """
        with self._lock:
            if not self._recording:
                raise RuntimeError("Not currently recording")

            event_entry = {
                "_type": "event",
                "event_type": event_type,
                "timestamp": datetime.now().isoformat(),
                "data": event_data
            }
            self._file_handle.write(json.dumps(event_entry, default=_json_default) + '\n')
            self._file_handle.flush()
            self._event_count += 1

    @property
    def is_recording(self) -> bool:
        """Check if currently recording."""
        return self._recording

    @property
    def current_log_file(self) -> Optional[str]:
        """Get the current log file path if recording."""
        return str(self._log_file) if self._log_file else None


def list_log_files(log_dir: str = "./logs") -> List[Dict[str, Any]]:
    """
    List available session logs with metadata.

    Args:
        log_dir: Directory containing log files

    Returns:
        List of log file info dictionaries
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return []

    logs = []
    for f in sorted(log_path.glob("*.jsonl"), reverse=True):
        try:
            with open(f, 'r', encoding='utf-8') as fp:
                header = json.loads(fp.readline())
            if header.get("_type") == "header":
                logs.append({
                    "path": str(f),
                    "name": f.stem,
                    "size_bytes": f.stat().st_size,
                    "modified": datetime.fromtimestamp(f.stat().st_mtime).isoformat(),
                    "schema_version": header.get("schema_version"),
                    "capture_start": header.get("capture_start")
                })
        except (json.JSONDecodeError, AttributeError):
            logs.append({
                "path": str(f),
                "name": f.stem,
                "size_bytes": f.stat().st_size,
                "modified": datetime.fromtimestamp(f.stat().st_mtime).isoformat(),
                "schema_version": "unknown",
                "capture_start": None
            })

    return logs
