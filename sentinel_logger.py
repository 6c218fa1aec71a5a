"""
Exam-Sentinel — Structured Audit Logger
========================================
Per-session JSONL log of frames, violations, lockdowns and errors for
post-exam review.

Key Features:
  - JSONL (Newline Delimited JSON) format, flushed per line
  - Thread-safe writes (tick thread and event path share one file)
  - Levels: SYSTEM, AUDIT, WARN, ERROR
  - One instance per owner, no process-wide logger object
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("SentinelLog")


class SentinelJSONEncoder(json.JSONEncoder):
    """Handles NumPy and Enum values for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


class SentinelLogger:
    """
    JSONL audit logger for one session (or one replay run).
    """

    def __init__(self, log_dir: str = "logs", filename: str = "sentinel_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry. Entries after close() are dropped."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=SentinelJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log_frame(self, frame_data: Dict[str, Any]):
        self.log(frame_data, level="AUDIT", event="frame_processed")

    def log_violation(self, report):
        self.log(report.to_dict(), level="AUDIT", event="violation")

    def log_lockdown(self, signal):
        self.log(signal.to_dict(), level="AUDIT", event="lockdown_triggered")

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[BaseException] = None, **kwargs):
        """Log structured error with exception details."""
        _log.error(message, **kwargs)
        err_details = repr(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown. Safe to call twice."""
        if self._file.closed:
            return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            if not self._file.closed:
                self._file.close()
