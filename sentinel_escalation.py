"""
Exam-Sentinel — Escalation & Throttle Controller
=================================================
Sits between the rule engine and the outbound sink.

  - Suppresses frame-driven signals while the throttle window is open
  - Lets browser events straight through (they never stamp the window)
  - Counts emitted reports; at the ceiling, signals lockdown and resets
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sentinel_types import (
    LockdownSignal,
    SessionCounters,
    ViolationReport,
    ViolationSignal,
)

_log = logging.getLogger("Escalation")


@dataclass(frozen=True)
class EscalationOutcome:
    """What to publish for one submitted signal. Both may be None."""
    report: Optional[ViolationReport] = None
    lockdown: Optional[LockdownSignal] = None

    @property
    def suppressed(self) -> bool:
        return self.report is None


class EscalationController:
    """Per-session throttle window and violation ceiling."""

    def __init__(self, config, counters: Optional[SessionCounters] = None):
        self.config = config
        self.counters = counters if counters is not None else SessionCounters()
        self.suppressed_count = 0
        self.lockdown_count = 0

    def is_throttled(self, now: float) -> bool:
        last = self.counters.last_report_time
        if last is None:
            return False
        return (now - last) * 1000.0 <= self.config.throttle_window_ms

    def submit(self, signal: ViolationSignal, session_id: str) -> EscalationOutcome:
        c = self.counters
        now = signal.timestamp

        if not signal.bypasses_throttle:
            if self.is_throttled(now):
                self.suppressed_count += 1
                _log.debug("Throttled %s (%.0f ms since last report)",
                           signal.kind.value, (now - c.last_report_time) * 1000.0)
                return EscalationOutcome()
            c.last_report_time = now

        report = ViolationReport(
            id=f"violation-{uuid.uuid4().hex}",
            session_id=session_id,
            kind=signal.kind,
            severity=signal.severity,
            message=signal.message,
            timestamp=now,
        )

        c.total_violations += 1
        lockdown = None
        if c.total_violations >= self.config.violation_ceiling:
            lockdown = LockdownSignal(
                session_id=session_id,
                total_violations=c.total_violations,
                timestamp=now,
            )
            self.lockdown_count += 1
            _log.warning("Session %s reached %d violations, lockdown",
                         session_id, c.total_violations)
            c.total_violations = 0

        return EscalationOutcome(report=report, lockdown=lockdown)

    def reset(self) -> None:
        self.counters.last_report_time = None
        self.counters.total_violations = 0
        self.suppressed_count = 0
        self.lockdown_count = 0
