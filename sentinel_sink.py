"""
Exam-Sentinel — Outbound Sink Interface
========================================
Defines the `ViolationSink` base class the session publishes to.
The transport itself (websocket, HTTP, message bus) lives outside
this package and implements this interface.

Bundled sinks:
  - CollectingSink: keeps everything in memory (tests, replay)
  - AuditLogSink: JSONL log plus optional hash chain
"""

from abc import ABC, abstractmethod
import threading
from typing import List, Optional

from sentinel_types import LockdownSignal, ViolationReport


class ViolationSink(ABC):
    """
    Receiver for a session's outbound reports and lockdown signals.
    Called from the session's processing path, one call at a time.
    """

    @abstractmethod
    def publish(self, report: ViolationReport) -> None:
        """Deliver one emitted violation report."""

    @abstractmethod
    def lockdown(self, signal: LockdownSignal) -> None:
        """The session reached its violation ceiling; end or auto-submit it."""

    def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


class CollectingSink(ViolationSink):
    def __init__(self):
        self.reports: List[ViolationReport] = []
        self.lockdowns: List[LockdownSignal] = []
        self._lock = threading.Lock()

    def publish(self, report: ViolationReport) -> None:
        with self._lock:
            self.reports.append(report)

    def lockdown(self, signal: LockdownSignal) -> None:
        with self._lock:
            self.lockdowns.append(signal)


class AuditLogSink(ViolationSink):
    """Writes to a SentinelLogger and, if given, a ViolationAuditTrail."""

    def __init__(self, logger, audit_trail=None, downstream: Optional[ViolationSink] = None):
        self.logger = logger
        self.audit_trail = audit_trail
        self.downstream = downstream

    def publish(self, report: ViolationReport) -> None:
        self.logger.log_violation(report)
        if self.audit_trail is not None:
            self.audit_trail.add_report(report)
        if self.downstream is not None:
            self.downstream.publish(report)

    def lockdown(self, signal: LockdownSignal) -> None:
        self.logger.log_lockdown(signal)
        if self.audit_trail is not None:
            self.audit_trail.add_lockdown(signal)
        if self.downstream is not None:
            self.downstream.lockdown(signal)

    def close(self) -> None:
        if self.downstream is not None:
            self.downstream.close()
