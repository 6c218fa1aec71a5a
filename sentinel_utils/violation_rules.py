"""
Exam-Sentinel — Violation Rule Engine
======================================
Fuses one frame's detections and head pose into at most one
ViolationSignal, using two hysteresis counters to reject jitter.

PRIORITY TABLE (first match wins):

  # | Condition                       | Kind              | Severity
  --|---------------------------------|-------------------|---------
  1 | persons > 1                     | multiple-faces    | high
  2 | persons == 0, streak reaches N  | no-face           | high
  3 | phone present                   | forbidden-object  | high
  4 | book or paper present           | forbidden-object  | medium
  5 | pose beyond bounds for M frames | look-away         | medium
  6 | nothing fired                   | absence streak decays by 0.5

The gaze streak is updated on every frame that carries a pose, even when
a higher rule wins that frame. Only its emission is priority-gated.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Optional

from sentinel_types import (
    DetectedObject,
    DiscreteEvent,
    HeadPose,
    ObjectLabel,
    SessionCounters,
    Severity,
    ViolationKind,
    ViolationSignal,
)

_log = logging.getLogger("RuleEngine")

# event -> (kind, severity, message). All of them skip throttling.
_DISCRETE_EVENTS = {
    DiscreteEvent.TAB_HIDDEN: (ViolationKind.TAB_SWITCH, Severity.HIGH, "Tab switch detected"),
    DiscreteEvent.FULLSCREEN_EXITED: (ViolationKind.FULLSCREEN_EXIT, Severity.HIGH,
                                      "Exited fullscreen mode"),
    DiscreteEvent.WINDOW_BLURRED: (ViolationKind.WINDOW_BLUR, Severity.MEDIUM,
                                   "Exam window lost focus"),
    DiscreteEvent.COPY: (ViolationKind.CLIPBOARD, Severity.MEDIUM, "Copy attempt blocked"),
    DiscreteEvent.PASTE: (ViolationKind.CLIPBOARD, Severity.HIGH, "Paste attempt blocked"),
    DiscreteEvent.CUT: (ViolationKind.CLIPBOARD, Severity.MEDIUM, "Cut attempt blocked"),
    DiscreteEvent.RIGHT_CLICK: (ViolationKind.RIGHT_CLICK, Severity.LOW, "Right-click blocked"),
    DiscreteEvent.DEVTOOLS_F12: (ViolationKind.DEVTOOLS, Severity.HIGH,
                                 "Developer tools blocked (F12)"),
    DiscreteEvent.DEVTOOLS_INSPECT: (ViolationKind.DEVTOOLS, Severity.HIGH,
                                     "Developer tools blocked (Ctrl+Shift+I)"),
    DiscreteEvent.DEVTOOLS_CONSOLE: (ViolationKind.DEVTOOLS, Severity.HIGH,
                                     "Developer console blocked (Ctrl+Shift+J)"),
    DiscreteEvent.DEVTOOLS_INSPECTOR: (ViolationKind.DEVTOOLS, Severity.HIGH,
                                       "Element inspector blocked (Ctrl+Shift+C)"),
    DiscreteEvent.VIEW_SOURCE: (ViolationKind.VIEW_SOURCE, Severity.HIGH,
                                "View source blocked (Ctrl+U)"),
    DiscreteEvent.SAVE_PAGE: (ViolationKind.SAVE_PAGE, Severity.MEDIUM,
                              "Save page blocked (Ctrl+S)"),
    DiscreteEvent.PRINT: (ViolationKind.PRINT, Severity.MEDIUM, "Print blocked (Ctrl+P)"),
    DiscreteEvent.SCREENSHOT: (ViolationKind.SCREENSHOT, Severity.HIGH,
                               "Screenshot attempt detected"),
}


class ViolationRuleEngine:
    """Per-session rule state machine over SessionCounters."""

    def __init__(self, config, counters: Optional[SessionCounters] = None):
        self.config = config
        self.counters = counters if counters is not None else SessionCounters()
        self.history: deque = deque(maxlen=100)
        self._frames_evaluated = 0
        self._signals_raised = 0

    def evaluate(
        self,
        objects: Iterable[DetectedObject],
        pose: Optional[HeadPose],
        now: float,
    ) -> Optional[ViolationSignal]:
        """Evaluate one frame.

        Args:
            objects: Decoded detections for this frame.
            pose: Head pose from either path, or None if unavailable.
            now: Frame timestamp in seconds.

        Returns:
            The winning ViolationSignal, or None.
        """
        objects = list(objects)
        cfg = self.config
        c = self.counters
        self._frames_evaluated += 1

        persons = sum(1 for o in objects if o.label == ObjectLabel.PERSON)
        phones = sum(1 for o in objects if o.label == ObjectLabel.PHONE)
        papers = sum(1 for o in objects if o.label in (ObjectLabel.BOOK, ObjectLabel.PAPER))

        gaze_ready = self._update_gaze_streak(pose)

        signal: Optional[ViolationSignal] = None
        if persons > 1:
            signal = self._signal(ViolationKind.MULTIPLE_PERSONS, Severity.HIGH,
                                  f"Detected {persons} people", now)
        elif persons == 0:
            c.absence_streak += 1
            if c.absence_streak >= cfg.absence_streak_threshold:
                c.absence_streak = 0.0
                signal = self._signal(ViolationKind.ABSENCE, Severity.HIGH,
                                      "No person detected", now)
            self._record(persons, signal, now)
            return signal
        elif phones > 0:
            signal = self._signal(ViolationKind.FORBIDDEN_OBJECT, Severity.HIGH,
                                  "Phone detected", now)
        elif papers > 0:
            signal = self._signal(ViolationKind.FORBIDDEN_OBJECT, Severity.MEDIUM,
                                  "Book/Paper detected", now)
        elif gaze_ready:
            c.gaze_violation_streak = 0
            signal = self._signal(
                ViolationKind.GAZE_DEVIATION, Severity.MEDIUM,
                f"Looking away (Y:{pose.yaw:.0f}, P:{pose.pitch:.0f})", now)
        else:
            c.absence_streak = max(0.0, c.absence_streak - cfg.absence_decay)

        self._record(persons, signal, now)
        return signal

    def _update_gaze_streak(self, pose: Optional[HeadPose]) -> bool:
        """Advance or decay the gaze streak. True when it has reached threshold."""
        if pose is None:
            return False
        cfg = self.config
        c = self.counters
        if abs(pose.yaw) > cfg.violation_yaw_deg or abs(pose.pitch) > cfg.violation_pitch_deg:
            # Held at the threshold while a higher rule keeps winning.
            c.gaze_violation_streak = min(c.gaze_violation_streak + 1,
                                          cfg.gaze_streak_threshold)
            return c.gaze_violation_streak >= cfg.gaze_streak_threshold
        c.gaze_violation_streak = max(0, c.gaze_violation_streak - cfg.gaze_decay)
        return False

    def on_discrete_event(self, event, now: float) -> ViolationSignal:
        """Browser event -> immediate signal that skips throttling.

        Raises:
            ValueError: unknown event name.
        """
        event = DiscreteEvent(event)
        kind, severity, message = _DISCRETE_EVENTS[event]
        _log.info("Discrete event %s", event.value)
        return self._signal(kind, severity, message, now, bypasses_throttle=True)

    def _signal(self, kind, severity, message, now, bypasses_throttle=False) -> ViolationSignal:
        self._signals_raised += 1
        _log.debug("Rule fired: %s (%s) %s", kind.value, severity.value, message)
        return ViolationSignal(kind, severity, message, now, bypasses_throttle)

    def _record(self, persons: int, signal: Optional[ViolationSignal], now: float) -> None:
        self.history.append({
            "timestamp": now,
            "persons": persons,
            "signal": signal.kind.value if signal else None,
            "absence_streak": self.counters.absence_streak,
            "gaze_streak": self.counters.gaze_violation_streak,
        })

    def reset(self) -> None:
        self.counters.absence_streak = 0.0
        self.counters.gaze_violation_streak = 0
        self.history.clear()

    def get_summary(self) -> dict:
        return {
            "frames_evaluated": self._frames_evaluated,
            "signals_raised": self._signals_raised,
            "absence_streak": self.counters.absence_streak,
            "gaze_violation_streak": self.counters.gaze_violation_streak,
        }
