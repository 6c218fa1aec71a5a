"""
Exam-Sentinel -- Violation Rule Engine Test Suite
==================================================
Priority order, absence and gaze hysteresis, fractional decay,
and discrete browser events.
"""

from __future__ import annotations

import sys
import unittest
from pathlib import Path

import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from sentinel_types import (
    DetectedObject,
    DiscreteEvent,
    HeadPose,
    ObjectLabel,
    SessionCounters,
    Severity,
    ViolationKind,
)
from sentinel_utils import ViolationRuleEngine
from sentinel_utils_core import ProctorConfig


# ── Helpers ───────────────────────────────────────────────────

def _obj(label: ObjectLabel, x: float = 0.0) -> DetectedObject:
    return DetectedObject(label, 0.9, (x, 0.0, x + 50.0, 50.0))


PERSON = _obj(ObjectLabel.PERSON)
PHONE = _obj(ObjectLabel.PHONE, 100.0)
BOOK = _obj(ObjectLabel.BOOK, 200.0)
PAPER = _obj(ObjectLabel.PAPER, 300.0)

AWAY = HeadPose(pitch=0.0, yaw=35.0)
CENTRE = HeadPose(pitch=0.0, yaw=0.0)


@pytest.fixture
def engine():
    return ViolationRuleEngine(ProctorConfig(), SessionCounters())


# ═══════════════════════════════════════════════════════════════
# TEST 1: Multiple persons fire immediately
# ═══════════════════════════════════════════════════════════════

def test_multiple_persons_immediate_regardless_of_streaks(engine):
    engine.counters.absence_streak = 2.5
    engine.counters.gaze_violation_streak = 4

    sig = engine.evaluate([PERSON, _obj(ObjectLabel.PERSON, 80.0), PHONE], CENTRE, 1.0)

    assert sig.kind == ViolationKind.MULTIPLE_PERSONS
    assert sig.severity == Severity.HIGH
    assert sig.message == "Detected 2 people"
    assert sig.bypasses_throttle is False


# ═══════════════════════════════════════════════════════════════
# TEST 2: Absence streak
# ═══════════════════════════════════════════════════════════════

def test_absence_fires_on_third_empty_frame_and_resets(engine):
    assert engine.evaluate([], None, 1.0) is None
    assert engine.evaluate([], None, 2.0) is None

    sig = engine.evaluate([], None, 3.0)

    assert sig.kind == ViolationKind.ABSENCE
    assert sig.severity == Severity.HIGH
    assert sig.message == "No person detected"
    assert engine.counters.absence_streak == 0


def test_absence_decays_by_half_per_clean_frame(engine):
    engine.evaluate([], None, 1.0)
    engine.evaluate([], None, 2.0)
    assert engine.evaluate([PERSON], None, 3.0) is None
    assert engine.counters.absence_streak == pytest.approx(1.5)

    assert engine.evaluate([], None, 4.0) is None  # 2.5
    sig = engine.evaluate([], None, 5.0)  # 3.5 >= 3
    assert sig.kind == ViolationKind.ABSENCE
    assert engine.counters.absence_streak == 0


def test_absence_decay_floors_at_zero(engine):
    engine.evaluate([PERSON], None, 1.0)
    assert engine.counters.absence_streak == 0


def test_absence_not_decayed_when_object_rule_fires(engine):
    engine.evaluate([], None, 1.0)
    engine.evaluate([PERSON, PHONE], None, 2.0)
    assert engine.counters.absence_streak == 1


# ═══════════════════════════════════════════════════════════════
# TEST 3: Forbidden objects
# ═══════════════════════════════════════════════════════════════

def test_phone_is_high_and_beats_book(engine):
    sig = engine.evaluate([PERSON, BOOK, PHONE], None, 1.0)
    assert sig.kind == ViolationKind.FORBIDDEN_OBJECT
    assert sig.severity == Severity.HIGH
    assert sig.message == "Phone detected"


@pytest.mark.parametrize("item", [BOOK, PAPER])
def test_book_or_paper_is_medium(engine, item):
    sig = engine.evaluate([PERSON, item], None, 1.0)
    assert sig.kind == ViolationKind.FORBIDDEN_OBJECT
    assert sig.severity == Severity.MEDIUM
    assert sig.message == "Book/Paper detected"


# ═══════════════════════════════════════════════════════════════
# TEST 4: Gaze deviation hysteresis
# ═══════════════════════════════════════════════════════════════

def test_gaze_fires_after_five_consecutive_frames(engine):
    for t in range(4):
        assert engine.evaluate([PERSON], AWAY, float(t)) is None

    sig = engine.evaluate([PERSON], AWAY, 4.0)

    assert sig.kind == ViolationKind.GAZE_DEVIATION
    assert sig.severity == Severity.MEDIUM
    assert sig.message == "Looking away (Y:35, P:0)"
    assert engine.counters.gaze_violation_streak == 0


def test_four_deviating_then_clean_never_fires(engine):
    signals = [engine.evaluate([PERSON], AWAY, float(t)) for t in range(4)]
    signals.append(engine.evaluate([PERSON], CENTRE, 4.0))

    assert signals == [None] * 5
    assert engine.counters.gaze_violation_streak == 3


def test_pitch_threshold_and_strict_bounds(engine):
    engine.evaluate([PERSON], HeadPose(pitch=-26.0, yaw=0.0), 0.0)
    assert engine.counters.gaze_violation_streak == 1
    engine.evaluate([PERSON], HeadPose(pitch=25.0, yaw=30.0), 1.0)
    assert engine.counters.gaze_violation_streak == 0


def test_gaze_streak_updates_while_higher_rule_wins(engine):
    sig = engine.evaluate([PERSON, PHONE], AWAY, 0.0)
    assert sig.kind == ViolationKind.FORBIDDEN_OBJECT
    assert engine.counters.gaze_violation_streak == 1


def test_gaze_streak_held_at_threshold_until_it_can_fire(engine):
    for t in range(7):
        sig = engine.evaluate([PERSON, PHONE], AWAY, float(t))
        assert sig.kind == ViolationKind.FORBIDDEN_OBJECT
    assert engine.counters.gaze_violation_streak == 5

    sig = engine.evaluate([PERSON], AWAY, 7.0)
    assert sig.kind == ViolationKind.GAZE_DEVIATION


def test_missing_pose_leaves_gaze_streak_alone(engine):
    engine.counters.gaze_violation_streak = 3
    engine.evaluate([PERSON], None, 0.0)
    assert engine.counters.gaze_violation_streak == 3


# ═══════════════════════════════════════════════════════════════
# TEST 5: Discrete events, reset, summary
# ═══════════════════════════════════════════════════════════════

class TestDiscreteEvents(unittest.TestCase):

    def setUp(self):
        self.engine = ViolationRuleEngine(ProctorConfig())

    def test_tab_hidden(self):
        sig = self.engine.on_discrete_event(DiscreteEvent.TAB_HIDDEN, 5.0)
        self.assertEqual(sig.kind, ViolationKind.TAB_SWITCH)
        self.assertEqual(sig.severity, Severity.HIGH)
        self.assertEqual(sig.message, "Tab switch detected")
        self.assertTrue(sig.bypasses_throttle)
        self.assertEqual(sig.timestamp, 5.0)

    def test_fullscreen_exit_by_wire_name(self):
        sig = self.engine.on_discrete_event("fullscreen-exited", 6.0)
        self.assertEqual(sig.kind, ViolationKind.FULLSCREEN_EXIT)
        self.assertEqual(sig.message, "Exited fullscreen mode")

    def test_every_browser_event_maps_to_a_bypass_signal(self):
        for event in DiscreteEvent:
            with self.subTest(event=event.value):
                sig = self.engine.on_discrete_event(event.value, 7.0)
                self.assertIsInstance(sig.kind, ViolationKind)
                self.assertTrue(sig.bypasses_throttle)
                self.assertTrue(sig.message)

    def test_clipboard_and_devtools_events(self):
        paste = self.engine.on_discrete_event("paste-attempt", 1.0)
        self.assertEqual(paste.kind, ViolationKind.CLIPBOARD)
        self.assertEqual(paste.severity, Severity.HIGH)

        copy = self.engine.on_discrete_event(DiscreteEvent.COPY, 2.0)
        self.assertEqual(copy.kind, ViolationKind.CLIPBOARD)
        self.assertEqual(copy.severity, Severity.MEDIUM)

        f12 = self.engine.on_discrete_event(DiscreteEvent.DEVTOOLS_F12, 3.0)
        self.assertEqual(f12.kind, ViolationKind.DEVTOOLS)
        self.assertEqual(f12.message, "Developer tools blocked (F12)")

        click = self.engine.on_discrete_event(DiscreteEvent.RIGHT_CLICK, 4.0)
        self.assertEqual(click.severity, Severity.LOW)

    def test_unknown_event_rejected(self):
        with self.assertRaises(ValueError):
            self.engine.on_discrete_event("window-resized", 1.0)

    def test_events_do_not_touch_streaks(self):
        self.engine.counters.absence_streak = 2.0
        self.engine.on_discrete_event(DiscreteEvent.TAB_HIDDEN, 1.0)
        self.assertEqual(self.engine.counters.absence_streak, 2.0)

    def test_reset_and_summary(self):
        self.engine.evaluate([], None, 0.0)
        self.engine.evaluate([PERSON], AWAY, 1.0)
        summary = self.engine.get_summary()
        self.assertEqual(summary["frames_evaluated"], 2)
        self.assertEqual(summary["gaze_violation_streak"], 1)

        self.engine.reset()
        self.assertEqual(self.engine.counters.absence_streak, 0)
        self.assertEqual(self.engine.counters.gaze_violation_streak, 0)
        self.assertEqual(len(self.engine.history), 0)
