"""
Exam-Sentinel -- Gaze & Head-Pose Test Suite
=============================================
Covers: expected-value angle decoding, softmax shift invariance,
geometric head pose, iris gaze vector, zone priority and the
GazeTracker look-away timer and warning text.
"""

from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Project root
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from sentinel_errors import DegenerateGeometry, InvalidFrameInput, ShapeMismatch
from sentinel_gaze import (
    GazeAngleDecoder,
    GazeTracker,
    classify_gaze_zone,
    compute_gaze_vector,
    estimate_head_pose,
)
from sentinel_types import GazeVector, GazeZoneTag, HeadPose, SessionCounters
from sentinel_utils_core import ProctorConfig, softmax


# ── Helpers ───────────────────────────────────────────────────

class _MockLandmark:
    """Simulate MediaPipe landmark with .x, .y, .z attributes."""
    def __init__(self, x: float, y: float, z: float = 0.0):
        self.x = x
        self.y = y
        self.z = z


def _make_face(gaze=(0.0, 0.0), nose_dx=0.0, nose_dy=0.0, ear_dy=0.0) -> np.ndarray:
    """478-point mesh. Eye corners put the face width at 0.3 and the
    outer-corner midpoint at x=0.6; nose and forehead coincide unless
    nose_dy is set, so the default pose is (0, 0, 0)."""
    pts = np.zeros((478, 3), dtype=np.float64)
    pts[33] = (0.35, 0.40, 0.0)
    pts[133] = (0.45, 0.40, 0.0)
    pts[362] = (0.65, 0.40, 0.0)
    pts[263] = (0.75, 0.40, 0.0)
    pts[468] = (0.40 + gaze[0], 0.40 + gaze[1], 0.0)
    pts[473] = (0.70 + gaze[0], 0.40 + gaze[1], 0.0)
    pts[1] = (0.60 + nose_dx, 0.50 + nose_dy, 0.0)
    pts[10] = (0.60, 0.50, 0.0)
    pts[234] = (0.30, 0.50, 0.0)
    pts[454] = (0.90, 0.50 + ear_dy, 0.0)
    return pts


@pytest.fixture
def config():
    return ProctorConfig()


# ═══════════════════════════════════════════════════════════════
# TEST 1: Angle decoding
# ═══════════════════════════════════════════════════════════════

def test_uniform_logits_decode_to_mean_bin(config):
    # Mean index of 0..89 is 44.5 -> 44.5 * 2 - 90 = -1
    angle = GazeAngleDecoder(config).logits_to_angle(np.zeros(90))
    assert angle == pytest.approx(-1.0)


def test_peaked_logits_decode_to_bin_angle(config):
    logits = np.zeros(90)
    logits[65] = 1000.0
    assert GazeAngleDecoder(config).logits_to_angle(logits) == pytest.approx(40.0)


def test_angle_decoding_is_shift_invariant(config):
    decoder = GazeAngleDecoder(config)
    logits = np.random.default_rng(3).normal(0, 3, 90)

    base = decoder.logits_to_angle(logits)
    for shift in (-500.0, 7.25, 1e4):
        assert decoder.logits_to_angle(logits + shift) == pytest.approx(base, abs=1e-9)


def test_softmax_sums_to_one_with_large_logits():
    probs = softmax([1000.0, 1001.0, 999.0])
    assert np.all(np.isfinite(probs))
    assert probs.sum() == pytest.approx(1.0)


def test_wrong_bin_count_raises(config):
    with pytest.raises(ShapeMismatch):
        GazeAngleDecoder(config).logits_to_angle(np.zeros(66))


def test_non_finite_logits_raise(config):
    logits = np.zeros(90)
    logits[3] = np.nan
    with pytest.raises(InvalidFrameInput):
        GazeAngleDecoder(config).logits_to_angle(logits)


@pytest.mark.parametrize("logits", [["a"] * 90, [[1.0, 2.0], [3.0]], [None] * 90])
def test_non_numeric_logits_raise(config, logits):
    with pytest.raises(InvalidFrameInput):
        GazeAngleDecoder(config).logits_to_angle(logits)


def test_decode_pose_has_zero_roll(config):
    pitch = np.zeros(90)
    pitch[45] = 1000.0
    yaw = np.zeros(90)
    yaw[30] = 1000.0

    pose = GazeAngleDecoder(config).decode(pitch, yaw)

    assert pose.pitch == pytest.approx(0.0)
    assert pose.yaw == pytest.approx(-30.0)
    assert pose.roll == 0.0


# ═══════════════════════════════════════════════════════════════
# TEST 2: Geometric head pose
# ═══════════════════════════════════════════════════════════════

def test_frontal_face_pose_is_zero():
    pose = estimate_head_pose(_make_face())
    assert pose.pitch == pytest.approx(0.0)
    assert pose.yaw == pytest.approx(0.0)
    assert pose.roll == pytest.approx(0.0)


def test_head_pose_formulas():
    pose = estimate_head_pose(_make_face(nose_dx=0.1, nose_dy=0.5, ear_dy=0.6))
    # yaw = 0.1 / 0.3 * 90; pitch = atan2(0.5, 1); roll = atan2(0.6, 0.6)
    assert pose.yaw == pytest.approx(30.0)
    assert pose.pitch == pytest.approx(math.degrees(math.atan2(0.5, 1.0)))
    assert pose.roll == pytest.approx(45.0)


def test_object_landmarks_match_array_landmarks():
    arr = _make_face(nose_dx=-0.05, nose_dy=0.2)
    objs = [_MockLandmark(*p) for p in arr]
    assert estimate_head_pose(objs) == estimate_head_pose(arr)


def test_collapsed_face_is_degenerate():
    pts = _make_face()
    pts[263] = pts[133]
    with pytest.raises(DegenerateGeometry):
        estimate_head_pose(pts)


def test_short_mesh_raises_shape_mismatch():
    with pytest.raises(ShapeMismatch):
        estimate_head_pose(np.zeros((468, 3)))
    with pytest.raises(ShapeMismatch):
        compute_gaze_vector(np.zeros((10, 2)))


@pytest.mark.parametrize("landmarks", [
    [0.5] * 478,
    np.zeros(1434),
    np.zeros((478, 1)),
    [("x", "y")] * 478,
])
def test_entries_that_are_not_points_raise_shape_mismatch(landmarks):
    with pytest.raises(ShapeMismatch):
        estimate_head_pose(landmarks)
    with pytest.raises(ShapeMismatch):
        compute_gaze_vector(landmarks)


def test_gaze_vector_is_mean_iris_offset():
    vec = compute_gaze_vector(_make_face(gaze=(0.05, -0.02)))
    assert vec.x == pytest.approx(0.05)
    assert vec.y == pytest.approx(-0.02)


# ═══════════════════════════════════════════════════════════════
# TEST 3: Zone classification priority
# ═══════════════════════════════════════════════════════════════

@pytest.mark.parametrize("gx, gy, pitch, yaw, tag, conf", [
    (0.0, 0.0, 0.0, 0.0, GazeZoneTag.SCREEN, 1.0),
    (0.0, 0.0, 30.0, 15.0, GazeZoneTag.PHONE, 0.90),
    (0.0, 0.0, 30.0, 5.0, GazeZoneTag.KEYBOARD, 0.80),
    (0.2, 0.0, 0.0, 0.0, GazeZoneTag.AWAY_HORIZONTAL, 0.85),
    (0.0, 0.0, 0.0, -25.0, GazeZoneTag.AWAY_HORIZONTAL, 0.85),
    (0.2, 0.3, 20.0, 0.0, GazeZoneTag.AWAY_HORIZONTAL, 0.85),
    (0.0, 0.2, 0.0, 0.0, GazeZoneTag.KEYBOARD, 0.80),
    (0.0, -0.2, 0.0, 0.0, GazeZoneTag.CEILING, 0.80),
    (0.0, 0.0, -20.0, 0.0, GazeZoneTag.CEILING, 0.80),
    (0.15, 0.10, 15.0, 20.0, GazeZoneTag.SCREEN, 1.0),
])
def test_zone_priority(config, gx, gy, pitch, yaw, tag, conf):
    zone = classify_gaze_zone(gx, gy, pitch, yaw, config)
    assert zone.tag == tag
    assert zone.confidence == pytest.approx(conf)


def test_zone_thresholds_follow_swapped_config(config):
    assert classify_gaze_zone(0.0, 0.0, 0.0, 25.0, config).tag == GazeZoneTag.AWAY_HORIZONTAL
    relaxed = config.with_overrides(zone_yaw_deg=40.0)
    assert classify_gaze_zone(0.0, 0.0, 0.0, 25.0, relaxed).tag == GazeZoneTag.SCREEN


# ═══════════════════════════════════════════════════════════════
# TEST 4: GazeTracker timer and warnings
# ═══════════════════════════════════════════════════════════════

def test_sustained_look_away_sets_flag_and_warning(config):
    tracker = GazeTracker(config, SessionCounters())
    away = HeadPose(pitch=0.0, yaw=30.0)
    centre = GazeVector(0.0, 0.0)

    for t in (0.0, 1.0, 2.0):
        result = tracker.analyze(centre, away, t)
        assert result.is_looking_away is False

    result = tracker.analyze(centre, away, 3.5)
    assert result.zone.tag == GazeZoneTag.AWAY_HORIZONTAL
    assert result.is_looking_away is True
    assert result.away_seconds == 3
    assert result.warning == "Looking away (3s, yaw: 30.0°)"


def test_return_to_screen_clears_timer_but_flag_lingers(config):
    counters = SessionCounters()
    tracker = GazeTracker(config, counters)
    away = HeadPose(pitch=0.0, yaw=30.0)
    centre = GazeVector(0.0, 0.0)
    tracker.analyze(centre, away, 0.0)
    tracker.analyze(centre, away, 3.5)

    result = tracker.analyze(centre, HeadPose(0.0, 0.0), 4.0)
    assert result.warning is None
    assert result.away_seconds == 0
    assert counters.look_away_start_time is None
    assert result.is_looking_away is True, "looked away within the last second"

    result = tracker.analyze(centre, HeadPose(0.0, 0.0), 4.6)
    assert result.is_looking_away is False


@pytest.mark.parametrize("pose, expected", [
    (HeadPose(30.0, 15.0), "Possible phone usage (0s, pitch: 30.0°)"),
    (HeadPose(20.0, 0.0), "Looking down (0s, pitch: 20.0°)"),
    (HeadPose(-20.0, 0.0), "Looking up (0s)"),
])
def test_warning_text_per_zone(config, pose, expected):
    result = GazeTracker(config).analyze(GazeVector(0.0, 0.0), pose, 10.0)
    assert result.warning == expected


def test_analyze_landmarks_full_path(config):
    tracker = GazeTracker(config)
    result = tracker.analyze_landmarks(_make_face(nose_dx=0.1), now=1.0)
    assert result.head_pose.yaw == pytest.approx(30.0)
    assert result.zone.tag == GazeZoneTag.AWAY_HORIZONTAL
    assert len(tracker.smoother) == 1


def test_set_config_resizes_history(config):
    tracker = GazeTracker(config)
    for t in range(20):
        tracker.analyze(GazeVector(0.0, 0.0), HeadPose(0.0, 0.0), float(t))

    tracker.set_config(config.with_overrides(history_capacity=12, smoothing_window=5))

    assert len(tracker.smoother) == 12
    vec, zone = tracker.smoothed()
    assert vec == GazeVector(0.0, 0.0)
    assert zone.tag == GazeZoneTag.SCREEN
