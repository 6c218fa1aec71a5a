"""
Exam-Sentinel — Gaze & Head-Pose Decoding
==========================================
Two independent routes to a HeadPose, plus the gaze-zone classifier.

  A) Learned path: per-axis bin logits (L2CS-style) -> expected-value angle
  B) Geometric path: 478-point face mesh -> pitch / yaw / roll via atan2
  C) Iris offset -> GazeVector
  D) (gaze, pose) -> GazeZone, first match wins
  E) GazeTracker: classifier + TemporalSmoother + warning text

Both pose paths return the same HeadPose so the rule engine never needs
to know which one produced it.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional, Sequence

import numpy as np

from sentinel_errors import DegenerateGeometry, InvalidFrameInput, ShapeMismatch
from sentinel_temporal.temporal_smoother import TemporalSmoother
from sentinel_types import (
    GazeAnalysis,
    GazeSample,
    GazeVector,
    GazeZone,
    GazeZoneTag,
    HeadPose,
    SessionCounters,
)
from sentinel_utils_core import (
    FACE_MESH_POINTS,
    FOREHEAD,
    LEFT_EAR,
    LEFT_EYE_INNER,
    LEFT_EYE_OUTER,
    LEFT_IRIS_CENTER,
    NOSE_TIP,
    RIGHT_EAR,
    RIGHT_EYE_INNER,
    RIGHT_EYE_OUTER,
    RIGHT_IRIS_CENTER,
    softmax,
)

_log = logging.getLogger("GazeDecoder")

# Fixed confidence per zone, decreasing down the priority list.
ZONE_CONFIDENCE = {
    GazeZoneTag.PHONE: 0.90,
    GazeZoneTag.AWAY_HORIZONTAL: 0.85,
    GazeZoneTag.KEYBOARD: 0.80,
    GazeZoneTag.CEILING: 0.80,
    GazeZoneTag.SCREEN: 1.0,
}


# ═══════════════════════════════════════════════════════════════
# A) Learned path
# ═══════════════════════════════════════════════════════════════

class GazeAngleDecoder:
    """Expected-value decoding of discretised angle logits.

    angle = (sum_i p_i * i) * bin_width_deg + angle_offset_deg

    The bin layout is fixed at training time and comes from config; it
    is never inferred from the logits.
    """

    def __init__(self, config) -> None:
        self.config = config

    def logits_to_angle(self, logits: Sequence[float]) -> float:
        try:
            arr = np.asarray(logits, dtype=np.float64).reshape(-1)
        except (TypeError, ValueError) as e:
            raise InvalidFrameInput(f"Angle logits are not numeric: {e}") from e
        num_bins = self.config.num_bins
        if arr.size != num_bins:
            raise ShapeMismatch(
                f"Expected {num_bins} angle bins, got {arr.size}",
                expected=num_bins, actual=arr.size)
        if not np.all(np.isfinite(arr)):
            raise InvalidFrameInput("Angle logits contain NaN or Inf")

        probs = softmax(arr)
        expected_idx = float(np.dot(probs, np.arange(num_bins, dtype=np.float64)))
        return expected_idx * self.config.bin_width_deg + self.config.angle_offset_deg

    def decode(self, pitch_logits: Sequence[float],
               yaw_logits: Sequence[float]) -> HeadPose:
        """Model has no roll head, so roll is reported as 0."""
        return HeadPose(
            pitch=self.logits_to_angle(pitch_logits),
            yaw=self.logits_to_angle(yaw_logits),
            roll=0.0,
        )


# ═══════════════════════════════════════════════════════════════
# B/C) Geometric path
# ═══════════════════════════════════════════════════════════════

def _point(landmarks: Any, idx: int) -> tuple:
    """(x, y, z) for one landmark; z is 0.0 when absent.

    Accepts an (N, 2|3) array-like or a sequence of objects exposing
    .x/.y[/.z] (MediaPipe NormalizedLandmark style).

    Raises:
        ShapeMismatch: the entry is not an (x, y[, z]) point.
    """
    try:
        lm = landmarks[idx]
        if hasattr(lm, "x"):
            return float(lm.x), float(lm.y), float(getattr(lm, "z", 0.0) or 0.0)
        z = float(lm[2]) if len(lm) > 2 else 0.0
        return float(lm[0]), float(lm[1]), z
    except (TypeError, ValueError, IndexError, KeyError) as e:
        raise ShapeMismatch(f"Landmark {idx} is not an (x, y[, z]) point: {e}") from e


def _check_mesh(landmarks: Any) -> None:
    if landmarks is None:
        raise ShapeMismatch("No landmarks supplied", expected=FACE_MESH_POINTS, actual=0)
    try:
        count = len(landmarks)
    except TypeError:
        raise ShapeMismatch("Landmarks are not a sequence") from None
    if count < FACE_MESH_POINTS:
        raise ShapeMismatch(
            f"Face mesh needs {FACE_MESH_POINTS} points (with iris), got {count}",
            expected=FACE_MESH_POINTS, actual=count)


def estimate_head_pose(landmarks: Any, min_face_width: float = 1e-3) -> HeadPose:
    """Geometric head pose from a 478-point face mesh.

    pitch = atan2(nose.y - forehead.y, nose.z or 1)
    yaw   = (nose.x - eye_mid.x) / face_width * 90
    roll  = atan2(right_ear.y - left_ear.y, right_ear.x - left_ear.x)

    Raises:
        ShapeMismatch: fewer than 478 points.
        DegenerateGeometry: face narrower than min_face_width, or a
            non-finite angle.
    """
    _check_mesh(landmarks)

    nose_x, nose_y, nose_z = _point(landmarks, NOSE_TIP)
    _, forehead_y, _ = _point(landmarks, FOREHEAD)
    left_outer_x, _, _ = _point(landmarks, LEFT_EYE_OUTER)
    right_outer_x, _, _ = _point(landmarks, RIGHT_EYE_OUTER)
    left_ear_x, left_ear_y, _ = _point(landmarks, LEFT_EAR)
    right_ear_x, right_ear_y, _ = _point(landmarks, RIGHT_EAR)

    face_width = abs(left_outer_x - right_outer_x)
    if not math.isfinite(face_width) or face_width < min_face_width:
        raise DegenerateGeometry(
            f"Face width {face_width:.6f} below minimum {min_face_width}")

    pitch = math.degrees(math.atan2(nose_y - forehead_y, nose_z or 1.0))
    eye_mid_x = (left_outer_x + right_outer_x) / 2
    yaw = (nose_x - eye_mid_x) / face_width * 90.0
    roll = math.degrees(math.atan2(right_ear_y - left_ear_y, right_ear_x - left_ear_x))

    if not all(math.isfinite(v) for v in (pitch, yaw, roll)):
        raise DegenerateGeometry("Head pose is not finite")
    return HeadPose(pitch=pitch, yaw=yaw, roll=roll)


def compute_gaze_vector(landmarks: Any) -> GazeVector:
    """Mean iris offset from the eye-corner midpoint, both eyes."""
    _check_mesh(landmarks)

    lix, liy, _ = _point(landmarks, LEFT_IRIS_CENTER)
    rix, riy, _ = _point(landmarks, RIGHT_IRIS_CENTER)
    l_in_x, l_in_y, _ = _point(landmarks, LEFT_EYE_INNER)
    l_out_x, l_out_y, _ = _point(landmarks, LEFT_EYE_OUTER)
    r_in_x, r_in_y, _ = _point(landmarks, RIGHT_EYE_INNER)
    r_out_x, r_out_y, _ = _point(landmarks, RIGHT_EYE_OUTER)

    left_cx, left_cy = (l_in_x + l_out_x) / 2, (l_in_y + l_out_y) / 2
    right_cx, right_cy = (r_in_x + r_out_x) / 2, (r_in_y + r_out_y) / 2

    gx = ((lix - left_cx) + (rix - right_cx)) / 2
    gy = ((liy - left_cy) + (riy - right_cy)) / 2
    if not (math.isfinite(gx) and math.isfinite(gy)):
        raise InvalidFrameInput("Iris landmarks are not finite")
    return GazeVector(gx, gy)


# ═══════════════════════════════════════════════════════════════
# D) Zone classifier
# ═══════════════════════════════════════════════════════════════

def classify_gaze_zone(gaze_x: float, gaze_y: float, pitch: float, yaw: float,
                       config) -> GazeZone:
    """Coarse gaze zone. Priority: phone > away > keyboard > ceiling > screen."""
    if pitch > config.phone_pitch_deg and abs(yaw) > config.phone_yaw_deg:
        tag = GazeZoneTag.PHONE
    elif abs(gaze_x) > config.zone_gaze_x or abs(yaw) > config.zone_yaw_deg:
        tag = GazeZoneTag.AWAY_HORIZONTAL
    elif gaze_y > config.zone_gaze_y or pitch > config.zone_pitch_deg:
        tag = GazeZoneTag.KEYBOARD
    elif gaze_y < -config.zone_gaze_y or pitch < -config.zone_pitch_deg:
        tag = GazeZoneTag.CEILING
    else:
        tag = GazeZoneTag.SCREEN
    return GazeZone(tag, ZONE_CONFIDENCE[tag])


# ═══════════════════════════════════════════════════════════════
# E) Tracker
# ═══════════════════════════════════════════════════════════════

def _format_warning(tag: GazeZoneTag, seconds: int, pose: HeadPose) -> Optional[str]:
    if tag == GazeZoneTag.PHONE:
        return f"Possible phone usage ({seconds}s, pitch: {pose.pitch:.1f}°)"
    if tag == GazeZoneTag.KEYBOARD:
        return f"Looking down ({seconds}s, pitch: {pose.pitch:.1f}°)"
    if tag == GazeZoneTag.AWAY_HORIZONTAL:
        return f"Looking away ({seconds}s, yaw: {pose.yaw:.1f}°)"
    if tag == GazeZoneTag.CEILING:
        return f"Looking up ({seconds}s)"
    return None


class GazeTracker:
    """Per-session gaze analysis: classify, buffer, time the look-away."""

    def __init__(self, config, counters: Optional[SessionCounters] = None):
        self.counters = counters if counters is not None else SessionCounters()
        self.smoother = TemporalSmoother(
            capacity=config.history_capacity,
            counters=self.counters,
            look_away_duration_ms=config.look_away_duration_ms,
            look_away_flag_ms=config.look_away_flag_ms,
        )
        self.config = config

    def set_config(self, config) -> None:
        """Swap thresholds; buffered history survives a capacity change."""
        self.config = config
        self.smoother.resize(config.history_capacity)
        self.smoother.look_away_duration_ms = config.look_away_duration_ms
        self.smoother.look_away_flag_ms = config.look_away_flag_ms

    def analyze(self, vector: GazeVector, pose: HeadPose, now: float) -> GazeAnalysis:
        zone = classify_gaze_zone(vector.x, vector.y, pose.pitch, pose.yaw, self.config)
        self.smoother.add(GazeSample(vector, zone, now))
        self.smoother.update_away(zone.tag, now)

        seconds = self.smoother.away_seconds(now)
        return GazeAnalysis(
            vector=vector,
            zone=zone,
            head_pose=pose,
            is_looking_away=self.smoother.is_looking_away(now),
            warning=_format_warning(zone.tag, seconds, pose),
            away_seconds=seconds,
            timestamp=now,
        )

    def analyze_landmarks(self, landmarks: Any, now: float) -> GazeAnalysis:
        """Full geometric path: mesh -> vector + pose -> analysis."""
        pose = estimate_head_pose(landmarks, self.config.min_face_width)
        vector = compute_gaze_vector(landmarks)
        return self.analyze(vector, pose, now)

    def smoothed(self) -> tuple:
        k = self.config.smoothing_window
        return self.smoother.smoothed_gaze(k), self.smoother.smoothed_zone(k)

    def reset(self) -> None:
        self.smoother.clear()
