"""
Exam-Sentinel — Shared Utility Module
======================================
Centralized configuration and helpers for every per-session pipeline.

Contains:
  A) config.yaml loading merged over built-in defaults
  B) ProctorConfig: validated, immutable threshold set
  C) Module logger setup
  D) Numerically stable softmax
  E) Face-mesh landmark indices used by the geometric paths

Configuration is read-only once built. A session that needs different
thresholds swaps in a new ProctorConfig; nothing mutates a shared one.
"""

from __future__ import annotations

import copy
import logging
import math
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Tuple

import numpy as np
import yaml

from sentinel_errors import ConfigError
from sentinel_types import ObjectLabel


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, 'config.yaml')

DEFAULT_CONFIG: dict = {
    "detection": {
        "class_names": ["person", "phone", "book", "paper"],
        "confidence_threshold": 0.4,
        "iou_threshold": 0.45,
    },
    "gaze": {
        "num_bins": 90,
        "bin_width_deg": 2.0,
        "angle_offset_deg": -90.0,
        "min_face_width": 1e-3,
    },
    "zones": {
        "gaze_x": 0.15,
        "gaze_y": 0.10,
        "yaw_deg": 20.0,
        "pitch_deg": 15.0,
        "phone_pitch_deg": 25.0,
        "phone_yaw_deg": 10.0,
        "look_away_duration_ms": 3000,
        "look_away_flag_ms": 1000,
    },
    "rules": {
        "violation_yaw_deg": 30.0,
        "violation_pitch_deg": 25.0,
        "absence_streak_threshold": 3,
        "absence_decay": 0.5,
        "gaze_streak_threshold": 5,
        "gaze_decay": 1,
    },
    "escalation": {
        "throttle_window_ms": 5000,
        "violation_ceiling": 3,
    },
    "pipeline": {
        "tick_interval_s": 1.0,
        "history_capacity": 30,
        "smoothing_window": 10,
    },
    "logging": {
        "log_dir": "logs",
        "level": "INFO",
    },
}


def _deep_merge(base: dict, override: Mapping) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml and merge it over DEFAULT_CONFIG.

    An explicit path must exist; the bundled config.yaml is optional.
    """
    target = path or _config_path
    if path is None and not os.path.exists(target):
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"{target}: top level must be a mapping")
    return _deep_merge(DEFAULT_CONFIG, loaded)


CONFIG = load_config()


# Section -> flat ProctorConfig field. Keys not listed here are rejected.
_SECTION_FIELDS = {
    "detection": {
        "class_names": "class_names",
        "confidence_threshold": "confidence_threshold",
        "iou_threshold": "iou_threshold",
    },
    "gaze": {
        "num_bins": "num_bins",
        "bin_width_deg": "bin_width_deg",
        "angle_offset_deg": "angle_offset_deg",
        "min_face_width": "min_face_width",
    },
    "zones": {
        "gaze_x": "zone_gaze_x",
        "gaze_y": "zone_gaze_y",
        "yaw_deg": "zone_yaw_deg",
        "pitch_deg": "zone_pitch_deg",
        "phone_pitch_deg": "phone_pitch_deg",
        "phone_yaw_deg": "phone_yaw_deg",
        "look_away_duration_ms": "look_away_duration_ms",
        "look_away_flag_ms": "look_away_flag_ms",
    },
    "rules": {
        "violation_yaw_deg": "violation_yaw_deg",
        "violation_pitch_deg": "violation_pitch_deg",
        "absence_streak_threshold": "absence_streak_threshold",
        "absence_decay": "absence_decay",
        "gaze_streak_threshold": "gaze_streak_threshold",
        "gaze_decay": "gaze_decay",
    },
    "escalation": {
        "throttle_window_ms": "throttle_window_ms",
        "violation_ceiling": "violation_ceiling",
    },
    "pipeline": {
        "tick_interval_s": "tick_interval_s",
        "history_capacity": "history_capacity",
        "smoothing_window": "smoothing_window",
    },
    "logging": {
        "log_dir": "log_dir",
        "level": "log_level",
    },
}


@dataclass(frozen=True)
class ProctorConfig:
    """Every recognised threshold, flattened and validated.

    Build with ``ProctorConfig.from_mapping(load_config())`` or use the
    defaults; derive variants with ``with_overrides``.
    """

    # Detection decoder
    class_names: Tuple[str, ...] = ("person", "phone", "book", "paper")
    confidence_threshold: float = 0.4
    iou_threshold: float = 0.45

    # Gaze-bin decoding
    num_bins: int = 90
    bin_width_deg: float = 2.0
    angle_offset_deg: float = -90.0
    min_face_width: float = 1e-3

    # Zone classification
    zone_gaze_x: float = 0.15
    zone_gaze_y: float = 0.10
    zone_yaw_deg: float = 20.0
    zone_pitch_deg: float = 15.0
    phone_pitch_deg: float = 25.0
    phone_yaw_deg: float = 10.0
    look_away_duration_ms: float = 3000
    look_away_flag_ms: float = 1000

    # Rule engine
    violation_yaw_deg: float = 30.0
    violation_pitch_deg: float = 25.0
    absence_streak_threshold: int = 3
    absence_decay: float = 0.5
    gaze_streak_threshold: int = 5
    gaze_decay: int = 1

    # Escalation
    throttle_window_ms: float = 5000
    violation_ceiling: int = 3

    # Pipeline
    tick_interval_s: float = 1.0
    history_capacity: int = 30
    smoothing_window: int = 10

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # YAML gives lists; keep the frozen instance hashable.
        object.__setattr__(self, "class_names", tuple(self.class_names))
        self.validate()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProctorConfig":
        """Build from a sectioned dict as returned by load_config()."""
        kwargs: dict = {}
        for section, values in data.items():
            if section not in _SECTION_FIELDS:
                raise ConfigError(f"Unknown config section '{section}'")
            if not isinstance(values, Mapping):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            for key, value in values.items():
                try:
                    kwargs[_SECTION_FIELDS[section][key]] = value
                except KeyError:
                    raise ConfigError(f"Unknown option '{section}.{key}'") from None
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "ProctorConfig":
        return cls.from_mapping(load_config(path))

    def with_overrides(self, **overrides: Any) -> "ProctorConfig":
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown option(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    def labels(self) -> Tuple[ObjectLabel, ...]:
        return tuple(ObjectLabel(name) for name in self.class_names)

    def validate(self) -> None:
        """Raise ConfigError on the first out-of-range value."""
        if not self.class_names:
            raise ConfigError("class_names must not be empty")
        valid_labels = {label.value for label in ObjectLabel}
        for name in self.class_names:
            if name not in valid_labels:
                raise ConfigError(
                    f"class_names entry '{name}' is not one of {sorted(valid_labels)}")
        if len(set(self.class_names)) != len(self.class_names):
            raise ConfigError("class_names must not contain duplicates")

        _check_range("confidence_threshold", self.confidence_threshold, 0.0, 1.0)
        _check_range("iou_threshold", self.iou_threshold, 0.0, 1.0)

        _check_int("num_bins", self.num_bins, minimum=2)
        _check_positive("bin_width_deg", self.bin_width_deg)
        _check_finite("angle_offset_deg", self.angle_offset_deg)
        _check_positive("min_face_width", self.min_face_width)

        for name in ("zone_gaze_x", "zone_gaze_y", "zone_yaw_deg",
                     "zone_pitch_deg", "phone_pitch_deg", "phone_yaw_deg",
                     "look_away_duration_ms", "look_away_flag_ms",
                     "absence_decay", "throttle_window_ms"):
            _check_non_negative(name, getattr(self, name))

        _check_positive("violation_yaw_deg", self.violation_yaw_deg)
        _check_positive("violation_pitch_deg", self.violation_pitch_deg)
        _check_int("absence_streak_threshold", self.absence_streak_threshold, minimum=1)
        _check_int("gaze_streak_threshold", self.gaze_streak_threshold, minimum=1)
        _check_int("gaze_decay", self.gaze_decay, minimum=0)
        _check_int("violation_ceiling", self.violation_ceiling, minimum=1)

        _check_positive("tick_interval_s", self.tick_interval_s)
        _check_int("history_capacity", self.history_capacity, minimum=1)
        _check_int("smoothing_window", self.smoothing_window, minimum=1)
        if self.smoothing_window > self.history_capacity:
            raise ConfigError(
                f"smoothing_window ({self.smoothing_window}) exceeds "
                f"history_capacity ({self.history_capacity})")

        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigError(f"Unknown log level '{self.log_level}'")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_finite(name: str, value: Any) -> None:
    if not _is_number(value) or not math.isfinite(value):
        raise ConfigError(f"{name} must be a finite number, got {value!r}")


def _check_range(name: str, value: Any, low: float, high: float) -> None:
    _check_finite(name, value)
    if not low <= value <= high:
        raise ConfigError(f"{name} must be in [{low}, {high}], got {value}")


def _check_positive(name: str, value: Any) -> None:
    _check_finite(name, value)
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got {value}")


def _check_non_negative(name: str, value: Any) -> None:
    _check_finite(name, value)
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")


def _check_int(name: str, value: Any, minimum: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for Exam-Sentinel modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


# ===================================================================
# Softmax
# ===================================================================

def softmax(logits) -> np.ndarray:
    """Numerically stable softmax over a 1-D vector.

    Subtracting the max logit before exponentiating keeps exp() in range
    and makes the result invariant to adding a constant to every logit.
    """
    arr = np.asarray(logits, dtype=np.float64)
    shifted = arr - np.max(arr)
    exps = np.exp(shifted)
    return exps / np.sum(exps)


# ===================================================================
# MediaPipe 478-point face mesh indices
# ===================================================================

NOSE_TIP = 1
FOREHEAD = 10
LEFT_EYE_INNER = 33
LEFT_EYE_OUTER = 133
RIGHT_EYE_INNER = 362
RIGHT_EYE_OUTER = 263
LEFT_EAR = 234
RIGHT_EAR = 454
LEFT_IRIS_CENTER = 468
RIGHT_IRIS_CENTER = 473

FACE_MESH_POINTS = 478
