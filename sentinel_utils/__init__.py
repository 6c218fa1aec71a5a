"""Exam-Sentinel decoding and rule helpers."""

from sentinel_utils.detection_decoder import (
    DetectionDecoder,
    compute_iou,
    non_max_suppression,
)
from sentinel_utils.violation_rules import ViolationRuleEngine

__all__ = [
    "DetectionDecoder",
    "ViolationRuleEngine",
    "compute_iou",
    "non_max_suppression",
]
