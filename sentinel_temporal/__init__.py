"""Exam-Sentinel temporal smoothing."""

from sentinel_temporal.temporal_smoother import (
    SMOOTHED_ZONE_CONFIDENCE,
    TemporalSmoother,
)

__all__ = ["SMOOTHED_ZONE_CONFIDENCE", "TemporalSmoother"]
