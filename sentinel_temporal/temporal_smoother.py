"""
Exam-Sentinel — Temporal Smoother
==================================
Short rolling history of classified gaze samples, used to:
  - average out single-frame iris jitter (smoothed gaze vector)
  - pick the dominant zone over the last K frames (majority vote)
  - track how long the examinee has continuously been off-screen
"""

from __future__ import annotations

from collections import Counter, deque
from typing import Optional

from sentinel_types import (
    GazeSample,
    GazeVector,
    GazeZone,
    GazeZoneTag,
    SessionCounters,
)

# Fixed confidence for a vote-smoothed zone.
SMOOTHED_ZONE_CONFIDENCE = 0.9


class TemporalSmoother:
    """Fixed-capacity FIFO of GazeSample plus the continuous away timer.

    Away-timer state lives in the session's SessionCounters so that it is
    torn down together with the other per-session counters.
    """

    def __init__(
        self,
        capacity: int = 30,
        counters: Optional[SessionCounters] = None,
        look_away_duration_ms: float = 3000,
        look_away_flag_ms: float = 1000,
    ):
        self.capacity = capacity
        self.history: deque = deque(maxlen=capacity)
        self.counters = counters if counters is not None else SessionCounters()
        self.look_away_duration_ms = look_away_duration_ms
        self.look_away_flag_ms = look_away_flag_ms

    def __len__(self) -> int:
        return len(self.history)

    def add(self, sample: GazeSample) -> None:
        self.history.append(sample)

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the most recent samples."""
        if capacity == self.capacity:
            return
        self.history = deque(self.history, maxlen=capacity)
        self.capacity = capacity

    def _recent(self, k: int) -> Optional[list]:
        if k <= 0 or len(self.history) < k:
            return None
        return list(self.history)[-k:]

    def smoothed_gaze(self, k: int = 10) -> Optional[GazeVector]:
        """Mean gaze vector over the last k samples, None until k are buffered."""
        recent = self._recent(k)
        if recent is None:
            return None
        avg_x = sum(s.vector.x for s in recent) / k
        avg_y = sum(s.vector.y for s in recent) / k
        return GazeVector(avg_x, avg_y)

    def smoothed_zone(self, k: int = 10) -> Optional[GazeZone]:
        """Majority zone over the last k samples, None until k are buffered.

        Ties go to the zone that appears first in the window (oldest first).
        Counter keeps insertion order and max() returns the first maximum.
        """
        recent = self._recent(k)
        if recent is None:
            return None
        counts = Counter(s.zone.tag for s in recent)
        winner = max(counts, key=counts.get)
        return GazeZone(winner, SMOOTHED_ZONE_CONFIDENCE)

    # ── Continuous away timer ─────────────────────────────────

    def update_away(self, tag: GazeZoneTag, now: float) -> float:
        """Advance the away timer with this frame's zone.

        Returns:
            Seconds spent continuously off-screen (0.0 when on screen).
        """
        c = self.counters
        if tag == GazeZoneTag.SCREEN:
            c.look_away_start_time = None
            return 0.0

        if c.look_away_start_time is None:
            c.look_away_start_time = now
        elapsed = now - c.look_away_start_time
        if elapsed * 1000.0 > self.look_away_duration_ms:
            c.last_look_away_time = now
        return elapsed

    def away_seconds(self, now: float) -> int:
        """Whole seconds on the current away timer (0 when unset)."""
        start = self.counters.look_away_start_time
        if start is None:
            return 0
        return int((now - start) // 1)

    def is_looking_away(self, now: float) -> bool:
        """True if a sustained look-away was seen within the flag window."""
        last = self.counters.last_look_away_time
        if last is None:
            return False
        return (now - last) * 1000.0 < self.look_away_flag_ms

    def clear(self) -> None:
        self.history.clear()
        self.counters.look_away_start_time = None
        self.counters.last_look_away_time = None
