"""
Exam-Sentinel — Session Engine (Per-Examinee Decision Pipeline)
================================================================
One ProctorSession per monitored exam attempt. Sessions share nothing
mutable; only the read-only ProctorConfig may be handed to several.

Architecture: tick thread + immediate event path
  1. Collaborators submit() the latest FrameInference into a one-slot
     mailbox (older unprocessed results are dropped)
  2. Tick thread wakes every tick_interval_s, takes the mailbox content
     and runs decode -> classify -> fuse -> throttle -> sink.
     An empty mailbox means the tick is skipped, nothing is queued.
  3. on_discrete_event() runs on the caller's thread immediately

Both paths hold the session lock, so counters have one writer at a time.

Features:
  - FrameError recovery: bad frame skipped, counters preserved
  - Learned pose preferred, geometric pose as fallback
  - Runtime threshold swaps via update_config()
  - Structured JSONL audit logging
  - Deterministic teardown (thread joined, buffers cleared)
"""

import logging
import queue
import threading
import time
from typing import Callable, Dict, List, Optional

import psutil

from sentinel_errors import ConfigError, FrameError, SessionClosed
from sentinel_escalation import EscalationController
from sentinel_gaze import GazeAngleDecoder, GazeTracker
from sentinel_logger import SentinelLogger
from sentinel_sink import CollectingSink, ViolationSink
from sentinel_types import (
    DetectedObject,
    FrameInference,
    SessionCounters,
    ViolationReport,
)
from sentinel_utils.detection_decoder import DetectionDecoder
from sentinel_utils.violation_rules import ViolationRuleEngine
from sentinel_utils_core import ProctorConfig

_log = logging.getLogger("SentinelEngine")


class ProctorSession:
    """
    Decision pipeline for a single exam session.
    """

    def __init__(
        self,
        session_id: str,
        config: Optional[ProctorConfig] = None,
        sink: Optional[ViolationSink] = None,
        logger: Optional[SentinelLogger] = None,
        clock: Callable[[], float] = time.time,
        owns_logger: bool = False,
    ):
        self.session_id = session_id
        self.config = config or ProctorConfig()
        self.sink = sink if sink is not None else CollectingSink()
        self.logger = logger
        self._owns_logger = owns_logger
        self._clock = clock

        # Per-session state, never shared
        self.counters = SessionCounters()
        self.decoder = DetectionDecoder(self.config)
        self.angle_decoder = GazeAngleDecoder(self.config)
        self.tracker = GazeTracker(self.config, self.counters)
        self.rules = ViolationRuleEngine(self.config, self.counters)
        self.escalation = EscalationController(self.config, self.counters)

        # Single slot: newest inference replaces any unprocessed one
        self._mailbox: queue.Queue = queue.Queue(maxsize=1)
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.running = False
        self.closed = False

        self.last_analysis = None
        self._stats = {
            "frames_processed": 0,
            "frames_failed": 0,
            "frames_dropped": 0,
            "frames_without_detections": 0,
            "ticks_skipped": 0,
            "reports_emitted": 0,
            "events_processed": 0,
            "tick_errors": 0,
        }
        self._memory_baseline = psutil.Process().memory_info().rss

        self._audit({"event": "session_init", "session_id": session_id})

    # ── lifecycle ─────────────────────────────────────────────

    def start(self):
        """Start the tick thread."""
        with self._lock:
            if self.closed:
                raise SessionClosed(f"Session {self.session_id} is closed")
            if self.running:
                return
            self.running = True
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._tick_loop, name=f"sentinel-{self.session_id}", daemon=True)
            self._thread.start()
        _log.info("Session %s started (tick %.2fs)", self.session_id, self.config.tick_interval_s)

    def stop(self):
        """Stop ticking and tear down all per-session state. Idempotent."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self.running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, 2 * self.config.tick_interval_s))

        with self._lock:
            self._drain_mailbox()
            summary = self.get_summary()
            self.tracker.reset()
            self.rules.reset()
            self.escalation.reset()
            self.counters.reset()
            self.last_analysis = None

        self._audit({"event": "session_stop", "summary": summary})
        if self._owns_logger and self.logger is not None:
            self.logger.close()
        _log.info("Session %s stopped", self.session_id)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    # ── inbound ───────────────────────────────────────────────

    def submit(self, inference: FrameInference) -> None:
        """Hand over the latest collaborator output for the next tick."""
        if self.closed:
            raise SessionClosed(f"Session {self.session_id} is closed")
        try:
            self._mailbox.put_nowait(inference)
        except queue.Full:
            try:
                self._mailbox.get_nowait()  # Drop old
                self._stats["frames_dropped"] += 1
            except queue.Empty:
                pass
            try:
                self._mailbox.put_nowait(inference)
            except queue.Full:
                # Another producer won the slot; theirs is just as fresh.
                self._stats["frames_dropped"] += 1

    def tick(self) -> Optional[ViolationReport]:
        """Run one tick on the caller's thread. Skipped if nothing is pending."""
        try:
            inference = self._mailbox.get_nowait()
        except queue.Empty:
            self._stats["ticks_skipped"] += 1
            return None
        return self.process_frame(inference)

    def _tick_loop(self):
        while not self._stop_event.wait(self.config.tick_interval_s):
            try:
                self.tick()
            except SessionClosed:
                break
            except Exception as e:
                self._stats["tick_errors"] += 1
                _log.exception("Tick failed for session %s", self.session_id)
                if self.logger is not None:
                    self.logger.error(f"Tick error: {e}", exception=e)

    def process_frame(self, inference: FrameInference,
                      now: Optional[float] = None) -> Optional[ViolationReport]:
        """Decode, fuse and throttle one frame.

        Returns:
            The report handed to the sink, or None.

        Raises:
            SessionClosed: the session has been stopped.
        """
        with self._lock:
            if self.closed:
                raise SessionClosed(f"Session {self.session_id} is closed")
            if now is None:
                now = inference.timestamp if inference.timestamp is not None else self._clock()

            try:
                objects = self._decode_objects(inference)
            except FrameError as e:
                self._stats["frames_failed"] += 1
                _log.warning("Session %s: frame skipped (%s: %s)",
                             self.session_id, type(e).__name__, e)
                self._audit({"event": "frame_skipped", "reason": type(e).__name__,
                             "detail": str(e)}, level="WARN")
                return None

            pose = self._decode_pose(inference, now)
            if objects is None:
                # Gaze history still advances; rules need a detector result.
                self._stats["frames_without_detections"] += 1
                return None

            signal = self.rules.evaluate(objects, pose, now)
            report = None
            if signal is not None:
                report = self._escalate(signal)

            self._stats["frames_processed"] += 1
            if self.logger is not None:
                self.logger.log_frame({
                    "session_id": self.session_id,
                    "t": now,
                    "objects": [o.to_dict() for o in objects],
                    "pose": None if pose is None else
                            {"pitch": pose.pitch, "yaw": pose.yaw, "roll": pose.roll},
                    "gaze": self._gaze_record(),
                    "signal": None if signal is None else signal.kind.value,
                    "reported": report is not None,
                    "counters": self.counters.to_dict(),
                })
            return report

    def on_discrete_event(self, event, now: Optional[float] = None) -> ViolationReport:
        """Browser lockdown event (tab hidden, copy attempt, ...). Never dropped or throttled.

        Raises:
            SessionClosed: the session has been stopped.
            ValueError: unknown event name.
        """
        with self._lock:
            if self.closed:
                raise SessionClosed(f"Session {self.session_id} is closed")
            if now is None:
                now = self._clock()
            signal = self.rules.on_discrete_event(event, now)
            self._stats["events_processed"] += 1
            return self._escalate(signal)

    # ── pipeline stages ───────────────────────────────────────

    def _decode_objects(self, inference: FrameInference) -> Optional[List[DetectedObject]]:
        """None when the detector produced nothing for this tick."""
        raw = inference.detections
        if raw is None:
            return None
        if isinstance(raw, (list, tuple)) and all(
                isinstance(o, DetectedObject) for o in raw):
            return list(raw)
        return self.decoder.decode(raw, inference.x_ratio, inference.y_ratio,
                                   inference.num_anchors)

    def _decode_pose(self, inference: FrameInference, now: float):
        """Learned pose if available, else geometric pose from the mesh."""
        pose = None
        if inference.pitch_logits is not None and inference.yaw_logits is not None:
            try:
                pose = self.angle_decoder.decode(inference.pitch_logits, inference.yaw_logits)
            except FrameError as e:
                _log.warning("Session %s: gaze logits rejected (%s)", self.session_id, e)

        self.last_analysis = None
        if inference.landmarks is not None:
            try:
                self.last_analysis = self.tracker.analyze_landmarks(inference.landmarks, now)
            except FrameError as e:
                _log.warning("Session %s: landmark pose skipped (%s)", self.session_id, e)
            else:
                if pose is None:
                    pose = self.last_analysis.head_pose
        return pose

    def _gaze_record(self) -> Optional[dict]:
        """Per-frame gaze fields for the frame log, None without a mesh result."""
        analysis = self.last_analysis
        if analysis is None:
            return None
        smoothed_vector, smoothed_zone = self.tracker.smoothed()
        return {
            "zone": analysis.zone.tag.value,
            "is_looking_away": analysis.is_looking_away,
            "away_seconds": analysis.away_seconds,
            "warning": analysis.warning,
            "smoothed_zone": None if smoothed_zone is None else smoothed_zone.tag.value,
            "smoothed_gaze": None if smoothed_vector is None else
                             {"x": smoothed_vector.x, "y": smoothed_vector.y},
        }

    def _escalate(self, signal) -> Optional[ViolationReport]:
        outcome = self.escalation.submit(signal, self.session_id)
        if outcome.report is not None:
            self._stats["reports_emitted"] += 1
            _log.info("Session %s: %s [%s] %s", self.session_id,
                      outcome.report.kind.value, outcome.report.severity.value,
                      outcome.report.message)
            self.sink.publish(outcome.report)
        if outcome.lockdown is not None:
            self.sink.lockdown(outcome.lockdown)
        return outcome.report

    # ── config & introspection ────────────────────────────────

    def update_config(self, config: Optional[ProctorConfig] = None, **overrides) -> ProctorConfig:
        """Swap thresholds at runtime. On ConfigError the old config stays."""
        with self._lock:
            try:
                new_config = (config or self.config).with_overrides(**overrides)
            except ConfigError as e:
                _log.error("Session %s: config update rejected: %s", self.session_id, e)
                raise
            self.config = new_config
            self.decoder.config = new_config
            self.angle_decoder.config = new_config
            self.tracker.set_config(new_config)
            self.rules.config = new_config
            self.escalation.config = new_config
            self._audit({"event": "config_updated", "overrides": sorted(overrides)})
            return new_config

    def get_summary(self) -> dict:
        current_mem = psutil.Process().memory_info().rss
        return {
            "session_id": self.session_id,
            "running": self.running,
            "closed": self.closed,
            **self._stats,
            "throttled": self.escalation.suppressed_count,
            "lockdowns": self.escalation.lockdown_count,
            "counters": self.counters.to_dict(),
            "history_size": len(self.tracker.smoother),
            "memory_mb": current_mem / 1e6,
            "memory_growth_mb": (current_mem - self._memory_baseline) / 1e6,
        }

    def _audit(self, data: dict, level: str = "SYSTEM"):
        if self.logger is not None:
            self.logger.log(data, level=level)

    def _drain_mailbox(self):
        while True:
            try:
                self._mailbox.get_nowait()
            except queue.Empty:
                return


class SessionRegistry:
    """
    Session-keyed owner of ProctorSession instances.
    """

    def __init__(
        self,
        config: Optional[ProctorConfig] = None,
        sink_factory: Optional[Callable[[str], ViolationSink]] = None,
        log_dir: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ProctorConfig()
        self.sink_factory = sink_factory
        self.log_dir = log_dir
        self._clock = clock
        self._sessions: Dict[str, ProctorSession] = {}
        self._lock = threading.Lock()

    def start_session(self, session_id: str, sink: Optional[ViolationSink] = None,
                      config: Optional[ProctorConfig] = None,
                      autostart: bool = True) -> ProctorSession:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} already active")
            if sink is None and self.sink_factory is not None:
                sink = self.sink_factory(session_id)
            logger = None
            if self.log_dir is not None:
                logger = SentinelLogger(self.log_dir, f"session_{session_id}.jsonl")
            session = ProctorSession(
                session_id,
                config=config or self.config,
                sink=sink,
                logger=logger,
                clock=self._clock,
                owns_logger=logger is not None,
            )
            self._sessions[session_id] = session
        if autostart:
            session.start()
        return session

    def get(self, session_id: str) -> Optional[ProctorSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def end_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.stop()
        return True

    def end_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.stop()

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._sessions

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.end_all()
        return False
