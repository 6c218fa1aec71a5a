"""
Exam-Sentinel — Replay Launcher
================================
Feeds a recorded session (JSONL of collaborator outputs) through a
ProctorSession using the recorded timestamps, and prints every report
and lockdown as it is emitted.

Recording lines:
  {"t": 12.0, "detections": [...], "num_anchors": 8400,
   "x_ratio": 2.0, "y_ratio": 1.5,
   "pitch_logits": [...], "yaw_logits": [...], "landmarks": [[x, y, z], ...]}
  {"t": 13.2, "event": "tab-hidden"}

"detections" is either the raw flat detector buffer or a list of
already-decoded {"label", "confidence", "box"} objects.

Usage:
  python start_sentinel.py --input session.jsonl
  python start_sentinel.py --input session.jsonl --config strict.yaml --audit
"""

import argparse
import json
import logging
import os
import sys
from typing import Iterator, Optional

from sentinel_engine import ProctorSession
from sentinel_errors import ConfigError, SentinelError
from sentinel_logger import SentinelLogger
from sentinel_security.audit_trail import ViolationAuditTrail
from sentinel_sink import AuditLogSink, CollectingSink, ViolationSink
from sentinel_types import DetectedObject, FrameInference, ObjectLabel
from sentinel_utils_core import ProctorConfig, setup_logger


class ConsoleSink(ViolationSink):
    """Prints each report as it arrives, then forwards it."""

    def __init__(self, downstream: Optional[ViolationSink] = None, stream=None):
        self.downstream = downstream
        self.stream = stream or sys.stdout

    def publish(self, report):
        print(f"[SENTINEL] {report.timestamp:>9.2f}s  {report.severity.value.upper():<6} "
              f"{report.kind.value:<16} {report.message}", file=self.stream)
        if self.downstream is not None:
            self.downstream.publish(report)

    def lockdown(self, signal):
        print(f"[SENTINEL] {signal.timestamp:>9.2f}s  LOCKDOWN after "
              f"{signal.total_violations} violations", file=self.stream)
        if self.downstream is not None:
            self.downstream.lockdown(signal)

    def close(self):
        if self.downstream is not None:
            self.downstream.close()


def load_recording(path: str) -> Iterator[dict]:
    """Yield recording records, skipping blank lines.

    Raises:
        ValueError: a line is not a JSON object.
    """
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON ({e.msg})") from e
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{lineno}: expected a JSON object")
            yield record


def record_to_inference(record: dict) -> FrameInference:
    detections = record.get("detections")
    if isinstance(detections, list) and detections and isinstance(detections[0], dict):
        detections = [
            DetectedObject(
                label=ObjectLabel(d["label"]),
                confidence=float(d.get("confidence", 1.0)),
                box=tuple(float(v) for v in d.get("box", (0.0, 0.0, 1.0, 1.0))),
            )
            for d in detections
        ]
    return FrameInference(
        detections=detections,
        x_ratio=record.get("x_ratio", 1.0),
        y_ratio=record.get("y_ratio", 1.0),
        num_anchors=record.get("num_anchors"),
        pitch_logits=record.get("pitch_logits"),
        yaw_logits=record.get("yaw_logits"),
        landmarks=record.get("landmarks"),
        timestamp=record.get("t"),
    )


def replay_recording(path: str, session: ProctorSession) -> int:
    """Push every record through the session in file order.

    Frames are processed synchronously on this thread; the tick thread
    is not started. Returns the number of records replayed.
    """
    count = 0
    for record in load_recording(path):
        now = record.get("t")
        if "event" in record:
            session.on_discrete_event(record["event"], now=now)
        else:
            session.process_frame(record_to_inference(record), now=now)
        count += 1
    return count


def main(argv=None):
    parser = argparse.ArgumentParser(description="Exam-Sentinel recording replay")
    parser.add_argument("--input", required=True, help="JSONL recording of collaborator outputs")
    parser.add_argument("--config", default=None, help="YAML config (defaults to bundled config.yaml)")
    parser.add_argument("--session", default="replay", help="Session id used in reports")
    parser.add_argument("--log-dir", default=None, help="Directory for JSONL logs (default from config)")
    parser.add_argument("--audit", action="store_true", help="Also write the hash-chained audit trail")

    args = parser.parse_args(argv)

    try:
        config = ProctorConfig.load(args.config)
    except (ConfigError, OSError) as e:
        print(f"[SENTINEL] Config error: {e}", file=sys.stderr)
        return 2

    setup_logger("SentinelEngine", getattr(logging, config.log_level.upper()))
    log_dir = args.log_dir or config.log_dir

    logger = SentinelLogger(log_dir, f"session_{args.session}.jsonl")
    trail = None
    if args.audit:
        trail = ViolationAuditTrail(os.path.join(log_dir, f"session_{args.session}_chain.jsonl"))

    collected = CollectingSink()
    sink = ConsoleSink(downstream=AuditLogSink(logger, trail, downstream=collected))
    session = ProctorSession(args.session, config=config, sink=sink, logger=logger,
                             owns_logger=True)

    print("=" * 60)
    print("  Exam-Sentinel — Replay")
    print(f"  Input:   {args.input}")
    print(f"  Session: {args.session}")
    print(f"  Logs:    {logger.log_path}")
    print("=" * 60)

    status = 0
    try:
        n = replay_recording(args.input, session)
        print(f"[SENTINEL] Replayed {n} records: {len(collected.reports)} reports, "
              f"{len(collected.lockdowns)} lockdowns")
        if trail is not None:
            print(f"[SENTINEL] Audit chain valid: {trail.verify_chain()}")
    except (OSError, ValueError, SentinelError) as e:
        print(f"[SENTINEL] Replay failed: {e}", file=sys.stderr)
        status = 1
    finally:
        session.stop()

    return status


if __name__ == "__main__":
    sys.exit(main())
