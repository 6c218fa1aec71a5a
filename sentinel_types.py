"""
Exam-Sentinel — Shared Data Types
==================================
Closed enums and per-frame records passed between the decoders,
the rule engine and the escalation controller.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Optional, Sequence, Tuple


class ObjectLabel(str, Enum):
    """Object classes the detector was trained on."""
    PERSON = "person"
    PHONE = "phone"
    BOOK = "book"
    PAPER = "paper"


class GazeZoneTag(str, Enum):
    SCREEN = "screen"
    KEYBOARD = "keyboard"
    PHONE = "phone"
    AWAY_HORIZONTAL = "away-horizontal"
    CEILING = "ceiling"


class ViolationKind(str, Enum):
    """Wire names expected by the monitoring backend."""
    MULTIPLE_PERSONS = "multiple-faces"
    ABSENCE = "no-face"
    FORBIDDEN_OBJECT = "forbidden-object"
    GAZE_DEVIATION = "look-away"
    TAB_SWITCH = "tab-switch"
    FULLSCREEN_EXIT = "fullscreen-exit"
    WINDOW_BLUR = "window-blur"
    CLIPBOARD = "clipboard"
    RIGHT_CLICK = "right-click"
    DEVTOOLS = "devtools"
    VIEW_SOURCE = "view-source"
    SAVE_PAGE = "save-page"
    PRINT = "print-attempt"
    SCREENSHOT = "screenshot-attempt"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DiscreteEvent(str, Enum):
    """Browser-level events delivered outside the frame cadence."""
    TAB_HIDDEN = "tab-hidden"
    FULLSCREEN_EXITED = "fullscreen-exited"
    WINDOW_BLURRED = "window-blurred"
    COPY = "copy-attempt"
    PASTE = "paste-attempt"
    CUT = "cut-attempt"
    RIGHT_CLICK = "right-click"
    DEVTOOLS_F12 = "devtools-f12"
    DEVTOOLS_INSPECT = "devtools-inspect"
    DEVTOOLS_CONSOLE = "devtools-console"
    DEVTOOLS_INSPECTOR = "devtools-inspector"
    VIEW_SOURCE = "view-source"
    SAVE_PAGE = "save-page"
    PRINT = "print-attempt"
    SCREENSHOT = "screenshot-attempt"


@dataclass(frozen=True)
class DetectedObject:
    """One decoded, post-NMS detection in source-frame pixels."""
    label: ObjectLabel
    confidence: float
    box: Tuple[float, float, float, float]  # x1, y1, x2, y2

    def to_dict(self) -> dict:
        return {
            "label": self.label.value,
            "confidence": round(self.confidence, 4),
            "box": [round(v, 2) for v in self.box],
        }


@dataclass(frozen=True)
class GazeVector:
    x: float
    y: float


@dataclass(frozen=True)
class HeadPose:
    """Head orientation in degrees, whichever path produced it."""
    pitch: float
    yaw: float
    roll: float = 0.0


@dataclass(frozen=True)
class GazeZone:
    tag: GazeZoneTag
    confidence: float


@dataclass(frozen=True)
class GazeSample:
    vector: GazeVector
    zone: GazeZone
    timestamp: float


@dataclass
class GazeAnalysis:
    """Result of one GazeTracker update."""
    vector: GazeVector
    zone: GazeZone
    head_pose: HeadPose
    is_looking_away: bool
    warning: Optional[str]
    away_seconds: int
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "gaze": {"x": self.vector.x, "y": self.vector.y},
            "zone": self.zone.tag.value,
            "zone_confidence": self.zone.confidence,
            "head_pose": asdict(self.head_pose),
            "is_looking_away": self.is_looking_away,
            "warning": self.warning,
            "away_seconds": self.away_seconds,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ViolationSignal:
    """A rule trigger, before throttling."""
    kind: ViolationKind
    severity: Severity
    message: str
    timestamp: float
    bypasses_throttle: bool = False


@dataclass(frozen=True)
class ViolationReport:
    """Outbound record pushed to the reporting collaborator."""
    id: str
    session_id: str
    kind: ViolationKind
    severity: Severity
    message: str
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class LockdownSignal:
    """Emitted when a session's violation total reaches the ceiling."""
    session_id: str
    total_violations: int
    timestamp: float
    event: str = "lockdown-triggered"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionCounters:
    """Mutable per-session state. Lives exactly as long as its session."""
    absence_streak: float = 0.0
    gaze_violation_streak: int = 0
    look_away_start_time: Optional[float] = None
    last_look_away_time: Optional[float] = None
    last_report_time: Optional[float] = None
    total_violations: int = 0

    def reset(self) -> None:
        self.absence_streak = 0.0
        self.gaze_violation_streak = 0
        self.look_away_start_time = None
        self.last_look_away_time = None
        self.last_report_time = None
        self.total_violations = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FrameInference:
    """Everything the model collaborators produced for one tick.

    Any field may be missing; the pipeline uses what is there.
    """
    detections: Optional[Any] = None
    x_ratio: float = 1.0
    y_ratio: float = 1.0
    num_anchors: Optional[int] = None
    pitch_logits: Optional[Sequence[float]] = None
    yaw_logits: Optional[Sequence[float]] = None
    landmarks: Optional[Any] = None
    timestamp: Optional[float] = None
