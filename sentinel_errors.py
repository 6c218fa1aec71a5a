"""
Exam-Sentinel — Error Taxonomy
===============================
FrameError and its subclasses are per-frame and always recovered by the
session pipeline. ConfigError is the only fatal one.
"""


class SentinelError(Exception):
    """Base class for all Exam-Sentinel errors."""


class FrameError(SentinelError):
    """A single frame could not be analysed. Skip it, keep the session."""


class ShapeMismatch(FrameError):
    """Decoder input does not have the layout the model produces."""

    def __init__(self, message: str, expected=None, actual=None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidFrameInput(FrameError):
    """Input values are unusable (non-finite numbers, bad scale ratios)."""


class DegenerateGeometry(FrameError):
    """Landmark geometry too small or ill-formed to derive a head pose."""


class ConfigError(SentinelError):
    """Out-of-range or unknown configuration. Fatal to pipeline setup."""


class SessionClosed(SentinelError):
    """An event arrived for a session that has already been torn down."""
