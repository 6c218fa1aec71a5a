"""Exam-Sentinel tamper-evident records."""

from sentinel_security.audit_trail import GENESIS_HASH, ViolationAuditTrail

__all__ = ["GENESIS_HASH", "ViolationAuditTrail"]
