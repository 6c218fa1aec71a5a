"""
Exam-Sentinel — Violation Audit Chain
======================================
Append-only record of the reports and lockdowns one session emitted, so
a disputed exam result can be checked against what the proctor saw.

Entry layout (one JSON object per line):
  seq        position in the chain; the genesis entry is 0
  ref        report id, or "lockdown-<n>" for the n-th lockdown
  kind       "genesis" | "violation" | "lockdown"
  data       the outbound wire record
  prev_hash  hash of entry seq - 1
  hash       SHA-256 over all of the above

verify_chain() rejects edited, dropped or reordered lines and any ref
recorded twice. lookup() returns the entry for one report id.
"""

import hashlib
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

_log = logging.getLogger("AuditTrail")

GENESIS_HASH = "0" * 64


def _digest(entry: dict) -> str:
    # Canonical JSON string (sorted keys)
    json_str = json.dumps(entry, sort_keys=True)
    return hashlib.sha256(json_str.encode()).hexdigest()


class ViolationAuditTrail:
    def __init__(self, log_file="logs/sentinel_audit_chain.jsonl"):
        self.log_file = log_file
        self.last_hash = GENESIS_HASH
        self.next_seq = 0
        self.lockdowns = 0
        self._refs: Dict[str, Tuple[int, str]] = {}  # ref -> (seq, hash)
        self._lock = threading.Lock()
        self._init_chain()

    def _init_chain(self):
        """Start a new chain, or rebuild the ref index from an existing one."""
        if not os.path.exists(self.log_file):
            self._append("genesis", "genesis", {"created": time.time()})
            return
        for entry in self._read_entries():
            self._index(entry)
        _log.info("Audit chain resumed at seq %d (%s)", self.next_seq, self.log_file)

    # ── writing ───────────────────────────────────────────────

    def add_report(self, report) -> str:
        """Chain one emitted report under its id. Returns the entry hash.

        A report id that is already on the chain is not written again.
        """
        with self._lock:
            existing = self._refs.get(report.id)
            if existing is not None:
                _log.warning("Report %s already chained at seq %d", report.id, existing[0])
                return existing[1]
            return self._append("violation", report.id, report.to_dict())

    def add_lockdown(self, signal) -> str:
        with self._lock:
            return self._append("lockdown", f"lockdown-{self.lockdowns + 1}", signal.to_dict())

    def _append(self, kind: str, ref: str, data: dict) -> str:
        entry = {
            "seq": self.next_seq,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "ref": ref,
            "data": data,
            "prev_hash": self.last_hash,
        }
        entry["hash"] = _digest(entry)
        self._write_entry(entry)
        self._index(entry)
        return entry["hash"]

    def _index(self, entry: dict):
        self.last_hash = entry["hash"]
        self.next_seq = entry["seq"] + 1
        self._refs[entry["ref"]] = (entry["seq"], entry["hash"])
        if entry["kind"] == "lockdown":
            self.lockdowns += 1

    def _write_entry(self, entry):
        directory = os.path.dirname(self.log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")

    # ── reading ───────────────────────────────────────────────

    def _read_entries(self) -> Iterator[dict]:
        with open(self.log_file, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as e:
                    _log.error("Audit chain corrupt at line %d: %s", lineno, e)
                    raise

    def lookup(self, ref: str) -> Optional[dict]:
        """The chained entry for a report id (or lockdown ref), None if absent."""
        if ref not in self._refs:
            return None
        for entry in self._read_entries():
            if entry.get("ref") == ref:
                return entry
        return None

    def verify_chain(self) -> bool:
        """Verify sequence, links, hashes and ref uniqueness of the whole file."""
        if not os.path.exists(self.log_file):
            return True

        prev_hash = GENESIS_HASH
        expected_seq = 0
        seen = set()
        with open(self.log_file, "r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    _log.error("Chain corrupt at line %d: Invalid JSON", i + 1)
                    return False

                stored_hash = entry.pop("hash", None)
                if entry.get("seq") != expected_seq:
                    _log.error("Chain broken at line %d: expected seq %d, found %s",
                               i + 1, expected_seq, entry.get("seq"))
                    return False
                if entry.get("prev_hash") != prev_hash:
                    _log.error("Chain broken at line %d: Link mismatch", i + 1)
                    return False
                if _digest(entry) != stored_hash:
                    _log.error("Chain corrupted at line %d: Hash mismatch", i + 1)
                    return False
                ref = entry.get("ref")
                if ref in seen:
                    _log.error("Chain corrupted at line %d: %s recorded twice", i + 1, ref)
                    return False
                seen.add(ref)
                prev_hash = stored_hash
                expected_seq += 1

        return True
