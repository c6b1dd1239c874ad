"""
Append-Only Attempt Log (Hash-Chained).

Every channel attempt the dispatcher makes -- accepted, declined, timed out
or failed -- is recorded as an ``AttemptRecord`` in the session's
``AttemptLog``.  The log is the audit trail for one escalation:

* **Append-only** -- there is no update or delete.  Records are frozen
  pydantic models, so nothing handed out by ``records()`` can be mutated.
* **Monotonic timestamps** -- a record whose timestamp would go backwards
  (clock adjustments, records built on another thread) is clamped to the
  previous record's timestamp.
* **Hash chain** -- each record is hashed together with the previous
  record's hash.  ``verify_chain()`` walks the log and reports the first
  broken link.
* **Optional durable sink** -- when constructed with ``sink_path`` each
  appended record is also written as one JSON line to that file.  The
  in-memory log stays authoritative; a failing sink is logged, not raised.

Appends take a ``threading.Lock`` so readers on another thread (an HTTP
handler answering ``get_session_attempts``) never observe a half-written
record.  The lock is never held across an ``await``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pulseresq.models import AttemptOutcome, AttemptRecord, ChannelKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Contact redaction
# ---------------------------------------------------------------------------

# Attempt details can echo phone numbers and e-mail addresses back from the
# transports.  These are stripped before an export leaves the process.
_CONTACT_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+?\d[\d\s().-]{7,}\d"),
}


def redact_contact_details(text: str) -> str:
    """Replace phone numbers and e-mail addresses with ``[REDACTED-*]`` markers."""
    for name, pattern in _CONTACT_PATTERNS.items():
        text = pattern.sub(f"[REDACTED-{name.upper()}]", text)
    return text


def _canonical_bytes(record: AttemptRecord, previous_hash: str) -> bytes:
    data = record.to_dict()
    data["previous_hash"] = previous_hash
    return json.dumps(data, sort_keys=True, default=str).encode("utf-8")


def compute_hash(record: AttemptRecord, previous_hash: str) -> str:
    """SHA-256 of a record's canonical form linked to the previous hash."""
    return hashlib.sha256(_canonical_bytes(record, previous_hash)).hexdigest()


# ---------------------------------------------------------------------------
# Attempt log
# ---------------------------------------------------------------------------

class AttemptLog:
    """Append-only, hash-chained sequence of attempt records for one session."""

    def __init__(self, session_id: str = "", sink_path: Optional[Path] = None) -> None:
        self.session_id = session_id
        self._sink_path = Path(sink_path) if sink_path is not None else None
        self._records: list[AttemptRecord] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, record: AttemptRecord) -> AttemptRecord:
        """Append a record, clamping its timestamp so the log stays monotonic.

        Returns:
            The record as stored (possibly with an adjusted timestamp).
        """
        with self._lock:
            if self._records and record.timestamp < self._records[-1].timestamp:
                record = record.model_copy(
                    update={"timestamp": self._records[-1].timestamp}
                )
            previous_hash = self._hashes[-1] if self._hashes else ""
            self._records.append(record)
            self._hashes.append(compute_hash(record, previous_hash))

        self._write_sink(record)
        return record

    def record(
        self,
        facility_id: str,
        channel: Optional[ChannelKind],
        outcome: AttemptOutcome,
        detail: str = "",
        batch_index: int = 0,
    ) -> AttemptRecord:
        """Build a record stamped with the current time and append it."""
        return self.append(AttemptRecord(
            facility_id=facility_id,
            channel=channel,
            outcome=outcome,
            detail=detail,
            timestamp=datetime.now(timezone.utc),
            batch_index=batch_index,
        ))

    def records(self) -> tuple[AttemptRecord, ...]:
        """Snapshot of every record appended so far, oldest first."""
        with self._lock:
            return tuple(self._records)

    def accepted_records(self) -> list[AttemptRecord]:
        return [r for r in self.records() if r.outcome == AttemptOutcome.ACCEPTED]

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            A tuple of ``(valid, broken_at)`` where ``broken_at`` is the
            index of the first record whose hash no longer matches, or None.
        """
        with self._lock:
            records = list(self._records)
            hashes = list(self._hashes)

        previous_hash = ""
        for i, record in enumerate(records):
            expected = compute_hash(record, previous_hash)
            if hashes[i] != expected:
                return (False, i)
            previous_hash = expected
        return (True, None)

    def export_for_review(self) -> dict[str, Any]:
        """Produce a JSON-serializable export with contact details redacted."""
        entries = []
        for record in self.records():
            data = record.to_dict()
            data["detail"] = redact_contact_details(record.detail)
            entries.append(data)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "session_id": self.session_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": entries,
        }

    def _write_sink(self, record: AttemptRecord) -> None:
        if self._sink_path is None:
            return
        line = dict(record.to_dict(), session_id=self.session_id)
        try:
            with open(self._sink_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(line, default=str) + "\n")
        except OSError as exc:
            logger.error("Attempt log sink %s unwritable: %s", self._sink_path, exc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
