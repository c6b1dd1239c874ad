"""
Tests for pulseresq.audit -- Append-Only Attempt Log.

Covers: append + chain verification, tamper detection, monotonic timestamp
clamping, immutability of handed-out records, export format, contact
redaction, the JSON-lines sink, and concurrent append ordering.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pulseresq.audit import AttemptLog, compute_hash, redact_contact_details
from pulseresq.models import AttemptOutcome, AttemptRecord, ChannelKind


def _make_record(
    facility_id: str = "F1",
    channel: ChannelKind | None = ChannelKind.WEBHOOK,
    outcome: AttemptOutcome = AttemptOutcome.DECLINED,
    detail: str = "",
    timestamp: datetime | None = None,
) -> AttemptRecord:
    return AttemptRecord(
        facility_id=facility_id,
        channel=channel,
        outcome=outcome,
        detail=detail,
        timestamp=timestamp or datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChain:
    def test_append_single_record(self):
        log = AttemptLog("s1")
        stored = log.append(_make_record())
        assert len(log) == 1
        assert log.records() == (stored,)

    def test_chain_valid_after_appends(self):
        log = AttemptLog("s1")
        for i in range(5):
            log.record(f"F{i}", ChannelKind.SMS, AttemptOutcome.DECLINED, "sent")
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        assert AttemptLog().verify_chain() == (True, None)

    def test_hash_depends_on_previous(self):
        record = _make_record()
        assert compute_hash(record, "") != compute_hash(record, "abc")

    def test_accepted_records(self):
        log = AttemptLog()
        log.record("F1", ChannelKind.WEBHOOK, AttemptOutcome.DECLINED)
        log.record("F2", ChannelKind.WEBHOOK, AttemptOutcome.ACCEPTED)
        assert [r.facility_id for r in log.accepted_records()] == ["F2"]


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_record_breaks_chain(self):
        log = AttemptLog()
        for i in range(4):
            log.record(f"F{i}", ChannelKind.WEBHOOK, AttemptOutcome.DECLINED)

        log._records[2] = log._records[2].model_copy(
            update={"outcome": AttemptOutcome.ACCEPTED}
        )
        assert log.verify_chain() == (False, 2)

    def test_export_reports_broken_chain(self):
        log = AttemptLog()
        log.record("F1", ChannelKind.WEBHOOK, AttemptOutcome.DECLINED)
        log._records[0] = log._records[0].model_copy(update={"detail": "edited"})
        export = log.export_for_review()
        assert export["export_metadata"]["chain_integrity"] == "BROKEN_AT_INDEX_0"


# ---------------------------------------------------------------------------
# 3. Ordering and immutability
# ---------------------------------------------------------------------------

class TestOrdering:
    def test_backwards_timestamp_is_clamped(self):
        log = AttemptLog()
        now = datetime.now(timezone.utc)
        log.append(_make_record(timestamp=now))
        stored = log.append(_make_record(timestamp=now - timedelta(seconds=30)))
        assert stored.timestamp == now
        stamps = [r.timestamp for r in log.records()]
        assert stamps == sorted(stamps)

    def test_records_are_frozen(self):
        log = AttemptLog()
        stored = log.record("F1", ChannelKind.SMS, AttemptOutcome.DECLINED)
        with pytest.raises(ValidationError):
            stored.outcome = AttemptOutcome.ACCEPTED

    def test_records_snapshot_is_a_tuple(self):
        log = AttemptLog()
        log.record("F1", ChannelKind.SMS, AttemptOutcome.DECLINED)
        snapshot = log.records()
        log.record("F2", ChannelKind.SMS, AttemptOutcome.DECLINED)
        assert len(snapshot) == 1
        assert len(log) == 2

    def test_concurrent_appends_keep_chain(self):
        log = AttemptLog()

        def _worker(n: int) -> None:
            for i in range(50):
                log.record(f"F{n}-{i}", ChannelKind.WEBHOOK, AttemptOutcome.NO_RESPONSE)

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 200
        assert log.verify_chain() == (True, None)
        stamps = [r.timestamp for r in log.records()]
        assert stamps == sorted(stamps)


# ---------------------------------------------------------------------------
# 4. Export and redaction
# ---------------------------------------------------------------------------

class TestExport:
    def test_export_format(self):
        log = AttemptLog("session-42")
        log.record("F1", ChannelKind.WEBHOOK, AttemptOutcome.ACCEPTED, "accepted via webhook", 1)
        export = log.export_for_review()

        meta = export["export_metadata"]
        assert meta["session_id"] == "session-42"
        assert meta["entry_count"] == 1
        assert meta["chain_integrity"] == "VALID"

        entry = export["entries"][0]
        assert entry["facility_id"] == "F1"
        assert entry["channel"] == "webhook"
        assert entry["outcome"] == "accepted"
        assert entry["batch_index"] == 1

    def test_export_redacts_contact_details(self):
        log = AttemptLog()
        log.record(
            "F1", ChannelKind.SMS, AttemptOutcome.ERROR,
            "sms send failed: +1 555 010 9999 unreachable",
        )
        log.record(
            "F2", ChannelKind.EMAIL, AttemptOutcome.ERROR,
            "email send failed: er@cityhospital.org rejected",
        )
        entries = log.export_for_review()["entries"]
        assert "[REDACTED-PHONE]" in entries[0]["detail"]
        assert "555" not in entries[0]["detail"]
        assert "[REDACTED-EMAIL]" in entries[1]["detail"]
        assert "cityhospital" not in entries[1]["detail"]
        # The stored records keep the full detail.
        assert "er@cityhospital.org" in log.records()[1].detail

    def test_redaction_leaves_plain_text(self):
        assert redact_contact_details("no answer within 5s") == "no answer within 5s"


# ---------------------------------------------------------------------------
# 5. JSON-lines sink
# ---------------------------------------------------------------------------

class TestSink:
    def test_each_append_written_as_json_line(self, tmp_path):
        sink = tmp_path / "attempts.jsonl"
        log = AttemptLog("s1", sink_path=sink)
        log.record("F1", ChannelKind.WEBHOOK, AttemptOutcome.DECLINED)
        log.record("F2", None, AttemptOutcome.ERROR, "no-comm-path")

        lines = sink.read_text().splitlines()
        assert len(lines) == 2
        second = json.loads(lines[1])
        assert second["session_id"] == "s1"
        assert second["facility_id"] == "F2"
        assert second["channel"] is None

    def test_unwritable_sink_does_not_raise(self, tmp_path):
        log = AttemptLog("s1", sink_path=tmp_path / "missing-dir" / "attempts.jsonl")
        log.record("F1", ChannelKind.WEBHOOK, AttemptOutcome.DECLINED)
        assert len(log) == 1
