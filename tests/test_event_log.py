"""Tests for the audit event log — proves append-only, hashed, tamper-evident storage."""

import json

import pytest
from datetime import datetime, timezone
from pathlib import Path

from gigstream.persistence.event_log import EventKind, EventLog, EventRecord


def _event(event_id: str = "EVT-00000001", kind: EventKind = EventKind.ORDER_CREATED) -> EventRecord:
    return EventRecord.create(
        event_id=event_id,
        event_kind=kind,
        actor_id="buyer",
        payload={"order_id": "o1", "total_amount": "55.00"},
    )


class TestEventRecord:
    def test_hash_is_deterministic(self) -> None:
        when = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        a = EventRecord.create("EVT-1", EventKind.ORDER_CREATED, "buyer", {"order_id": "o1"}, when)
        b = EventRecord.create("EVT-1", EventKind.ORDER_CREATED, "buyer", {"order_id": "o1"}, when)
        assert a.event_hash == b.event_hash
        assert a.event_hash.startswith("sha256:")

    def test_payload_changes_hash(self) -> None:
        a = _event()
        b = EventRecord.create(
            event_id=a.event_id, event_kind=a.event_kind, actor_id="buyer",
            payload={"order_id": "o2", "total_amount": "55.00"},
        )
        assert a.event_hash != b.event_hash


class TestEventLog:
    def test_append_and_query(self) -> None:
        log = EventLog()
        log.append(_event("EVT-1"))
        log.append(_event("EVT-2", EventKind.ORDER_TRANSITION))
        assert log.count == 2
        assert len(log.events(EventKind.ORDER_TRANSITION)) == 1
        assert len(log.events_for("order_id", "o1")) == 2
        assert log.last_event.event_id == "EVT-2"

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.append(_event("EVT-1"))
        with pytest.raises(ValueError):
            log.append(_event("EVT-1"))
        assert log.count == 1


class TestPersistence:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_event("EVT-1"))
        log.append(_event("EVT-2", EventKind.REVIEW_SUBMITTED))

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.events()[1].event_kind == EventKind.REVIEW_SUBMITTED

    def test_tampered_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_event("EVT-1"))

        record = json.loads(path.read_text(encoding="utf-8"))
        record["payload"]["total_amount"] = "0.01"
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")

        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_duplicate_on_recovery_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event("EVT-1"))
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")

        with pytest.raises(ValueError, match="Duplicate event ID"):
            EventLog(storage_path=path)
