"""Tests for the audit trail and the replica merge rules."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import Mock

from conftest import FIXED_MOMENT
from cropflow import audit
from cropflow.constants import Department, Severity
from cropflow.errors import DurableWriteError
from cropflow.models import AuditEvent
from cropflow.replicas import Repository


def _event(event_id: str, action: str, seconds: float = 0, order_id: str = "P1") -> AuditEvent:
    return AuditEvent(
        event_id=event_id,
        order_id=order_id,
        timestamp=FIXED_MOMENT + timedelta(seconds=seconds),
        actor="Ana",
        department="CREDITO",
        action=action,
        detail="",
        severity=Severity.INFO,
    )


def test_merge_events_dedupes_by_id_and_sorts_newest_first():
    local = [_event("E1", "Request Created", 0), _event("E2", "Blocked (CREDITO)", 10)]
    durable = [_event("E1", "Request Created", 0)]

    merged = audit.merge_events(local, durable)

    assert [e.event_id for e in merged] == ["E2", "E1"]


def test_merge_events_fuzzy_matches_same_action_within_window():
    """A locally buffered event persisted under another id is not duplicated."""

    local = [_event("local-1", "Manual Unblock", 0)]
    durable = [_event("srv-9", "Manual Unblock", 1.5)]

    merged = audit.merge_events(local, durable)

    assert [e.event_id for e in merged] == ["srv-9"]


def test_merge_events_keeps_distinct_actions_and_distant_repeats():
    local = [_event("L1", "Manual Unblock", 0), _event("L2", "Invoice Issued", 0.5)]
    durable = [_event("D1", "Manual Unblock", 3)]

    merged = audit.merge_events(local, durable)

    assert [e.event_id for e in merged] == ["D1", "L2", "L1"]


def test_merge_events_respects_custom_window():
    local = [_event("L1", "Manual Unblock", 0)]
    durable = [_event("D1", "Manual Unblock", 3)]

    assert len(audit.merge_events(local, durable, window_seconds=5)) == 1


def test_generate_event_id_is_unique_for_the_same_moment():
    first = audit.generate_event_id(when=FIXED_MOMENT)
    second = audit.generate_event_id(when=FIXED_MOMENT)

    assert first != second
    assert first.startswith("EV20240301120000000000-")


def test_record_survives_durable_failure_and_read_returns_event():
    """An unreachable sink leaves the event buffered and still readable."""

    durable = Mock(name="durable")
    durable.append_event.side_effect = DurableWriteError("disk full")
    durable.load_events.return_value = []
    trail = audit.AuditTrail(Repository(durable))

    event, durable_ok = trail.record(
        "P1", "Caio", Department.CREDIT, "Blocked (CREDITO)", "limit", Severity.ERROR, when=FIXED_MOMENT
    )

    assert durable_ok is False
    assert event.department == "CREDITO"
    assert trail.repository.local.pending_events == {event.event_id: event}
    assert trail.read("P1") == [event]


def test_read_merges_local_and_durable_replicas():
    durable = Mock(name="durable")
    server_copy = _event("srv-1", "Submitted for Review", 0.8)
    durable.load_events.return_value = [server_copy, _event("srv-0", "Request Created", -60)]
    trail = audit.AuditTrail(Repository(durable))

    trail.record("P1", "Bia", Department.BILLING, "Submitted for Review", "", when=FIXED_MOMENT)
    history = trail.read("P1")

    assert [e.event_id for e in history] == ["srv-1", "srv-0"]
