"""Append-only audit trail over the local and durable replicas."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Iterable, List, Optional

from . import log
from .constants import DEFAULT_AUDIT_MERGE_WINDOW_SECONDS, Department, Severity
from .models import AuditEvent
from .replicas import Repository


def generate_event_id(*, prefix: str = "EV", when: Optional[datetime] = None) -> str:
    """Build an event id from the timestamp plus a short random suffix.

    Two events recorded within the same microsecond still get distinct ids.
    """

    moment = when or datetime.now(UTC)
    return f"{prefix}{moment.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def _same_event(a: AuditEvent, b: AuditEvent, window: timedelta) -> bool:
    if a.event_id == b.event_id:
        return True
    return a.action == b.action and abs(a.timestamp - b.timestamp) < window


def merge_events(
    local: Iterable[AuditEvent],
    durable: Iterable[AuditEvent],
    *,
    window_seconds: float = DEFAULT_AUDIT_MERGE_WINDOW_SECONDS,
) -> List[AuditEvent]:
    """Union two replicas of one order's log, newest first.

    Durable events win. A local event is dropped when the durable side already
    holds the same id, or the same action label within ``window_seconds``; the
    latter covers an event that was persisted under a store-assigned id and
    timestamp.

    Args:
        local (Iterable[AuditEvent]): Events from the in-process buffer.
        durable (Iterable[AuditEvent]): Events read back from the store.
        window_seconds (float): Fuzzy-match tolerance.

    Returns:
        list[AuditEvent]: De-duplicated events sorted by descending timestamp.
    """

    window = timedelta(seconds=window_seconds)
    merged: List[AuditEvent] = []
    seen_ids = set()
    for event in durable:
        if event.event_id not in seen_ids:
            seen_ids.add(event.event_id)
            merged.append(event)

    durable_view = list(merged)
    for event in local:
        if event.event_id in seen_ids:
            continue
        if any(_same_event(event, other, window) for other in durable_view):
            continue
        seen_ids.add(event.event_id)
        merged.append(event)

    merged.sort(key=lambda e: e.timestamp, reverse=True)
    return merged


class AuditTrail:
    """Records transition events; recording never fails the transition."""

    def __init__(
        self,
        repository: Repository,
        *,
        merge_window_seconds: float = DEFAULT_AUDIT_MERGE_WINDOW_SECONDS,
    ) -> None:
        self.repository = repository
        self.merge_window_seconds = merge_window_seconds

    def record(
        self,
        order_id: str,
        actor: str,
        department: Department | str,
        action: str,
        detail: str,
        severity: Severity = Severity.INFO,
        *,
        when: Optional[datetime] = None,
    ) -> tuple[AuditEvent, bool]:
        """Append one event to the log.

        Returns:
            tuple[AuditEvent, bool]: The event and whether it reached the
                durable store. A ``False`` leaves it in the pending set.
        """

        moment = when or datetime.now(UTC)
        event = AuditEvent(
            event_id=generate_event_id(when=moment),
            order_id=order_id,
            timestamp=moment,
            actor=actor,
            department=department.value if isinstance(department, Department) else str(department),
            action=action,
            detail=detail,
            severity=severity,
        )
        durable_ok = self.repository.append_event(event)
        log.debug("Audit %s on order '%s': %s (%s)", event.event_id, order_id, action, severity.value)
        return event, durable_ok

    def read(self, order_id: str) -> List[AuditEvent]:
        return merge_events(
            self.repository.local_events(order_id),
            self.repository.durable_events(order_id),
            window_seconds=self.merge_window_seconds,
        )


__all__ = ["AuditTrail", "merge_events", "generate_event_id"]
