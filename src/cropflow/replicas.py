"""Two-tier storage for orders, requests, and audit events.

``LocalReplica`` is the in-process copy that every write lands in first.
``WorkbookStore`` is the durable copy kept in the master Excel workbook.
``Repository`` ties the two together: reads go local-then-durable, writes go
local-then-durable, and a durable failure leaves the key in the local pending
set for :meth:`Repository.retry_pending` instead of failing the caller.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Set, Tuple

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import TEMPORARY_REQUEST_PREFIX
from .errors import DurableStoreError, DurableWriteError, NotFoundError
from .models import AuditEvent, BillingRequest, Order

ORDER_LOCK = "order"
REQUEST_LOCK = "request"


class DurableStore(Protocol):
    """Operations the repository needs from the authoritative store."""

    def load_order(self, order_id: str) -> Optional[Order]: ...

    def list_orders(self) -> List[Order]: ...

    def save_order(self, order: Order) -> None: ...

    def load_request(self, request_id: str) -> Optional[BillingRequest]: ...

    def load_requests_for_order(self, order_id: str) -> List[BillingRequest]: ...

    def save_request(self, request: BillingRequest) -> BillingRequest: ...

    def append_event(self, event: AuditEvent) -> None: ...

    def load_events(self, order_id: str) -> List[AuditEvent]: ...

    def purge_order(self, order_id: str) -> None: ...

    def list_users(self) -> List[data_manager.UserRow]: ...


def permanent_request_id(when: Optional[datetime] = None) -> str:
    """Build the store-assigned identifier for a request (``R<timestamp>``)."""

    moment = when or datetime.now(UTC)
    return f"R{moment.strftime('%Y%m%d%H%M%S%f')}"


def is_temporary_request_id(request_id: str) -> bool:
    return request_id.startswith(TEMPORARY_REQUEST_PREFIX)


class WorkbookStore:
    """Durable store backed by an ``openpyxl`` workbook.

    Every mutation happens under one re-entrant lock because openpyxl
    worksheets are not safe for concurrent edits. When ``autosave`` is set
    the workbook is written to ``path`` after each mutation, so a disk failure
    surfaces immediately as :class:`DurableWriteError`.
    """

    def __init__(self, workbook: Workbook, *, path: Optional[Path] = None, autosave: bool = False) -> None:
        if autosave and path is None:
            raise ValueError("autosave requires a path")
        self.workbook = workbook
        self.path = path
        self.autosave = autosave
        self._lock = threading.RLock()

    @contextmanager
    def _reading(self, what: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except (KeyError, ValueError, TypeError) as exc:
                log.error("Durable read failed while loading %s: %s", what, exc)
                raise DurableStoreError(f"could not load {what}: {exc}") from exc

    @contextmanager
    def _writing(self, what: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
                if self.autosave:
                    self.flush()
            except DurableWriteError:
                raise
            except (KeyError, ValueError, TypeError, OSError, InvalidFileException) as exc:
                log.error("Durable write failed while saving %s: %s", what, exc)
                raise DurableWriteError(f"could not save {what}: {exc}") from exc

    def flush(self) -> None:
        """Write the workbook to :attr:`path`.

        Raises:
            DurableWriteError: If no path is configured or the save fails.
        """

        if self.path is None:
            raise DurableWriteError("workbook store has no path to save to")
        with self._lock:
            try:
                data_manager.save_workbook(self.workbook, self.path)
            except OSError as exc:
                log.error("Could not save workbook '%s': %s", self.path, exc)
                raise DurableWriteError(f"could not save workbook {self.path}: {exc}") from exc

    def load_order(self, order_id: str) -> Optional[Order]:
        with self._reading(f"order {order_id}"):
            for order in data_manager.iter_orders(self.workbook):
                if order.order_id == order_id:
                    return order
        return None

    def list_orders(self) -> List[Order]:
        with self._reading("orders"):
            return list(data_manager.iter_orders(self.workbook))

    def save_order(self, order: Order) -> None:
        with self._writing(f"order {order.order_id}"):
            data_manager.upsert_order(self.workbook, order)

    def load_request(self, request_id: str) -> Optional[BillingRequest]:
        with self._reading(f"request {request_id}"):
            for request in data_manager.iter_requests(self.workbook):
                if request.request_id == request_id:
                    return request
        return None

    def load_requests_for_order(self, order_id: str) -> List[BillingRequest]:
        with self._reading(f"requests of order {order_id}"):
            return [r for r in data_manager.iter_requests(self.workbook) if r.order_id == order_id]

    def save_request(self, request: BillingRequest) -> BillingRequest:
        """Upsert ``request``; a temporary id is swapped for a permanent one.

        Returns:
            BillingRequest: The request as stored, possibly re-keyed.
        """

        with self._writing(f"request {request.request_id}"):
            if is_temporary_request_id(request.request_id):
                request = replace(request, request_id=self._unused_request_id())
                log.info("Assigned permanent id '%s' to new request", request.request_id)
            data_manager.upsert_request(self.workbook, request)
        return request

    def _unused_request_id(self) -> str:
        base = permanent_request_id()
        candidate = base
        suffix = 1
        while data_manager.locate_row(self.workbook, data_manager.REQUESTS_SHEET, "RequestID", candidate):
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def append_event(self, event: AuditEvent) -> None:
        with self._writing(f"audit event {event.event_id}"):
            data_manager.append_audit_event(self.workbook, event)

    def load_events(self, order_id: str) -> List[AuditEvent]:
        with self._reading(f"audit events of order {order_id}"):
            return list(data_manager.iter_audit_events(self.workbook, order_id))

    def purge_order(self, order_id: str) -> None:
        """Delete an order with its catalog lines, requests, and audit rows."""

        with self._writing(f"purge of order {order_id}"):
            removed = {
                sheet: data_manager.delete_rows(self.workbook, sheet, "OrderID", order_id)
                for sheet in (
                    data_manager.REQUESTS_SHEET,
                    data_manager.AUDIT_LOG_SHEET,
                    data_manager.ORDER_ITEMS_SHEET,
                    data_manager.ORDERS_SHEET,
                )
            }
        log.info("Purged order '%s' from workbook: %s", order_id, removed)

    def list_users(self) -> List[data_manager.UserRow]:
        with self._reading("users"):
            return list(data_manager.iter_users(self.workbook))


@dataclass
class LocalReplica:
    """In-memory copy of everything the process has read or written."""

    orders: Dict[str, Order] = field(default_factory=dict)
    requests: Dict[str, BillingRequest] = field(default_factory=dict)
    events: Dict[str, List[AuditEvent]] = field(default_factory=dict)
    aliases: Dict[str, str] = field(default_factory=dict)
    pending_orders: Set[str] = field(default_factory=set)
    pending_requests: Set[str] = field(default_factory=set)
    pending_events: Dict[str, AuditEvent] = field(default_factory=dict)
    pending_purges: Set[str] = field(default_factory=set)

    def resolve(self, request_id: str) -> str:
        return self.aliases.get(request_id, request_id)

    def add_event(self, event: AuditEvent) -> None:
        bucket = self.events.setdefault(event.order_id, [])
        if all(existing.event_id != event.event_id for existing in bucket):
            bucket.append(event)

    def has_pending(self) -> bool:
        return bool(self.pending_orders or self.pending_requests or self.pending_events or self.pending_purges)

    def drop_order(self, order_id: str) -> None:
        self.orders.pop(order_id, None)
        self.events.pop(order_id, None)
        self.pending_orders.discard(order_id)
        for request_id in [rid for rid, r in self.requests.items() if r.order_id == order_id]:
            del self.requests[request_id]
            self.pending_requests.discard(request_id)
        for event_id in [eid for eid, e in self.pending_events.items() if e.order_id == order_id]:
            del self.pending_events[event_id]


class Repository:
    """Read-through, write-behind-on-failure repository over two replicas.

    Every ``save_*`` method returns whether the durable write succeeded. A
    ``False`` result never undoes the local write.
    """

    def __init__(self, durable: DurableStore, local: Optional[LocalReplica] = None) -> None:
        self.durable = durable
        self.local = local if local is not None else LocalReplica()
        self._guard = threading.RLock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def lock_for(self, kind: str, key: str) -> threading.Lock:
        """Return the mutex serializing read-modify-write on one order or request."""

        with self._guard:
            if kind == REQUEST_LOCK:
                key = self.local.resolve(key)
            return self._locks.setdefault((kind, key), threading.Lock())

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def find_order(self, order_id: str) -> Optional[Order]:
        with self._guard:
            cached = self.local.orders.get(order_id)
        if cached is not None:
            return cached
        if order_id in self.local.pending_purges:
            return None
        try:
            loaded = self.durable.load_order(order_id)
        except DurableStoreError as exc:
            log.warning("Durable lookup of order '%s' failed: %s", order_id, exc)
            return None
        if loaded is not None:
            with self._guard:
                self.local.orders.setdefault(order_id, loaded)
        return loaded

    def get_order(self, order_id: str) -> Order:
        order = self.find_order(order_id)
        if order is None:
            raise NotFoundError(f"Order '{order_id}' not found")
        return order

    def list_orders(self) -> List[Order]:
        try:
            durable = self.durable.list_orders()
        except DurableStoreError as exc:
            log.warning("Durable order listing failed; showing local orders only: %s", exc)
            durable = []
        with self._guard:
            merged = {order.order_id: order for order in durable if order.order_id not in self.local.pending_purges}
            merged.update(self.local.orders)
        return list(merged.values())

    def save_order(self, order: Order) -> bool:
        with self._guard:
            self.local.orders[order.order_id] = order
            self.local.pending_purges.discard(order.order_id)
        try:
            self.durable.save_order(order)
        except DurableWriteError as exc:
            log.warning("Deferred durable write of order '%s': %s", order.order_id, exc)
            with self._guard:
                self.local.pending_orders.add(order.order_id)
            return False
        with self._guard:
            self.local.pending_orders.discard(order.order_id)
        return True

    def purge_order(self, order_id: str) -> bool:
        """Remove an order and everything hanging off it from both replicas."""

        with self._guard:
            self.local.drop_order(order_id)
            self.local.pending_purges.add(order_id)
        try:
            self.durable.purge_order(order_id)
        except DurableWriteError as exc:
            log.warning("Deferred durable purge of order '%s': %s", order_id, exc)
            return False
        with self._guard:
            self.local.pending_purges.discard(order_id)
        return True

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def get_request(self, request_id: str) -> BillingRequest:
        with self._guard:
            key = self.local.resolve(request_id)
            cached = self.local.requests.get(key)
        if cached is not None:
            return cached
        try:
            loaded = self.durable.load_request(key)
        except DurableStoreError as exc:
            log.warning("Durable lookup of request '%s' failed: %s", key, exc)
            loaded = None
        if loaded is None:
            raise NotFoundError(f"Request '{request_id}' not found")
        with self._guard:
            self.local.requests.setdefault(key, loaded)
        return loaded

    def requests_for_order(self, order_id: str) -> List[BillingRequest]:
        try:
            durable = self.durable.load_requests_for_order(order_id)
        except DurableStoreError as exc:
            log.warning("Durable request listing for order '%s' failed: %s", order_id, exc)
            durable = []
        with self._guard:
            for request in durable:
                self.local.requests.setdefault(request.request_id, request)
            found = [r for r in self.local.requests.values() if r.order_id == order_id]
        return sorted(found, key=lambda r: r.created_at, reverse=True)

    def save_request(self, request: BillingRequest) -> Tuple[BillingRequest, bool]:
        """Store ``request`` locally, then durably.

        Returns:
            tuple[BillingRequest, bool]: The request under its final key and
                whether the durable write went through.
        """

        with self._guard:
            self.local.requests[request.request_id] = request
        try:
            stored = self.durable.save_request(request)
        except DurableWriteError as exc:
            log.warning("Deferred durable write of request '%s': %s", request.request_id, exc)
            with self._guard:
                self.local.pending_requests.add(request.request_id)
            return request, False
        with self._guard:
            self._rekey(request.request_id, stored)
        return stored, True

    def _rekey(self, old_id: str, stored: BillingRequest) -> None:
        self.local.pending_requests.discard(old_id)
        if old_id != stored.request_id:
            self.local.requests.pop(old_id, None)
            self.local.aliases[old_id] = stored.request_id
            lock = self._locks.pop((REQUEST_LOCK, old_id), None)
            if lock is not None:
                self._locks.setdefault((REQUEST_LOCK, stored.request_id), lock)
        self.local.requests[stored.request_id] = stored

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------
    def append_event(self, event: AuditEvent) -> bool:
        with self._guard:
            self.local.add_event(event)
        try:
            self.durable.append_event(event)
        except DurableWriteError as exc:
            log.warning("Deferred durable write of audit event '%s': %s", event.event_id, exc)
            with self._guard:
                self.local.pending_events[event.event_id] = event
            return False
        return True

    def local_events(self, order_id: str) -> List[AuditEvent]:
        with self._guard:
            return list(self.local.events.get(order_id, ()))

    def durable_events(self, order_id: str) -> List[AuditEvent]:
        try:
            return self.durable.load_events(order_id)
        except DurableStoreError as exc:
            log.warning("Durable audit read for order '%s' failed: %s", order_id, exc)
            return []

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def list_users(self) -> List[data_manager.UserRow]:
        try:
            return self.durable.list_users()
        except DurableStoreError as exc:
            log.warning("User directory unavailable: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Deferred writes
    # ------------------------------------------------------------------
    def retry_pending(self) -> int:
        """Push every locally pending write to the durable store again.

        Writes that fail again stay pending. Returns the number flushed.
        """

        flushed = 0
        with self._guard:
            order_ids = sorted(self.local.pending_orders)
            request_ids = sorted(self.local.pending_requests)
            events = list(self.local.pending_events.values())
            purges = sorted(self.local.pending_purges)

        for order_id in order_ids:
            order = self.local.orders.get(order_id)
            if order is not None and self.save_order(order):
                flushed += 1
        for request_id in request_ids:
            request = self.local.requests.get(request_id)
            if request is not None and self.save_request(request)[1]:
                flushed += 1
        for event in events:
            try:
                self.durable.append_event(event)
            except DurableWriteError as exc:
                log.warning("Audit event '%s' still pending: %s", event.event_id, exc)
                continue
            with self._guard:
                self.local.pending_events.pop(event.event_id, None)
            flushed += 1
        for order_id in purges:
            if self.purge_order(order_id):
                flushed += 1

        if flushed:
            log.info("Flushed %d deferred durable write(s)", flushed)
        return flushed


__all__ = [
    "ORDER_LOCK",
    "REQUEST_LOCK",
    "DurableStore",
    "WorkbookStore",
    "LocalReplica",
    "Repository",
    "permanent_request_id",
    "is_temporary_request_id",
]
