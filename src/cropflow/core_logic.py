"""Business logic layer for Cropflow.

This module is the service facade over the billing-request workflow. Each
operation loads the current records through the :class:`Repository`, applies
a pure transition from :mod:`cropflow.state_machine`, reconciles the order
ledger where needed, and then persists, audits, and notifies. A failed durable
write never unwinds a transition; it is reported back through
``TransitionResult.durable_ok``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from . import data_manager, log, state_machine
from .audit import AuditTrail
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    TEMPORARY_REQUEST_PREFIX,
    Department,
    RequestStatus,
    Severity,
)
from .errors import ValidationError, WorkflowPermissionError
from .models import AuditEvent, BillingRequest, Order
from .notifications import LogNotifier, Notifier, build_block_notice, dispatch
from .reconciliation import apply_invoice, format_volume, ledger_is_consistent, omitted_items
from .replicas import ORDER_LOCK, REQUEST_LOCK, Repository, WorkbookStore
from .state_machine import ItemDecision, ItemDraft

ACTION_REQUEST_CREATED = "Request Created"
ACTION_SUBMITTED = "Submitted for Review"
ACTION_PARTIAL_APPROVAL = "Partial Approval ({department})"
ACTION_APPROVED = "Approved for Invoicing"
ACTION_APPROVAL_REPEATED = "Approval Note Updated ({department})"
ACTION_BLOCKED = "Blocked ({department})"
ACTION_UNBLOCKED = "Manual Unblock"
ACTION_INVOICED = "Invoice Issued"
ACTION_ORDER_REGISTERED = "Order Registered"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, storage, and collaborators used by the BLL."""

    settings: data_manager.ConfigSettings
    repository: Repository
    notifier: Notifier = field(default_factory=LogNotifier)

    @property
    def audit(self) -> AuditTrail:
        return AuditTrail(self.repository, merge_window_seconds=self.settings.audit_merge_window_seconds)

    @property
    def tolerance(self) -> Decimal:
        return self.settings.volume_tolerance


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a mutating operation.

    ``durable_ok`` is ``False`` when any write stayed in the local replica
    only; the caller decides whether and when to retry.
    """

    request: Optional[BillingRequest]
    order: Optional[Order]
    durable_ok: bool
    notified: Optional[bool] = None


@dataclass(frozen=True)
class CreateRequestCommand:
    """Seller intent to draw ``volume`` from an order."""

    order_id: str
    volume: object
    actor: str
    department: Department = Department.SELLER
    seller_note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SubmitForReviewCommand:
    """Billing intent to send a pending request to the approval tracks."""

    request_id: str
    items: Sequence[ItemDraft]
    deadline: Optional[str]
    actor: str
    note: Optional[str] = None
    department: Department = Department.BILLING
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ApproveStepCommand:
    request_id: str
    department: Department
    actor: str
    note: Optional[str] = None
    item_split: Optional[Sequence[ItemDecision]] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RejectCommand:
    request_id: str
    department: Department
    actor: str
    reason: Optional[str]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UnblockCommand:
    request_id: str
    department: Department
    actor: str
    is_admin: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceCommand:
    """Billing intent to issue the invoice for an approved request.

    ``fulfilled_volumes`` maps product names to the raw volume actually
    shipped; unparseable or non-positive entries exclude the item.
    """

    request_id: str
    fulfilled_volumes: Mapping[str, object]
    actor: str
    note: Optional[str] = None
    department: Department = Department.BILLING
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PurgeOrderCommand:
    order_id: str
    actor: str
    department: Department = Department.ADMIN


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC datetime when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_request_id(*, prefix: str = TEMPORARY_REQUEST_PREFIX, when: Optional[datetime] = None) -> str:
    """Generate a temporary request identifier.

    The durable store replaces it with a permanent ``R...`` identifier on the
    first successful write.

    Returns:
        str: Identifier formed as ``{prefix}{epoch milliseconds}-{random}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{int(when.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}"


def load_runtime_context(config_path: Optional[Path] = None, *, notifier: Optional[Notifier] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed repository.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        notifier (Notifier | None): Block-notice collaborator; defaults to
            :class:`LogNotifier`.

    Returns:
        RuntimeContext: Fully populated context ready for workflow operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    repository = Repository(WorkbookStore(workbook, path=settings.data_file))
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, repository=repository, notifier=notifier or LogNotifier())


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Flush deferred writes and save the workbook to the configured path.

    Raises:
        DurableWriteError: If the workbook cannot be written.
    """
    context.repository.retry_pending()
    store = context.repository.durable
    if isinstance(store, WorkbookStore):
        store.flush()
        log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook and drop the local replica, discarding unsaved edits.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    repository = Repository(WorkbookStore(workbook, path=context.settings.data_file))
    return RuntimeContext(settings=context.settings, repository=repository, notifier=context.notifier)


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------
def get_order(context: RuntimeContext, order_id: str) -> Order:
    """Return the order or raise :class:`~cropflow.errors.NotFoundError`."""
    return context.repository.get_order(order_id)


def list_orders(
    context: RuntimeContext,
    *,
    department: Optional[Department] = None,
    actor: Optional[str] = None,
) -> List[Order]:
    """Orders sorted by number, as seen by ``department``.

    A Seller only sees the orders whose seller name contains ``actor``
    (case-insensitive); every other department sees all orders.

    Raises:
        ValidationError: If a Seller view is asked for without an actor.
    """
    orders = context.repository.list_orders()
    if department is Department.SELLER:
        name = (actor or "").strip().casefold()
        if not name:
            raise ValidationError("actor required to list a seller's orders")
        orders = [order for order in orders if order.seller_name and name in order.seller_name.casefold()]
        log.debug("Seller view for '%s' keeps %d order(s)", actor, len(orders))
    return sorted(orders, key=lambda o: o.order_number)


def get_request(context: RuntimeContext, request_id: str) -> BillingRequest:
    """Return the request or raise :class:`~cropflow.errors.NotFoundError`."""
    return context.repository.get_request(request_id)


def list_requests_for_order(context: RuntimeContext, order_id: str) -> List[BillingRequest]:
    return context.repository.requests_for_order(order_id)


def read_history(context: RuntimeContext, order_id: str) -> List[AuditEvent]:
    """Merged audit history of an order, newest first."""
    return context.audit.read(order_id)


# ----------------------------------------------------------------------
# Mutations
# ----------------------------------------------------------------------
def _commit(
    context: RuntimeContext,
    request: BillingRequest,
    *,
    actor: str,
    department: Department,
    when: datetime,
    action: str,
    detail: str,
    severity: Severity,
    order_ok: bool = True,
) -> TransitionResult:
    stored, request_ok = context.repository.save_request(request)
    _, event_ok = context.audit.record(
        stored.order_id, actor, department, action, detail, severity, when=when
    )
    notified = None
    if stored.status is RequestStatus.REJECTED:
        notified = _notify_block(context, stored)
    durable_ok = request_ok and event_ok and order_ok
    if not durable_ok:
        log.warning("Request '%s' saved locally; durable write deferred", stored.request_id)
    return TransitionResult(
        request=stored,
        order=context.repository.find_order(stored.order_id),
        durable_ok=durable_ok,
        notified=notified,
    )


def _notify_block(context: RuntimeContext, request: BillingRequest) -> bool:
    notice = build_block_notice(request, context.repository.list_users())
    if notice is None:
        return False
    return dispatch(context.notifier, notice)


def register_order(context: RuntimeContext, order: Order, *, actor: str = "system") -> TransitionResult:
    """Insert or replace an order coming from the sales feed.

    Raises:
        ValidationError: If the identifier is blank or the volumes are out of
            balance.
    """
    if not order.order_id.strip():
        raise ValidationError("order id required")
    if order.total_volume < 0 or not (0 <= order.remaining_volume <= order.total_volume):
        raise ValidationError(
            f"order '{order.order_id}' volumes out of range "
            f"(total={order.total_volume}, remaining={order.remaining_volume})"
        )
    if not ledger_is_consistent(order, tolerance=context.tolerance):
        log.warning("Order '%s' registered with an inconsistent ledger", order.order_id)

    with context.repository.lock_for(ORDER_LOCK, order.order_id):
        order_ok = context.repository.save_order(order)
    _, event_ok = context.audit.record(
        order.order_id,
        actor,
        "SISTEMA",
        ACTION_ORDER_REGISTERED,
        f"{order.product_name}: {format_volume(order.remaining_volume)} of {format_volume(order.total_volume)} {order.unit} open",
        Severity.INFO,
    )
    log.info("Registered order '%s' (%s)", order.order_id, order.order_number)
    return TransitionResult(request=None, order=order, durable_ok=order_ok and event_ok)


def create_request(context: RuntimeContext, command: CreateRequestCommand) -> TransitionResult:
    """Open a ``Pending`` request against an order.

    Raises:
        NotFoundError: If the order is unknown.
        WorkflowPermissionError: If the department may not create requests.
        ValidationError: If the volume is not positive or exceeds the order's
            remaining balance.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(ORDER_LOCK, command.order_id):
        order = context.repository.get_order(command.order_id)
        request = state_machine.create_request(
            order,
            request_id=generate_request_id(when=timestamp),
            volume=command.volume,
            created_by=command.actor,
            created_at=timestamp,
            department=command.department,
            seller_note=command.seller_note,
        )
    result = _commit(
        context,
        request,
        actor=command.actor,
        department=command.department,
        when=timestamp,
        action=ACTION_REQUEST_CREATED,
        detail=f"{format_volume(request.requested_volume)} {request.unit} requested",
        severity=Severity.INFO,
    )
    log.info(
        "Created request '%s' on order '%s' (volume=%s)",
        result.request.request_id,
        command.order_id,
        request.requested_volume,
    )
    return result


def submit_for_review(context: RuntimeContext, command: SubmitForReviewCommand) -> TransitionResult:
    """Send a pending request to Commercial and Credit.

    Raises:
        NotFoundError: If the request is unknown.
        WorkflowPermissionError: If the department is not Billing.
        ValidationError: If the request is not pending, the deadline is blank,
            or the item list is empty or holds a non-positive volume.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(REQUEST_LOCK, command.request_id):
        current = context.repository.get_request(command.request_id)
        updated = state_machine.submit_for_review(
            current,
            department=command.department,
            items=command.items,
            deadline=command.deadline,
            note=command.note,
        )
        dropped = omitted_items(current.requested_items, updated.requested_items)
        detail = (
            f"{updated.product_summary}; total {format_volume(updated.requested_volume)} {updated.unit}; "
            f"deadline {updated.deadline}"
        )
        if dropped:
            detail += "; omitted: " + ", ".join(item.product_name for item in dropped)
        result = _commit(
            context,
            updated,
            actor=command.actor,
            department=command.department,
            when=timestamp,
            action=ACTION_SUBMITTED,
            detail=detail,
            severity=Severity.INFO,
        )
    log.info("Submitted request '%s' for review", result.request.request_id)
    return result


def approve_step(context: RuntimeContext, command: ApproveStepCommand) -> TransitionResult:
    """Record one department's approval, optionally with a per-item split.

    Raises:
        NotFoundError: If the request is unknown.
        WorkflowPermissionError: If the department owns no approval track.
        ValidationError: If the request is not awaiting approval, or an item
            split is sent by a department other than Commercial.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(REQUEST_LOCK, command.request_id):
        current = context.repository.get_request(command.request_id)
        if command.item_split:
            if command.department is not Department.COMMERCIAL:
                raise WorkflowPermissionError(
                    f"{command.department.value} may not approve item by item; only COMERCIAL may"
                )
            updated = state_machine.approve_itemized(
                current, decisions=command.item_split, note=command.note, approver=command.actor
            )
        else:
            updated = state_machine.approve_step(
                current, department=command.department, note=command.note, approver=command.actor
            )

        department = command.department.value
        if updated.status is RequestStatus.REJECTED:
            action, detail, severity = (
                ACTION_BLOCKED.format(department=department),
                updated.rejection_reason or "",
                Severity.ERROR,
            )
        elif current.status is RequestStatus.READY_TO_INVOICE:
            action, detail, severity = (
                ACTION_APPROVAL_REPEATED.format(department=department),
                command.note or "",
                Severity.INFO,
            )
        elif updated.status is RequestStatus.READY_TO_INVOICE:
            action, detail, severity = ACTION_APPROVED, command.note or "", Severity.SUCCESS
        else:
            action, detail, severity = (
                ACTION_PARTIAL_APPROVAL.format(department=department),
                command.note or "",
                Severity.SUCCESS,
            )
        if command.item_split and updated.declined_items:
            declined = ", ".join(item.product_name for item in updated.declined_items)
            detail = f"{detail}; declined: {declined}" if detail else f"declined: {declined}"

        result = _commit(
            context,
            updated,
            actor=command.actor,
            department=command.department,
            when=timestamp,
            action=action,
            detail=detail,
            severity=severity,
        )
    log.info(
        "%s approved request '%s' (status=%s)",
        department,
        result.request.request_id,
        result.request.status.value,
    )
    return result


def reject(context: RuntimeContext, command: RejectCommand) -> TransitionResult:
    """Block a request and notify the requester and their manager.

    Raises:
        NotFoundError: If the request is unknown.
        WorkflowPermissionError: If the department may not veto requests.
        ValidationError: If the reason is blank or the request is already
            rejected or invoiced.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(REQUEST_LOCK, command.request_id):
        current = context.repository.get_request(command.request_id)
        updated = state_machine.reject(current, department=command.department, reason=command.reason)
        result = _commit(
            context,
            updated,
            actor=command.actor,
            department=command.department,
            when=timestamp,
            action=ACTION_BLOCKED.format(department=command.department.value),
            detail=updated.rejection_reason or "",
            severity=Severity.ERROR,
        )
    log.info("Request '%s' blocked by %s", result.request.request_id, command.department.value)
    return result


def unblock(context: RuntimeContext, command: UnblockCommand) -> TransitionResult:
    """Lift a block and return the request to the blocker's resume point.

    Raises:
        NotFoundError: If the request is unknown.
        ValidationError: If the request is not rejected.
        WorkflowPermissionError: If the caller is neither Admin nor the
            blocking department.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(REQUEST_LOCK, command.request_id):
        current = context.repository.get_request(command.request_id)
        updated = state_machine.unblock(current, department=command.department, is_admin=command.is_admin)
        result = _commit(
            context,
            updated,
            actor=command.actor,
            department=command.department,
            when=timestamp,
            action=ACTION_UNBLOCKED,
            detail=f"blocked by {current.blocked_by.value}; returned to {updated.status.value}",
            severity=Severity.WARNING,
        )
    log.info("Request '%s' unblocked to %s", result.request.request_id, updated.status.value)
    return result


def invoice(context: RuntimeContext, command: InvoiceCommand) -> TransitionResult:
    """Issue the invoice and debit the fulfilled volumes from the order.

    The order lock is held across the read, the debit, and the write, so two
    invoices against the same order never lose an update. Fulfilled volumes
    are capped at the order balance read under that lock; open requests may
    together ask for more than the order holds.

    Raises:
        NotFoundError: If the request or its order is unknown.
        WorkflowPermissionError: If the department is not Billing.
        ValidationError: If the request is not ready to invoice.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    with context.repository.lock_for(REQUEST_LOCK, command.request_id):
        current = context.repository.get_request(command.request_id)
        with context.repository.lock_for(ORDER_LOCK, current.order_id):
            order = context.repository.get_order(current.order_id)
            updated = state_machine.invoice(
                current,
                department=command.department,
                fulfilled_volumes=command.fulfilled_volumes,
                invoiced_at=timestamp,
                note=command.note,
                available=order.remaining_volume,
            )
            new_order, delta = apply_invoice(order, updated.fulfilled_items or (), tolerance=context.tolerance)
            order_ok = context.repository.save_order(new_order) if delta.lines else True
            if delta.lines:
                detail = f"fulfilled {format_volume(delta.volume)} {updated.unit}; value {delta.value:.2f}"
                severity = Severity.SUCCESS
            else:
                detail = "no fulfilled items; order balance unchanged"
                severity = Severity.WARNING
            result = _commit(
                context,
                updated,
                actor=command.actor,
                department=command.department,
                when=timestamp,
                action=ACTION_INVOICED,
                detail=detail,
                severity=severity,
                order_ok=order_ok,
            )
    log.info(
        "Invoiced request '%s': debited %s from order '%s' (remaining=%s, status=%s)",
        result.request.request_id,
        delta.volume,
        new_order.order_id,
        new_order.remaining_volume,
        new_order.status.value,
    )
    return result


def purge_order(context: RuntimeContext, command: PurgeOrderCommand) -> bool:
    """Delete an order with its requests and history. Admin only.

    Returns:
        bool: Whether the purge reached the durable store.

    Raises:
        NotFoundError: If the order is unknown.
        WorkflowPermissionError: If the department is not Admin.
    """
    if command.department is not Department.ADMIN:
        log.warning("Purge of order '%s' refused for %s", command.order_id, command.department.value)
        raise WorkflowPermissionError(f"{command.department.value} may not purge orders; allowed: ADMIN")
    with context.repository.lock_for(ORDER_LOCK, command.order_id):
        context.repository.get_order(command.order_id)
        durable_ok = context.repository.purge_order(command.order_id)
    log.info("Order '%s' purged by %s", command.order_id, command.actor)
    return durable_ok


__all__ = [
    "RuntimeContext",
    "TransitionResult",
    "CreateRequestCommand",
    "SubmitForReviewCommand",
    "ApproveStepCommand",
    "RejectCommand",
    "UnblockCommand",
    "InvoiceCommand",
    "PurgeOrderCommand",
    "generate_request_id",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "get_order",
    "list_orders",
    "get_request",
    "list_requests_for_order",
    "read_history",
    "register_order",
    "create_request",
    "submit_for_review",
    "approve_step",
    "reject",
    "unblock",
    "invoice",
    "purge_order",
]
