"""Transition rules for a single billing request.

Every function here takes the current request plus the acting department and
returns the next request, or raises before anything changes. There is no I/O:
the service layer in :mod:`cropflow.core_logic` loads, locks, persists, and
audits around these calls.

Graph::

    Pending --submit--> UnderReview --approve x2--> ReadyToInvoice --invoice--> Invoiced
       \\                  |                           |
        \\---reject---> Rejected <------reject---------/
                          |
                        unblock -> Pending (Billing) | UnderReview (Commercial/Credit)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from . import log
from .constants import (
    APPROVAL_DEPARTMENTS,
    BLOCK_TAG_TEMPLATE,
    GENERIC_BLOCK_TAG,
    REJECTING_DEPARTMENTS,
    Department,
)
from .errors import InvalidTransitionError, ValidationError, WorkflowPermissionError
from .models import (
    NOTE_FIELD_BY_DEPARTMENT,
    BillingRequest,
    Invoiced,
    LineItem,
    Notes,
    Order,
    Pending,
    ReadyToInvoice,
    Rejected,
    RequestState,
    UnderReview,
)
from .reconciliation import (
    cap_to_available,
    normalize_product_key,
    parse_positive_volume,
    select_fulfilled_items,
    summarize_items,
)


@dataclass(frozen=True)
class ItemDraft:
    """A line item as typed by a user: the volume is still raw text."""

    product_name: str
    volume: object
    unit: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class ItemDecision:
    """Commercial's accept/reject verdict on one requested item."""

    product_name: str
    accepted: bool
    reason: Optional[str] = None


def format_block_reason(department: Department, reason: Optional[str]) -> str:
    """Prefix ``reason`` with the blocking department tag used for display."""

    prefix = BLOCK_TAG_TEMPLATE.format(department=department.value) if department else GENERIC_BLOCK_TAG
    return f"{prefix}{(reason or '').strip()}"


def strip_block_tag(text: Optional[str]) -> str:
    """Remove a leading ``[BLOQUEIO...]`` tag for display. Never used for logic."""

    if not text:
        return ""
    if text.startswith("[BLOQUEIO") and "] " in text:
        return text.split("] ", 1)[1]
    return text


def _require_department(department: Department, allowed: frozenset[Department] | set[Department], operation: str) -> None:
    if department not in allowed:
        log.warning("Department '%s' is not allowed to %s", department.value, operation)
        allowed_names = ", ".join(sorted(member.value for member in allowed))
        raise WorkflowPermissionError(
            f"{department.value} may not {operation}; allowed: {allowed_names}"
        )


def _require_text(value: Optional[str], what: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{what} required")
    return value.strip()


def _clean_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    return note.strip() or None


def create_request(
    order: Order,
    *,
    request_id: str,
    volume: object,
    created_by: str,
    created_at: datetime,
    department: Department,
    seller_note: Optional[str] = None,
) -> BillingRequest:
    """Open a new ``Pending`` request drawing ``volume`` from ``order``.

    Raises:
        WorkflowPermissionError: If ``department`` is neither Seller nor Admin.
        ValidationError: If the volume is not positive or exceeds the order's
            remaining balance.
    """

    _require_department(department, {Department.SELLER, Department.ADMIN}, "create requests")
    parsed = parse_positive_volume(volume)
    if parsed is None:
        raise ValidationError(f"volume must be a positive number (got {volume!r})")
    if parsed > order.remaining_volume:
        raise ValidationError(
            f"requested volume {parsed} exceeds remaining balance {order.remaining_volume}"
        )

    item = LineItem(product_name=order.product_name, volume=parsed, unit=order.unit or "UN")
    return BillingRequest(
        request_id=request_id,
        order_id=order.order_id,
        order_number=order.order_number,
        client_name=order.client_name,
        client_code=order.client_code,
        product_summary=order.product_name,
        unit=item.unit,
        requested_items=(item,),
        created_by=created_by,
        created_at=created_at,
        notes=Notes(seller=_clean_note(seller_note)),
    )


def _materialize_items(request: BillingRequest, drafts: Sequence[ItemDraft]) -> tuple[LineItem, ...]:
    original_units = {normalize_product_key(item.product_name): item.unit for item in request.requested_items}
    items = []
    seen: set[str] = set()
    for draft in drafts:
        name = _require_text(draft.product_name, "product name")
        key = normalize_product_key(name)
        if key in seen:
            raise ValidationError(f"product '{name}' listed more than once")
        seen.add(key)
        volume = parse_positive_volume(draft.volume)
        if volume is None:
            raise ValidationError(f"volume for '{name}' must be a positive number (got {draft.volume!r})")
        unit = draft.unit or original_units.get(key, request.unit)
        items.append(LineItem(product_name=name, volume=volume, unit=unit, note=_clean_note(draft.note)))
    return tuple(items)


def submit_for_review(
    request: BillingRequest,
    *,
    department: Department,
    items: Sequence[ItemDraft],
    deadline: Optional[str],
    note: Optional[str] = None,
) -> BillingRequest:
    """Send a pending request to the Commercial and Credit approval tracks.

    The submitted items replace the request's composition; an item left out is
    simply never drawn from the order. Approval flags, block data, and the
    previous commercial/credit notes are cleared.

    Raises:
        WorkflowPermissionError: If ``department`` is not Billing.
        InvalidTransitionError: If the request is not ``Pending``.
        ValidationError: If ``deadline`` is blank, ``items`` is empty, a
            product appears twice, or any item volume is not a positive number.
    """

    _require_department(department, {Department.BILLING}, "submit requests for review")
    if not isinstance(request.state, Pending):
        raise InvalidTransitionError(request.status, "submit for review")
    clean_deadline = _require_text(deadline, "deadline")
    if not items:
        raise ValidationError("at least one item required")
    submitted = _materialize_items(request, items)
    summary = summarize_items(submitted)

    return replace(
        request,
        state=UnderReview(),
        requested_items=submitted,
        product_summary=summary.product_summary,
        unit=summary.unit,
        deadline=clean_deadline,
        notes=replace(request.notes, billing=_clean_note(note), commercial=None, credit=None),
        approved_by=None,
        approved_items=None,
        declined_items=(),
    )


def approve_step(
    request: BillingRequest,
    *,
    department: Department,
    note: Optional[str] = None,
    approver: Optional[str] = None,
) -> BillingRequest:
    """Record one department's approval and escalate once both tracks agree.

    Re-approving is idempotent: the flag stays set and only the note is
    overwritten. A repeated approval arriving after escalation leaves the
    request ``ReadyToInvoice``.

    Raises:
        WorkflowPermissionError: If ``department`` owns no approval track.
        InvalidTransitionError: If the request is neither ``UnderReview`` nor
            ``ReadyToInvoice``.
    """

    _require_department(department, APPROVAL_DEPARTMENTS, "approve requests")
    note_field = NOTE_FIELD_BY_DEPARTMENT[department]
    notes = replace(request.notes, **{note_field: _clean_note(note)})

    if isinstance(request.state, ReadyToInvoice):
        return replace(request, notes=notes)
    if not isinstance(request.state, UnderReview):
        raise InvalidTransitionError(request.status, "approve")

    commercial = request.state.commercial_approved or department is Department.COMMERCIAL
    credit = request.state.credit_approved or department is Department.CREDIT
    if commercial and credit:
        return replace(request, state=ReadyToInvoice(), notes=notes, approved_by=approver)
    return replace(
        request,
        state=UnderReview(commercial_approved=commercial, credit_approved=credit),
        notes=notes,
    )


def approve_itemized(
    request: BillingRequest,
    *,
    decisions: Sequence[ItemDecision],
    note: Optional[str] = None,
    approver: Optional[str] = None,
) -> BillingRequest:
    """Commercial approval with a per-item accept/reject split.

    Items without a decision count as accepted. Items declined by an earlier
    split stay on record next to the newly declined ones. When every item is
    rejected the call collapses into a full Commercial :func:`reject` using the
    first rejected item's reason.

    Raises:
        InvalidTransitionError: If the request is not ``UnderReview``.
        ValidationError: If a decision names a product that is not part of the
            request, or if the collapse into rejection has no reason.
    """

    if not isinstance(request.state, UnderReview):
        raise InvalidTransitionError(request.status, "approve items")

    verdicts: dict[str, ItemDecision] = {}
    known = {normalize_product_key(item.product_name) for item in request.effective_items}
    for decision in decisions:
        key = normalize_product_key(decision.product_name)
        if key not in known:
            raise ValidationError(f"'{decision.product_name}' is not part of this request")
        verdicts[key] = decision

    accepted = []
    declined = []
    first_reason: Optional[str] = None
    for item in request.effective_items:
        decision = verdicts.get(normalize_product_key(item.product_name))
        if decision is None or decision.accepted:
            accepted.append(item)
            continue
        if first_reason is None:
            first_reason = decision.reason
        declined.append(replace(item, note=_clean_note(decision.reason)))

    if not accepted:
        log.info("All items of request '%s' rejected by Commercial; blocking request", request.request_id)
        return reject(
            replace(request, declined_items=request.declined_items + tuple(declined)),
            department=Department.COMMERCIAL,
            reason=first_reason,
        )

    itemized = replace(
        request,
        approved_items=tuple(accepted),
        declined_items=request.declined_items + tuple(declined),
    )
    return approve_step(itemized, department=Department.COMMERCIAL, note=note, approver=approver)


def reject(
    request: BillingRequest,
    *,
    department: Department,
    reason: Optional[str],
) -> BillingRequest:
    """Block the request and attribute the block to ``department``.

    Raises:
        WorkflowPermissionError: If ``department`` may not veto requests.
        InvalidTransitionError: If the request is already rejected or invoiced.
        ValidationError: If ``reason`` is blank.
    """

    _require_department(department, REJECTING_DEPARTMENTS, "reject requests")
    state = request.state
    if isinstance(state, Invoiced):
        raise InvalidTransitionError(request.status, "reject", "already invoiced")
    if isinstance(state, Rejected):
        raise InvalidTransitionError(request.status, "reject", f"already blocked by {state.blocked_by.value}")
    clean_reason = _require_text(reason, "reason")

    if isinstance(state, UnderReview):
        resume_commercial, resume_credit = state.commercial_approved, state.credit_approved
    elif isinstance(state, ReadyToInvoice):
        resume_commercial, resume_credit = True, True
    else:
        resume_commercial, resume_credit = False, False

    return replace(
        request,
        state=Rejected(
            blocked_by=department,
            reason=format_block_reason(department, clean_reason),
            resume_commercial=resume_commercial,
            resume_credit=resume_credit,
        ),
    )


def resume_point(state: Rejected) -> RequestState:
    """Where a blocked request goes back to, based on who blocked it."""

    if state.blocked_by is Department.COMMERCIAL:
        return UnderReview(commercial_approved=False, credit_approved=state.resume_credit)
    if state.blocked_by is Department.CREDIT:
        return UnderReview(commercial_approved=state.resume_commercial, credit_approved=False)
    # Billing blocks and anything unexpected restart from the beginning.
    return Pending()


def can_unblock(state: Rejected, department: Department, *, is_admin: bool = False) -> bool:
    return is_admin or department is Department.ADMIN or department is state.blocked_by


def unblock(
    request: BillingRequest,
    *,
    department: Department,
    is_admin: bool = False,
) -> BillingRequest:
    """Lift a block. Only Admin or the blocking department may do so.

    Raises:
        InvalidTransitionError: If the request is not ``Rejected``.
        WorkflowPermissionError: If the caller is neither Admin nor the
            blocking department.
    """

    state = request.state
    if not isinstance(state, Rejected):
        raise InvalidTransitionError(request.status, "unblock", "request is not blocked")
    if not can_unblock(state, department, is_admin=is_admin):
        log.warning(
            "Unblock of request '%s' refused: blocked by %s, attempted by %s",
            request.request_id,
            state.blocked_by.value,
            department.value,
        )
        raise WorkflowPermissionError(
            f"only {state.blocked_by.value} or ADMIN may unblock this request (attempted by {department.value})"
        )

    notes = request.notes
    note_field = NOTE_FIELD_BY_DEPARTMENT.get(state.blocked_by)
    if note_field is not None:
        notes = replace(notes, **{note_field: None})
    if state.blocked_by is Department.COMMERCIAL:
        # Commercial decides again, so its item split is void.
        request = replace(request, approved_items=None, declined_items=())
    return replace(request, state=resume_point(state), notes=notes)


def invoice(
    request: BillingRequest,
    *,
    department: Department,
    fulfilled_volumes: Mapping[str, object],
    invoiced_at: datetime,
    note: Optional[str] = None,
    available: Optional[Decimal] = None,
) -> BillingRequest:
    """Mark an approved request as invoiced with the volumes actually shipped.

    Items with a missing, unparseable, or non-positive fulfilled volume are
    excluded without error. If every item is excluded the request is still
    invoiced, with an empty fulfilled set. Each fulfilled volume is capped at
    the item's approved volume, and when ``available`` is given the total is
    capped at it as well, so the order is never debited past its balance.

    Raises:
        WorkflowPermissionError: If ``department`` is not Billing.
        InvalidTransitionError: If the request is not ``ReadyToInvoice``.
    """

    _require_department(department, {Department.BILLING}, "invoice requests")
    if not isinstance(request.state, ReadyToInvoice):
        raise InvalidTransitionError(request.status, "invoice")

    fulfilled = select_fulfilled_items(request.effective_items, fulfilled_volumes)
    if available is not None:
        fulfilled = cap_to_available(fulfilled, available)
    if not fulfilled:
        log.warning("Request '%s' invoiced with an empty fulfilled set", request.request_id)
    return replace(
        request,
        state=Invoiced(fulfilled_items=fulfilled, invoiced_at=invoiced_at),
        notes=replace(request.notes, invoice_issuance=_clean_note(note)),
    )


def fulfilled_volume(request: BillingRequest) -> Decimal:
    return sum((item.volume for item in request.fulfilled_items or ()), Decimal("0"))


__all__ = [
    "ItemDraft",
    "ItemDecision",
    "format_block_reason",
    "strip_block_tag",
    "create_request",
    "submit_for_review",
    "approve_step",
    "approve_itemized",
    "reject",
    "resume_point",
    "can_unblock",
    "unblock",
    "invoice",
    "fulfilled_volume",
]
