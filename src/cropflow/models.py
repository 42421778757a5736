"""Domain records shared by the workflow, reconciliation, and storage layers.

A billing request's lifecycle state is a tagged union: each status owns only
the fields that are meaningful in that status. ``BillingRequest`` exposes the
flat attributes the rest of the system reads (``status``,
``commercial_approved``, ``blocked_by`` ...) as derived properties so that the
record can never describe an impossible combination such as a rejected
request without a blocking department.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Union

from .constants import Department, OrderStatus, RequestStatus, Severity


@dataclass(frozen=True)
class LineItem:
    """A (product, volume, unit) triple with an optional free-text note."""

    product_name: str
    volume: Decimal
    unit: str
    note: Optional[str] = None


@dataclass(frozen=True)
class OrderLine:
    """Catalog entry of an order: one product with its own balance and price."""

    product_name: str
    unit: str
    total_volume: Decimal
    remaining_volume: Decimal
    invoiced_volume: Decimal
    unit_price: Decimal
    total_value: Decimal


@dataclass(frozen=True)
class Order:
    """A standing sales order with a finite volume/value budget."""

    order_id: str
    order_number: str
    client_code: str
    client_name: str
    product_name: str
    unit: str
    total_volume: Decimal
    remaining_volume: Decimal
    invoiced_volume: Decimal
    total_value: Decimal
    invoiced_value: Decimal
    seller_code: str
    seller_name: str
    status: OrderStatus
    created_at: str
    block_note: Optional[str] = None
    items: tuple[OrderLine, ...] = ()


@dataclass(frozen=True)
class Notes:
    """Free-text notes keyed by the department that wrote them."""

    seller: Optional[str] = None
    billing: Optional[str] = None
    commercial: Optional[str] = None
    credit: Optional[str] = None
    invoice_issuance: Optional[str] = None


NOTE_FIELD_BY_DEPARTMENT: dict[Department, str] = {
    Department.SELLER: "seller",
    Department.BILLING: "billing",
    Department.COMMERCIAL: "commercial",
    Department.CREDIT: "credit",
}


@dataclass(frozen=True)
class AuditEvent:
    """One immutable record of a transition."""

    event_id: str
    order_id: str
    timestamp: datetime
    actor: str
    department: str
    action: str
    detail: str
    severity: Severity


@dataclass(frozen=True)
class Pending:
    status: ClassVar[RequestStatus] = RequestStatus.PENDING


@dataclass(frozen=True)
class UnderReview:
    status: ClassVar[RequestStatus] = RequestStatus.UNDER_REVIEW

    commercial_approved: bool = False
    credit_approved: bool = False


@dataclass(frozen=True)
class ReadyToInvoice:
    status: ClassVar[RequestStatus] = RequestStatus.READY_TO_INVOICE


@dataclass(frozen=True)
class Rejected:
    """Blocked request.

    ``resume_commercial``/``resume_credit`` hold the approvals that were in
    place when the block happened; unblock restores the one belonging to the
    department that did not block.
    """

    status: ClassVar[RequestStatus] = RequestStatus.REJECTED

    blocked_by: Department
    reason: str
    resume_commercial: bool = False
    resume_credit: bool = False


@dataclass(frozen=True)
class Invoiced:
    status: ClassVar[RequestStatus] = RequestStatus.INVOICED

    fulfilled_items: tuple[LineItem, ...]
    invoiced_at: datetime


RequestState = Union[Pending, UnderReview, ReadyToInvoice, Rejected, Invoiced]


@dataclass(frozen=True)
class BillingRequest:
    """A single draw-down attempt against one order."""

    request_id: str
    order_id: str
    order_number: str
    client_name: str
    client_code: str
    product_summary: str
    unit: str
    requested_items: tuple[LineItem, ...]
    created_by: str
    created_at: datetime
    state: RequestState = field(default_factory=Pending)
    deadline: Optional[str] = None
    notes: Notes = field(default_factory=Notes)
    approved_by: Optional[str] = None
    approved_items: Optional[tuple[LineItem, ...]] = None
    declined_items: tuple[LineItem, ...] = ()

    @property
    def status(self) -> RequestStatus:
        return self.state.status

    @property
    def requested_volume(self) -> Decimal:
        return sum((item.volume for item in self.requested_items), Decimal("0"))

    @property
    def effective_items(self) -> tuple[LineItem, ...]:
        """Items eligible for invoicing: the approved subset when one was recorded."""
        if self.approved_items is not None:
            return self.approved_items
        return self.requested_items

    @property
    def commercial_approved(self) -> bool:
        if isinstance(self.state, UnderReview):
            return self.state.commercial_approved
        return isinstance(self.state, (ReadyToInvoice, Invoiced))

    @property
    def credit_approved(self) -> bool:
        if isinstance(self.state, UnderReview):
            return self.state.credit_approved
        return isinstance(self.state, (ReadyToInvoice, Invoiced))

    @property
    def blocked_by(self) -> Optional[Department]:
        return self.state.blocked_by if isinstance(self.state, Rejected) else None

    @property
    def rejection_reason(self) -> Optional[str]:
        return self.state.reason if isinstance(self.state, Rejected) else None

    @property
    def fulfilled_items(self) -> Optional[tuple[LineItem, ...]]:
        return self.state.fulfilled_items if isinstance(self.state, Invoiced) else None

    @property
    def invoiced_at(self) -> Optional[datetime]:
        return self.state.invoiced_at if isinstance(self.state, Invoiced) else None


__all__ = [
    "LineItem",
    "OrderLine",
    "Order",
    "Notes",
    "NOTE_FIELD_BY_DEPARTMENT",
    "AuditEvent",
    "Pending",
    "UnderReview",
    "ReadyToInvoice",
    "Rejected",
    "Invoiced",
    "RequestState",
    "BillingRequest",
]
