"""Enumerations shared across the Cropflow billing workflow.

Values are persisted verbatim in the master workbook, so every member keeps
the exact text the order-fulfilment team already uses in its records.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# An order is considered fully drawn down once less than one unit remains.
DEFAULT_VOLUME_TOLERANCE = Decimal("1")

# Two audit rows with the same action this close together are one event.
DEFAULT_AUDIT_MERGE_WINDOW_SECONDS = 2.0

BLOCK_TAG_TEMPLATE = "[BLOQUEIO: {department}] "
GENERIC_BLOCK_TAG = "[BLOQUEIO] "

TEMPORARY_REQUEST_PREFIX = "req-"


class Department(str, Enum):
    """Approval/authority domains an actor can act on behalf of."""

    SELLER = "VENDEDOR"
    BILLING = "FATURAMENTO"
    COMMERCIAL = "COMERCIAL"
    CREDIT = "CREDITO"
    ADMIN = "ADMIN"


class RequestStatus(str, Enum):
    """Lifecycle states of a billing request."""

    PENDING = "pendente"
    UNDER_REVIEW = "em_analise"
    READY_TO_INVOICE = "aprovado_para_faturamento"
    REJECTED = "rejeitado"
    INVOICED = "faturado"


class OrderStatus(str, Enum):
    """Derived status of a sales order's remaining balance."""

    PENDING = "pendente"
    PARTIALLY_INVOICED = "parcialmente_faturado"
    AWAITING_ISSUANCE = "aguardando_emissao_nf"
    FINALIZED = "finalizado"


class Severity(str, Enum):
    """Severity tag attached to each audit event."""

    SUCCESS = "SUCESSO"
    ERROR = "ERRO"
    INFO = "INFO"
    WARNING = "ALERTA"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ORDERS = "Orders"
    ORDER_ITEMS = "OrderItems"
    REQUESTS = "Requests"
    AUDIT_LOG = "AuditLog"
    USERS = "Users"


# Departments allowed to veto a request.
REJECTING_DEPARTMENTS: frozenset[Department] = frozenset(
    {Department.BILLING, Department.COMMERCIAL, Department.CREDIT}
)

# Departments owning an independent approval track.
APPROVAL_DEPARTMENTS: frozenset[Department] = frozenset(
    {Department.COMMERCIAL, Department.CREDIT}
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_VOLUME_TOLERANCE",
    "DEFAULT_AUDIT_MERGE_WINDOW_SECONDS",
    "BLOCK_TAG_TEMPLATE",
    "GENERIC_BLOCK_TAG",
    "TEMPORARY_REQUEST_PREFIX",
    "Department",
    "RequestStatus",
    "OrderStatus",
    "Severity",
    "SheetName",
    "REJECTING_DEPARTMENTS",
    "APPROVAL_DEPARTMENTS",
]
