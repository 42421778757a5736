"""Data access layer for Cropflow.

This module provides low-level helpers that read from and write to the
master workbook. Workflow rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, upserting, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_AUDIT_MERGE_WINDOW_SECONDS,
    DEFAULT_VOLUME_TOLERANCE,
    Department,
    OrderStatus,
    RequestStatus,
    Severity,
    SheetName,
)
from .models import (
    AuditEvent,
    BillingRequest,
    Invoiced,
    LineItem,
    Notes,
    Order,
    OrderLine,
    Pending,
    ReadyToInvoice,
    Rejected,
    RequestState,
    UnderReview,
)


CONFIG_FILE_NAME = "config.ini"
ORDERS_SHEET = SheetName.ORDERS.value
ORDER_ITEMS_SHEET = SheetName.ORDER_ITEMS.value
REQUESTS_SHEET = SheetName.REQUESTS.value
AUDIT_LOG_SHEET = SheetName.AUDIT_LOG.value
USERS_SHEET = SheetName.USERS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    ORDERS_SHEET: [
        "OrderID",
        "OrderNumber",
        "ClientCode",
        "ClientName",
        "ProductName",
        "Unit",
        "TotalVolume",
        "RemainingVolume",
        "InvoicedVolume",
        "TotalValue",
        "InvoicedValue",
        "SellerCode",
        "SellerName",
        "Status",
        "BlockNote",
        "CreatedAt",
    ],
    ORDER_ITEMS_SHEET: [
        "OrderID",
        "ProductName",
        "Unit",
        "TotalVolume",
        "RemainingVolume",
        "InvoicedVolume",
        "UnitPrice",
        "TotalValue",
    ],
    REQUESTS_SHEET: [
        "RequestID",
        "OrderID",
        "OrderNumber",
        "ClientCode",
        "ClientName",
        "ProductSummary",
        "Unit",
        "RequestedVolume",
        "RequestedItems",
        "Status",
        "CommercialApproved",
        "CreditApproved",
        "BlockedBy",
        "RejectionReason",
        "ResumeCommercial",
        "ResumeCredit",
        "CreatedBy",
        "CreatedAt",
        "Deadline",
        "SellerNote",
        "BillingNote",
        "CommercialNote",
        "CreditNote",
        "IssuanceNote",
        "ApprovedBy",
        "ApprovedItems",
        "DeclinedItems",
        "FulfilledItems",
        "InvoicedAt",
    ],
    AUDIT_LOG_SHEET: [
        "EventID",
        "OrderID",
        "Timestamp",
        "Actor",
        "Department",
        "Action",
        "Detail",
        "Severity",
    ],
    USERS_SHEET: [
        "UserID",
        "Name",
        "Email",
        "Department",
        "ManagerID",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    volume_tolerance: Decimal = DEFAULT_VOLUME_TOLERANCE
    audit_merge_window_seconds: float = DEFAULT_AUDIT_MERGE_WINDOW_SECONDS


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    name: str
    email: Optional[str]
    department: str
    manager_id: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent
            directory.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. ``[Workflow]`` is optional and falls back to the
    package defaults for the volume tolerance and the audit merge window.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the current
    working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a ``[Workflow]`` entry is not numeric.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tolerance_raw = parser.get("Workflow", "VolumeTolerance", fallback=str(DEFAULT_VOLUME_TOLERANCE))
    window = parser.getfloat(
        "Workflow",
        "AuditMergeWindowSeconds",
        fallback=DEFAULT_AUDIT_MERGE_WINDOW_SECONDS,
    )

    try:
        tolerance = Decimal(tolerance_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"VolumeTolerance is not a number: {tolerance_raw!r}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        volume_tolerance=tolerance,
        audit_merge_window_seconds=window,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple[object, ...]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_orders(workbook: Workbook) -> Iterable[Order]:
    """Stream orders joined with their ``OrderItems`` catalog lines."""

    lines: dict[str, list[OrderLine]] = {}
    for raw in _iter_raw_rows(workbook, ORDER_ITEMS_SHEET):
        order_id, line = deserialize_order_line(raw)
        lines.setdefault(order_id, []).append(line)

    for raw in _iter_raw_rows(workbook, ORDERS_SHEET):
        order = deserialize_order(raw)
        yield replace(order, items=tuple(lines.get(order.order_id, ())))


def iter_requests(workbook: Workbook) -> Iterable[BillingRequest]:
    """Stream billing requests from the ``Requests`` worksheet."""

    for raw in _iter_raw_rows(workbook, REQUESTS_SHEET):
        yield deserialize_request(raw)


def iter_audit_events(workbook: Workbook, order_id: Optional[str] = None) -> Iterable[AuditEvent]:
    """Stream audit events, optionally restricted to one order."""

    for raw in _iter_raw_rows(workbook, AUDIT_LOG_SHEET):
        event = deserialize_audit_event(raw)
        if order_id is None or event.order_id == order_id:
            yield event


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Stream the user directory used to address notifications."""

    for raw in _iter_raw_rows(workbook, USERS_SHEET):
        yield deserialize_user(raw)


def upsert_order(workbook: Workbook, order: Order) -> None:
    """Insert or update an order row and replace its catalog lines."""

    upsert_row(workbook, ORDERS_SHEET, "OrderID", order.order_id, serialize_order(order))
    delete_rows(workbook, ORDER_ITEMS_SHEET, "OrderID", order.order_id)
    sheet = workbook[ORDER_ITEMS_SHEET]
    for line in order.items:
        sheet.append(serialize_order_line(order.order_id, line))


def upsert_request(workbook: Workbook, request: BillingRequest) -> None:
    upsert_row(workbook, REQUESTS_SHEET, "RequestID", request.request_id, serialize_request(request))


def append_audit_event(workbook: Workbook, event: AuditEvent) -> None:
    workbook[AUDIT_LOG_SHEET].append(serialize_audit_event(event))


def append_user(workbook: Workbook, record: UserRow) -> None:
    workbook[USERS_SHEET].append(serialize_user(record))


def upsert_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, values: Sequence[object]) -> int:
    """Overwrite the row keyed by ``key_value`` or append a new one.

    Returns:
        int: 1-based Excel row index that now holds ``values``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    sheet = workbook[sheet_name]
    if row_index is None:
        sheet.append(list(values))
        return sheet.max_row

    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)
    return row_index


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[sheet_name]
    key_col_index = _header_map(workbook, sheet_name, key_column)[key_column]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    # Bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    key_col_index = _header_map(workbook, sheet_name, key_column)[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _header_map(workbook: Workbook, sheet_name: str, required: str) -> dict[Any, int]:
    header_cells = list(workbook[sheet_name][1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if required not in header_map:
        raise KeyError(f"Unknown column: {required}")
    return header_map


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw not in (None, "") else Decimal(default)


def _text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text != "" else None


def _flag(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes", "sim"}
    return bool(raw)


def _timestamp(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    parsed = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    # Excel date cells come back naive; everything we write is UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def dump_items(items: Optional[Sequence[LineItem]]) -> Optional[str]:
    """Encode line items as a JSON cell value (``None`` stays ``None``)."""

    if items is None:
        return None
    return json.dumps(
        [
            {"product": item.product_name, "volume": str(item.volume), "unit": item.unit, "note": item.note}
            for item in items
        ],
        ensure_ascii=False,
    )


def load_items(raw: object) -> Optional[tuple[LineItem, ...]]:
    """Decode a JSON cell value produced by :func:`dump_items`."""

    if raw in (None, ""):
        return None
    return tuple(
        LineItem(
            product_name=entry["product"],
            volume=Decimal(entry["volume"]),
            unit=entry.get("unit") or "UN",
            note=entry.get("note"),
        )
        for entry in json.loads(str(raw))
    )


def serialize_order(record: Order) -> list[object]:
    return [
        record.order_id,
        record.order_number,
        record.client_code,
        record.client_name,
        record.product_name,
        record.unit,
        record.total_volume,
        record.remaining_volume,
        record.invoiced_volume,
        record.total_value,
        record.invoiced_value,
        record.seller_code,
        record.seller_name,
        record.status.value,
        record.block_note,
        record.created_at,
    ]


def deserialize_order(raw_row: Sequence[object]) -> Order:
    """Convert a raw ``Orders`` row into an :class:`Order` without catalog lines.

    Identifiers are coerced to ``str`` because Excel happily turns order
    numbers into integers.
    """

    (
        order_id,
        order_number,
        client_code,
        client_name,
        product_name,
        unit,
        total_volume,
        remaining_volume,
        invoiced_volume,
        total_value,
        invoiced_value,
        seller_code,
        seller_name,
        status,
        block_note,
        created_at,
    ) = raw_row[:16]

    return Order(
        order_id=str(order_id).strip(),
        order_number=str(order_number) if order_number is not None else "",
        client_code=str(client_code) if client_code is not None else "",
        client_name=str(client_name) if client_name is not None else "",
        product_name=str(product_name) if product_name is not None else "",
        unit=str(unit) if unit is not None else "UN",
        total_volume=_decimal(total_volume),
        remaining_volume=_decimal(remaining_volume),
        invoiced_volume=_decimal(invoiced_volume),
        total_value=_decimal(total_value, "0.00"),
        invoiced_value=_decimal(invoiced_value, "0.00"),
        seller_code=str(seller_code) if seller_code is not None else "",
        seller_name=str(seller_name) if seller_name is not None else "",
        status=OrderStatus(status) if status else OrderStatus.PENDING,
        created_at=str(created_at) if created_at is not None else "",
        block_note=_text(block_note),
    )


def serialize_order_line(order_id: str, line: OrderLine) -> list[object]:
    return [
        order_id,
        line.product_name,
        line.unit,
        line.total_volume,
        line.remaining_volume,
        line.invoiced_volume,
        line.unit_price,
        line.total_value,
    ]


def deserialize_order_line(raw_row: Sequence[object]) -> tuple[str, OrderLine]:
    order_id, product_name, unit, total, remaining, invoiced, unit_price, total_value = raw_row[:8]
    return str(order_id).strip(), OrderLine(
        product_name=str(product_name),
        unit=str(unit) if unit is not None else "UN",
        total_volume=_decimal(total),
        remaining_volume=_decimal(remaining),
        invoiced_volume=_decimal(invoiced),
        unit_price=_decimal(unit_price, "0.00"),
        total_value=_decimal(total_value, "0.00"),
    )


def serialize_request(record: BillingRequest) -> list[object]:
    """Flatten a request into the ``Requests`` column order.

    The public approval flags are written as the request reports them; a
    rejected request keeps the approvals to restore in ``ResumeCommercial``
    and ``ResumeCredit``.
    """

    state = record.state
    rejected = state if isinstance(state, Rejected) else None
    return [
        record.request_id,
        record.order_id,
        record.order_number,
        record.client_code,
        record.client_name,
        record.product_summary,
        record.unit,
        record.requested_volume,
        dump_items(record.requested_items),
        record.status.value,
        record.commercial_approved,
        record.credit_approved,
        rejected.blocked_by.value if rejected else None,
        rejected.reason if rejected else None,
        rejected.resume_commercial if rejected else False,
        rejected.resume_credit if rejected else False,
        record.created_by,
        record.created_at.isoformat(),
        record.deadline,
        record.notes.seller,
        record.notes.billing,
        record.notes.commercial,
        record.notes.credit,
        record.notes.invoice_issuance,
        record.approved_by,
        dump_items(record.approved_items),
        dump_items(record.declined_items) if record.declined_items else None,
        dump_items(record.fulfilled_items),
        record.invoiced_at.isoformat() if record.invoiced_at else None,
    ]


def _blocking_department(raw: object) -> Department:
    try:
        return Department(str(raw))
    except ValueError:
        log.warning("Unknown blocking department '%s'; treating as ADMIN", raw)
        return Department.ADMIN


def _deserialize_state(
    status: RequestStatus,
    *,
    commercial: bool,
    credit: bool,
    blocked_by: object,
    reason: object,
    resume_commercial: bool,
    resume_credit: bool,
    fulfilled: Optional[tuple[LineItem, ...]],
    invoiced_at: Optional[datetime],
) -> RequestState:
    if status is RequestStatus.UNDER_REVIEW:
        return UnderReview(commercial_approved=commercial, credit_approved=credit)
    if status is RequestStatus.READY_TO_INVOICE:
        return ReadyToInvoice()
    if status is RequestStatus.REJECTED:
        return Rejected(
            blocked_by=_blocking_department(blocked_by),
            reason=str(reason) if reason is not None else "",
            resume_commercial=resume_commercial,
            resume_credit=resume_credit,
        )
    if status is RequestStatus.INVOICED:
        return Invoiced(fulfilled_items=fulfilled or (), invoiced_at=invoiced_at or datetime.fromtimestamp(0, UTC))
    return Pending()


def deserialize_request(raw_row: Sequence[object]) -> BillingRequest:
    """Rebuild a :class:`BillingRequest` and its tagged state from a row."""

    (
        request_id,
        order_id,
        order_number,
        client_code,
        client_name,
        product_summary,
        unit,
        _requested_volume,
        requested_items,
        status,
        commercial,
        credit,
        blocked_by,
        reason,
        resume_commercial,
        resume_credit,
        created_by,
        created_at,
        deadline,
        seller_note,
        billing_note,
        commercial_note,
        credit_note,
        issuance_note,
        approved_by,
        approved_items,
        declined_items,
        fulfilled_items,
        invoiced_at,
    ) = raw_row[:29]

    state = _deserialize_state(
        RequestStatus(status) if status else RequestStatus.PENDING,
        commercial=_flag(commercial),
        credit=_flag(credit),
        blocked_by=blocked_by,
        reason=reason,
        resume_commercial=_flag(resume_commercial),
        resume_credit=_flag(resume_credit),
        fulfilled=load_items(fulfilled_items),
        invoiced_at=_timestamp(invoiced_at),
    )
    return BillingRequest(
        request_id=str(request_id),
        order_id=str(order_id).strip(),
        order_number=str(order_number) if order_number is not None else "",
        client_name=str(client_name) if client_name is not None else "",
        client_code=str(client_code) if client_code is not None else "",
        product_summary=str(product_summary) if product_summary is not None else "",
        unit=str(unit) if unit is not None else "UN",
        requested_items=load_items(requested_items) or (),
        created_by=str(created_by) if created_by is not None else "",
        created_at=_timestamp(created_at) or datetime.fromtimestamp(0, UTC),
        state=state,
        deadline=_text(deadline),
        notes=Notes(
            seller=_text(seller_note),
            billing=_text(billing_note),
            commercial=_text(commercial_note),
            credit=_text(credit_note),
            invoice_issuance=_text(issuance_note),
        ),
        approved_by=_text(approved_by),
        approved_items=load_items(approved_items),
        declined_items=load_items(declined_items) or (),
    )


def serialize_audit_event(record: AuditEvent) -> list[object]:
    return [
        record.event_id,
        record.order_id,
        record.timestamp.isoformat(),
        record.actor,
        record.department,
        record.action,
        record.detail,
        record.severity.value,
    ]


def deserialize_audit_event(raw_row: Sequence[object]) -> AuditEvent:
    event_id, order_id, timestamp, actor, department, action, detail, severity = raw_row[:8]
    return AuditEvent(
        event_id=str(event_id),
        order_id=str(order_id).strip(),
        timestamp=_timestamp(timestamp) or datetime.fromtimestamp(0, UTC),
        actor=str(actor) if actor is not None else "",
        department=str(department) if department is not None else "",
        action=str(action) if action is not None else "",
        detail=str(detail) if detail is not None else "",
        severity=Severity(severity) if severity else Severity.INFO,
    )


def serialize_user(record: UserRow) -> list[object]:
    return [record.user_id, record.name, record.email, record.department, record.manager_id]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    user_id, name, email, department, manager_id = raw_row[:5]
    return UserRow(
        user_id=str(user_id),
        name=str(name) if name is not None else "",
        email=_text(email),
        department=str(department) if department is not None else "",
        manager_id=_text(manager_id),
    )
