"""Volume reconciliation between billing requests and the order ledger.

Two moments touch volumes. At submission the request's cached aggregate
volume and product summary are recomputed from the submitted items; the order
is left alone. At invoicing the fulfilled items are priced against the order's
catalog and debited from its balance. Everything here is pure: callers own
locking and persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Sequence

from . import log
from .constants import DEFAULT_VOLUME_TOLERANCE, OrderStatus
from .errors import ValidationError
from .models import LineItem, Order, OrderLine

ZERO = Decimal("0")


@dataclass(frozen=True)
class ItemSummary:
    """Aggregate view of a list of line items, cached on the request."""

    total_volume: Decimal
    product_summary: str
    unit: str


@dataclass(frozen=True)
class LineDebit:
    """Priced fulfilment of one line item."""

    product_name: str
    volume: Decimal
    unit_price: Decimal
    value: Decimal


@dataclass(frozen=True)
class LedgerDelta:
    """What one invoice took from an order."""

    volume: Decimal
    value: Decimal
    lines: tuple[LineDebit, ...]


def parse_decimal(raw: object) -> Optional[Decimal]:
    """Parse a user-supplied quantity into a :class:`~decimal.Decimal`.

    Either ``,`` or ``.`` is accepted as decimal separator. When both appear,
    the right-most one is the decimal separator and the other is treated as a
    thousands separator, so ``"1.000,50"`` and ``"1,000.50"`` both parse to
    ``1000.50``.

    Args:
        raw (object): String, number, or ``None``.

    Returns:
        Decimal | None: The parsed value, or ``None`` when ``raw`` is blank,
            not numeric, or not finite.
    """

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, (int, float)):
        raw = str(raw)

    text = str(raw).strip().replace(" ", "")
    if not text:
        return None

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def parse_positive_volume(raw: object) -> Optional[Decimal]:
    """Return the parsed volume when strictly positive, otherwise ``None``."""

    value = parse_decimal(raw)
    if value is None or value <= ZERO:
        return None
    return value


def format_volume(volume: Decimal) -> str:
    """Render a volume without exponent or trailing zeros (``40.0`` -> ``40``)."""

    normalized = volume.normalize()
    return format(normalized, "f")


def normalize_product_key(name: str) -> str:
    return " ".join(name.split()).casefold()


def summarize_items(items: Sequence[LineItem]) -> ItemSummary:
    """Compute the aggregate volume, display summary, and unit of ``items``.

    A single item is summarised by its product name; several items become
    ``"Prod A: 10 | Prod B: 20"``. The unit is shared when all items agree and
    ``"Mix"`` otherwise.
    """

    total = sum((item.volume for item in items), ZERO)
    if len(items) == 1:
        summary = items[0].product_name
    else:
        summary = " | ".join(f"{item.product_name}: {format_volume(item.volume)}" for item in items)
    units = {item.unit for item in items}
    unit = units.pop() if len(units) == 1 else "Mix"
    return ItemSummary(total_volume=total, product_summary=summary, unit=unit)


def omitted_items(before: Sequence[LineItem], after: Sequence[LineItem]) -> tuple[LineItem, ...]:
    """Items of ``before`` whose product no longer appears in ``after``."""

    kept = {normalize_product_key(item.product_name) for item in after}
    return tuple(item for item in before if normalize_product_key(item.product_name) not in kept)


def find_order_line(order: Order, product_name: str) -> Optional[OrderLine]:
    key = normalize_product_key(product_name)
    for line in order.items:
        if normalize_product_key(line.product_name) == key:
            return line
    return None


def unit_price_for(order: Order, product_name: str) -> Decimal:
    """Look up the unit price of ``product_name`` in the order catalog (0 when absent)."""

    line = find_order_line(order, product_name)
    if line is None:
        log.warning(
            "No catalog price for product '%s' on order '%s'; pricing at zero",
            product_name,
            order.order_id,
        )
        return ZERO
    return line.unit_price


def select_fulfilled_items(
    candidates: Sequence[LineItem],
    fulfilled_volumes: Mapping[str, object],
) -> tuple[LineItem, ...]:
    """Pair each candidate item with the volume actually fulfilled.

    Items whose fulfilled volume is missing, unparseable, or not positive are
    left out of the result instead of failing the invoice; partial stock
    availability is routine. A fulfilled volume above the item's approved
    volume is capped at the approved volume. Volumes keyed by a product that
    is not among ``candidates`` are ignored.

    Args:
        candidates (Sequence[LineItem]): Items the request is allowed to
            invoice.
        fulfilled_volumes (Mapping[str, object]): Raw fulfilled volume per
            product name.

    Returns:
        tuple[LineItem, ...]: Fulfilled items in candidate order.
    """

    by_key = {normalize_product_key(name): raw for name, raw in fulfilled_volumes.items()}
    known = {normalize_product_key(item.product_name) for item in candidates}
    for unknown in sorted(set(by_key) - known):
        log.warning("Ignoring fulfilled volume for product '%s' not in the request", unknown)

    fulfilled = []
    for item in candidates:
        raw = by_key.get(normalize_product_key(item.product_name))
        volume = parse_positive_volume(raw)
        if volume is None:
            log.info("Excluding '%s' from fulfilment (volume=%r)", item.product_name, raw)
            continue
        if volume > item.volume:
            log.warning(
                "Fulfilled volume %s for '%s' exceeds the approved %s; capping",
                volume,
                item.product_name,
                item.volume,
            )
            volume = item.volume
        fulfilled.append(replace(item, volume=volume))
    return tuple(fulfilled)


def cap_to_available(items: Sequence[LineItem], available: Decimal) -> tuple[LineItem, ...]:
    """Shrink ``items`` so their total never exceeds ``available``.

    Items are served in order: the first ones keep their full volume, the one
    crossing the limit is cut down, and any after it are dropped. Several open
    requests may together exceed an order, so the last one invoiced takes only
    what is left.
    """

    left = max(available, ZERO)
    capped = []
    for item in items:
        if left <= ZERO:
            log.warning("Dropping '%s' from fulfilment: order balance exhausted", item.product_name)
            continue
        if item.volume > left:
            log.warning(
                "Fulfilled volume %s for '%s' exceeds the order balance %s; capping",
                item.volume,
                item.product_name,
                left,
            )
            item = replace(item, volume=left)
        capped.append(item)
        left -= item.volume
    return tuple(capped)


def derive_order_status(
    remaining_volume: Decimal,
    invoiced_volume: Decimal,
    *,
    tolerance: Decimal = DEFAULT_VOLUME_TOLERANCE,
) -> OrderStatus:
    if remaining_volume < tolerance:
        return OrderStatus.FINALIZED
    if invoiced_volume > ZERO:
        return OrderStatus.PARTIALLY_INVOICED
    return OrderStatus.PENDING


def price_items(order: Order, items: Iterable[LineItem]) -> tuple[LineDebit, ...]:
    debits = []
    for item in items:
        price = unit_price_for(order, item.product_name)
        debits.append(
            LineDebit(
                product_name=item.product_name,
                volume=item.volume,
                unit_price=price,
                value=item.volume * price,
            )
        )
    return tuple(debits)


def apply_invoice(
    order: Order,
    fulfilled_items: Sequence[LineItem],
    *,
    tolerance: Decimal = DEFAULT_VOLUME_TOLERANCE,
) -> tuple[Order, LedgerDelta]:
    """Debit ``fulfilled_items`` from ``order`` and re-derive its status.

    ``fulfilled_items`` must already fit the order balance (see
    :func:`cap_to_available`), so ``invoiced_volume + remaining_volume`` stays
    equal to ``total_volume``. Catalog lines are debited alongside the order
    totals. An empty ``fulfilled_items`` leaves the order untouched.

    Returns:
        tuple[Order, LedgerDelta]: The updated order and the applied delta.

    Raises:
        ValidationError: If the fulfilled total exceeds the order balance.
    """

    debits = price_items(order, fulfilled_items)
    volume = sum((debit.volume for debit in debits), ZERO)
    value = sum((debit.value for debit in debits), ZERO)
    delta = LedgerDelta(volume=volume, value=value, lines=debits)
    if not debits:
        return order, delta
    if volume > order.remaining_volume:
        raise ValidationError(
            f"fulfilled volume {volume} exceeds remaining balance {order.remaining_volume} of order '{order.order_id}'"
        )

    remaining = order.remaining_volume - volume
    invoiced = order.invoiced_volume + volume
    updated = replace(
        order,
        remaining_volume=remaining,
        invoiced_volume=invoiced,
        invoiced_value=order.invoiced_value + value,
        status=derive_order_status(remaining, invoiced, tolerance=tolerance),
        items=_debit_catalog(order.items, debits),
    )
    return updated, delta


def _debit_catalog(lines: tuple[OrderLine, ...], debits: Sequence[LineDebit]) -> tuple[OrderLine, ...]:
    taken: dict[str, Decimal] = {}
    for debit in debits:
        key = normalize_product_key(debit.product_name)
        taken[key] = taken.get(key, ZERO) + debit.volume

    updated = []
    for line in lines:
        volume = taken.get(normalize_product_key(line.product_name))
        if volume is None:
            updated.append(line)
            continue
        updated.append(
            replace(
                line,
                remaining_volume=max(line.remaining_volume - volume, ZERO),
                invoiced_volume=line.invoiced_volume + volume,
            )
        )
    return tuple(updated)


def ledger_is_consistent(order: Order, *, tolerance: Decimal = DEFAULT_VOLUME_TOLERANCE) -> bool:
    """Check the order balance invariants within ``tolerance``."""

    if order.remaining_volume < ZERO or order.remaining_volume > order.total_volume:
        return False
    if abs(order.invoiced_volume + order.remaining_volume - order.total_volume) >= tolerance:
        return False
    finalized = order.status is OrderStatus.FINALIZED
    return finalized == (order.remaining_volume < tolerance)


__all__ = [
    "ItemSummary",
    "LineDebit",
    "LedgerDelta",
    "parse_decimal",
    "parse_positive_volume",
    "format_volume",
    "normalize_product_key",
    "summarize_items",
    "omitted_items",
    "find_order_line",
    "unit_price_for",
    "select_fulfilled_items",
    "cap_to_available",
    "derive_order_status",
    "price_items",
    "apply_invoice",
    "ledger_is_consistent",
]
