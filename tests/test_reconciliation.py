"""Unit tests for volume parsing and order-ledger reconciliation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import build_order
from cropflow import reconciliation
from cropflow.constants import OrderStatus
from cropflow.errors import ValidationError
from cropflow.models import LineItem, OrderLine


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("40", Decimal("40")),
        ("10,5", Decimal("10.5")),
        ("10.5", Decimal("10.5")),
        ("1.000,50", Decimal("1000.50")),
        ("1,000.50", Decimal("1000.50")),
        (" 7 ", Decimal("7")),
        (12, Decimal("12")),
        (Decimal("3.25"), Decimal("3.25")),
    ],
)
def test_parse_decimal_accepts_both_separators(raw, expected):
    """Either comma or dot may be the decimal separator."""

    assert reconciliation.parse_decimal(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "NaN", "inf", True])
def test_parse_decimal_returns_none_for_garbage(raw):
    assert reconciliation.parse_decimal(raw) is None


@pytest.mark.parametrize("raw", ["0", "-5", "abc", None])
def test_parse_positive_volume_filters_non_positive(raw):
    assert reconciliation.parse_positive_volume(raw) is None


def test_summarize_single_item_uses_product_name():
    summary = reconciliation.summarize_items([LineItem("Soja", Decimal("40"), "TON")])

    assert summary.product_summary == "Soja"
    assert summary.total_volume == Decimal("40")
    assert summary.unit == "TON"


def test_omitted_items_lists_dropped_products():
    before = [LineItem("A", Decimal("1"), "UN"), LineItem("B", Decimal("2"), "UN")]
    after = [LineItem("a ", Decimal("1"), "UN")]

    assert [item.product_name for item in reconciliation.omitted_items(before, after)] == ["B"]


def test_unit_price_for_missing_product_is_zero(caplog):
    """Unknown products price at zero and leave a warning behind."""

    order = build_order(product="Soja", unit_price="12.5")

    assert reconciliation.unit_price_for(order, "  SOJA ") == Decimal("12.5")
    with caplog.at_level("WARNING", logger="cropflow"):
        assert reconciliation.unit_price_for(order, "Trigo") == Decimal("0")
    assert "No catalog price" in caplog.text


def test_select_fulfilled_items_ignores_unknown_products(caplog):
    candidates = [LineItem("Soja", Decimal("40"), "TON"), LineItem("Milho", Decimal("5"), "SC")]

    with caplog.at_level("WARNING", logger="cropflow"):
        fulfilled = reconciliation.select_fulfilled_items(candidates, {"Soja": "39", "Trigo": "1"})

    assert fulfilled == (LineItem("Soja", Decimal("39"), "TON"),)
    assert "trigo" in caplog.text


@pytest.mark.parametrize(
    "remaining,invoiced,expected",
    [
        ("60", "40", OrderStatus.PARTIALLY_INVOICED),
        ("0.5", "99.5", OrderStatus.FINALIZED),
        ("0", "100", OrderStatus.FINALIZED),
        ("100", "0", OrderStatus.PENDING),
    ],
)
def test_derive_order_status_uses_unit_tolerance(remaining, invoiced, expected):
    assert reconciliation.derive_order_status(Decimal(remaining), Decimal(invoiced)) is expected


def test_apply_invoice_debits_order_and_catalog():
    """Scenario: invoicing 40 of 100 leaves 60 and marks the order partial."""

    order = build_order(total="100", unit_price="10")
    updated, delta = reconciliation.apply_invoice(order, [LineItem("Soja", Decimal("40"), "TON")])

    assert updated.remaining_volume == Decimal("60")
    assert updated.invoiced_volume == Decimal("40")
    assert updated.invoiced_value == Decimal("400")
    assert updated.status is OrderStatus.PARTIALLY_INVOICED
    assert updated.items[0].remaining_volume == Decimal("60")
    assert updated.items[0].invoiced_volume == Decimal("40")
    assert delta.volume == Decimal("40")
    assert delta.value == Decimal("400")
    assert reconciliation.ledger_is_consistent(updated)


def test_select_fulfilled_items_caps_at_approved_volume(caplog):
    candidates = [LineItem("Soja", Decimal("40"), "TON")]

    with caplog.at_level("WARNING", logger="cropflow"):
        fulfilled = reconciliation.select_fulfilled_items(candidates, {"Soja": "250"})

    assert fulfilled == (LineItem("Soja", Decimal("40"), "TON"),)
    assert "capping" in caplog.text


def test_cap_to_available_serves_items_in_order():
    items = [
        LineItem("Soja", Decimal("30"), "TON"),
        LineItem("Milho", Decimal("30"), "TON"),
        LineItem("Trigo", Decimal("5"), "TON"),
    ]

    capped = reconciliation.cap_to_available(items, Decimal("40"))

    assert capped == (LineItem("Soja", Decimal("30"), "TON"), LineItem("Milho", Decimal("10"), "TON"))
    assert reconciliation.cap_to_available(items, Decimal("0")) == ()


def test_apply_invoice_refuses_to_overdraw_the_order():
    """The debit can never exceed what is left on the order."""

    order = build_order(total="100", remaining="10", invoiced="90")

    with pytest.raises(ValidationError, match="exceeds remaining balance"):
        reconciliation.apply_invoice(order, [LineItem("Soja", Decimal("10.4"), "TON")])

    capped = reconciliation.cap_to_available([LineItem("Soja", Decimal("10.4"), "TON")], order.remaining_volume)
    updated, delta = reconciliation.apply_invoice(order, capped)
    assert delta.volume == Decimal("10")
    assert updated.remaining_volume == Decimal("0")
    assert updated.invoiced_volume == Decimal("100")
    assert updated.status is OrderStatus.FINALIZED
    assert reconciliation.ledger_is_consistent(updated)


def test_apply_invoice_prices_each_line_from_catalog():
    lines = (
        OrderLine("Soja", "TON", Decimal("50"), Decimal("50"), Decimal("0"), Decimal("10"), Decimal("500")),
        OrderLine("Milho", "SC", Decimal("50"), Decimal("50"), Decimal("0"), Decimal("2"), Decimal("100")),
    )
    order = build_order(total="100", lines=lines)
    updated, delta = reconciliation.apply_invoice(
        order,
        [LineItem("Soja", Decimal("5"), "TON"), LineItem("Milho", Decimal("10"), "SC")],
    )

    assert delta.value == Decimal("70")
    assert [line.remaining_volume for line in updated.items] == [Decimal("45"), Decimal("40")]


def test_apply_invoice_with_nothing_fulfilled_leaves_order_untouched():
    order = build_order()
    updated, delta = reconciliation.apply_invoice(order, [])

    assert updated is order
    assert delta.volume == Decimal("0")
    assert delta.lines == ()
