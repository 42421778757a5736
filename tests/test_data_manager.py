"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from conftest import FIXED_MOMENT, build_order, build_request
from cropflow import data_manager, state_machine
from cropflow.constants import Department, RequestStatus, Severity
from cropflow.models import AuditEvent
from cropflow.state_machine import ItemDecision, ItemDraft


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery walks up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=cropflow_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "CompanyName") == "Agro Test"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths_and_defaults(config_factory):
    """Relative DataFile entries anchor at the config; [Workflow] is optional."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.volume_tolerance == Decimal("1")
    assert settings.audit_merge_window_seconds == 2.0


def test_parse_settings_reads_workflow_section(config_factory):
    bundle = config_factory(workflow={"tolerance": "0.5", "window": "5"})
    settings = data_manager.parse_settings(data_manager.read_config(bundle.config_path))

    assert settings.volume_tolerance == Decimal("0.5")
    assert settings.audit_merge_window_seconds == 5.0


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)

    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(data_manager.SHEET_COLUMNS) <= set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_and_refresh_round_trip_an_order(master_workbook_path):
    """Orders and their catalog lines survive a save and reload."""

    workbook = data_manager.open_workbook(master_workbook_path)
    order = build_order(order_id="P7", total="100", remaining="60", invoiced="40", unit_price="12.5")
    data_manager.upsert_order(workbook, order)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = list(data_manager.iter_orders(data_manager.refresh_workbook(master_workbook_path)))

    assert reloaded == [order]


def test_upsert_order_replaces_row_and_catalog(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.upsert_order(workbook, build_order(order_id="P1"))
    data_manager.upsert_order(workbook, build_order(order_id="P1", remaining="10"))

    orders = list(data_manager.iter_orders(workbook))
    catalog_rows = list(workbook[data_manager.ORDER_ITEMS_SHEET].iter_rows(min_row=2, values_only=True))

    assert len(orders) == 1
    assert orders[0].remaining_volume == Decimal("10")
    assert len(catalog_rows) == 1


def test_request_round_trip_preserves_tagged_state(master_workbook_path):
    """A rejected request keeps its blocker, reason, and approvals to restore."""

    workbook = data_manager.open_workbook(master_workbook_path)
    request = state_machine.submit_for_review(
        build_request(),
        department=Department.BILLING,
        items=[ItemDraft("Soja", "10", note="bags"), ItemDraft("Milho", "20", unit="SC")],
        deadline="15 days",
        note="urgent",
    )
    request = state_machine.approve_itemized(
        request, decisions=[ItemDecision("Milho", False, "no stock")], approver="Caio"
    )
    request = state_machine.reject(request, department=Department.CREDIT, reason="limit exceeded")

    data_manager.upsert_request(workbook, request)
    data_manager.save_workbook(workbook, master_workbook_path)
    [loaded] = data_manager.iter_requests(data_manager.open_workbook(master_workbook_path))

    assert loaded == request
    assert loaded.status is RequestStatus.REJECTED
    assert loaded.state.resume_commercial is True


def test_invoiced_request_round_trip(master_workbook_path, ready_to_invoice):
    workbook = data_manager.open_workbook(master_workbook_path)
    invoiced = state_machine.invoice(
        ready_to_invoice,
        department=Department.BILLING,
        fulfilled_volumes={"Soja": "39.5"},
        invoiced_at=FIXED_MOMENT,
    )
    data_manager.upsert_request(workbook, invoiced)

    [loaded] = data_manager.iter_requests(workbook)
    assert loaded == invoiced


def test_locate_row_and_delete_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for order_id in ("P1", "P2", "P1"):
        workbook[data_manager.AUDIT_LOG_SHEET].append(
            ["E", order_id, FIXED_MOMENT.isoformat(), "a", "ADMIN", "x", "", "INFO"]
        )

    assert data_manager.locate_row(workbook, data_manager.AUDIT_LOG_SHEET, "OrderID", "P2") == 3
    assert data_manager.delete_rows(workbook, data_manager.AUDIT_LOG_SHEET, "OrderID", "P1") == 2
    assert [e.order_id for e in data_manager.iter_audit_events(workbook)] == ["P2"]


def test_locate_row_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.ORDERS_SHEET, "Nope", "x")


def test_audit_events_filter_by_order(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    event = AuditEvent("E1", "P1", FIXED_MOMENT, "Ana", "VENDEDOR", "Request Created", "40 TON", Severity.INFO)
    data_manager.append_audit_event(workbook, event)
    data_manager.append_audit_event(workbook, AuditEvent("E2", "P2", FIXED_MOMENT, "Bia", "ADMIN", "x", "", Severity.ERROR))

    assert list(data_manager.iter_audit_events(workbook, "P1")) == [event]


def test_naive_timestamps_are_read_as_utc(master_workbook_path):
    """Excel date cells have no timezone; they are interpreted as UTC."""

    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[data_manager.AUDIT_LOG_SHEET].append(
        ["E1", "P1", datetime(2024, 3, 1, 12, 0), "a", "ADMIN", "x", "", "ALERTA"]
    )

    [event] = data_manager.iter_audit_events(workbook)
    assert event.timestamp == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    assert event.severity is Severity.WARNING


def test_users_round_trip(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    user = data_manager.UserRow("u1", "Ana", "ana@example.com", "VENDEDOR", "u9")
    data_manager.append_user(workbook, user)

    assert list(data_manager.iter_users(workbook)) == [user]


def test_unknown_blocking_department_falls_back_to_admin(master_workbook_path, under_review):
    workbook = data_manager.open_workbook(master_workbook_path)
    blocked = state_machine.reject(under_review, department=Department.CREDIT, reason="x")
    row = data_manager.serialize_request(blocked)
    row[data_manager.SHEET_COLUMNS[data_manager.REQUESTS_SHEET].index("BlockedBy")] = "JURIDICO"
    workbook[data_manager.REQUESTS_SHEET].append(row)

    [loaded] = data_manager.iter_requests(workbook)
    assert loaded.blocked_by is Department.ADMIN


def test_workbook_saved_by_openpyxl_has_bold_headers(master_workbook_path):
    sheet = openpyxl.load_workbook(master_workbook_path)[data_manager.REQUESTS_SHEET]
    assert sheet.cell(row=1, column=1).value == "RequestID"
    assert sheet.cell(row=1, column=1).font.bold
