"""Shared pytest fixtures and utilities for Cropflow tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cropflow import cli, constants, core_logic, data_manager, state_machine  # noqa: E402
from cropflow.constants import Department, OrderStatus  # noqa: E402
from cropflow.models import BillingRequest, Order, OrderLine  # noqa: E402
from cropflow.replicas import Repository, WorkbookStore  # noqa: E402
from cropflow.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_MOMENT = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n"
)
_WORKFLOW_TEMPLATE = (
    "\n[Workflow]\n"
    "VolumeTolerance = {tolerance}\n"
    "AuditMergeWindowSeconds = {window}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "cropflow_master.xlsx",
        users: Sequence[data_manager.UserRow] = (),
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, users=users, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Agro Test",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        workflow: dict[str, str] | None = None,
        users: Sequence[data_manager.UserRow] = (),
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", users=users)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            company_name=company_name,
            schema_version=schema_version,
        )
        if workflow is not None:
            text += _WORKFLOW_TEMPLATE.format(**workflow)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text, encoding="utf-8")
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, notifier=Mock(name="notifier"))
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------


def build_order(
    *,
    order_id: str = "P100",
    total: str = "100",
    remaining: str | None = None,
    invoiced: str = "0",
    product: str = "Soja",
    unit: str = "TON",
    unit_price: str = "10",
    lines: Sequence[OrderLine] | None = None,
) -> Order:
    """Assemble an order with a one-line catalog unless ``lines`` is given."""

    total_volume = Decimal(total)
    remaining_volume = Decimal(remaining) if remaining is not None else total_volume
    invoiced_volume = Decimal(invoiced)
    if lines is None:
        lines = (
            OrderLine(
                product_name=product,
                unit=unit,
                total_volume=total_volume,
                remaining_volume=remaining_volume,
                invoiced_volume=invoiced_volume,
                unit_price=Decimal(unit_price),
                total_value=total_volume * Decimal(unit_price),
            ),
        )
    return Order(
        order_id=order_id,
        order_number=f"N-{order_id}",
        client_code="C01",
        client_name="Fazenda Boa Vista",
        product_name=product,
        unit=unit,
        total_volume=total_volume,
        remaining_volume=remaining_volume,
        invoiced_volume=invoiced_volume,
        total_value=sum((line.total_value for line in lines), Decimal("0")),
        invoiced_value=Decimal("0"),
        seller_code="V01",
        seller_name="Ana",
        status=OrderStatus.PENDING,
        created_at="2024-03-01",
        items=tuple(lines),
    )


def build_request(order: Order | None = None, *, volume: str = "40", created_by: str = "Ana") -> BillingRequest:
    """Return a fresh ``Pending`` request against ``order``."""

    return state_machine.create_request(
        order or build_order(),
        request_id=f"req-{uuid.uuid4().hex[:8]}",
        volume=volume,
        created_by=created_by,
        created_at=FIXED_MOMENT,
        department=Department.SELLER,
    )


@pytest.fixture
def order() -> Order:
    return build_order()


@pytest.fixture
def pending_request(order: Order) -> BillingRequest:
    return build_request(order)


@pytest.fixture
def under_review(pending_request: BillingRequest) -> BillingRequest:
    """A request submitted with one item of 40 TON."""

    return state_machine.submit_for_review(
        pending_request,
        department=Department.BILLING,
        items=[state_machine.ItemDraft("Soja", "40")],
        deadline="30 days",
    )


@pytest.fixture
def ready_to_invoice(under_review: BillingRequest) -> BillingRequest:
    step = state_machine.approve_step(under_review, department=Department.COMMERCIAL)
    return state_machine.approve_step(step, department=Department.CREDIT)


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "cropflow_master.xlsx",
        company_name="Agro Test",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def notifier() -> Mock:
    return Mock(name="notifier")


@pytest.fixture
def workbook_store(master_workbook_path: Path) -> WorkbookStore:
    return WorkbookStore(data_manager.open_workbook(master_workbook_path), path=master_workbook_path)


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    workbook_store: WorkbookStore,
    notifier: Mock,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context over a real in-memory workbook store."""

    return core_logic.RuntimeContext(settings=settings, repository=Repository(workbook_store), notifier=notifier)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return cli.build_parser()


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")
