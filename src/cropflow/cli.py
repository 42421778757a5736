"""Command-line entry points for the Cropflow toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. The workbook is saved only after a command succeeds.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import Department, OrderStatus
from .errors import WorkflowError, WorkflowPermissionError
from .models import BillingRequest, LineItem, Order, OrderLine
from .reconciliation import format_volume, parse_decimal, summarize_items
from .state_machine import ItemDecision, ItemDraft, strip_block_tag

DEPARTMENT_CHOICES = [member.value for member in Department]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cropflow-cli",
        description="Billing-request workflow over the Cropflow master workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as approvals and invoices."""
    specs = {
        "add-order": register_add_order_command(subparsers),
        "create-request": register_create_request_command(subparsers),
        "submit": register_submit_command(subparsers),
        "approve": register_approve_command(subparsers),
        "reject": register_reject_command(subparsers),
        "unblock": register_unblock_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "purge-order": register_purge_order_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "orders": register_orders_command(subparsers),
        "requests": register_requests_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_actor_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", required=True, help="Name of the user performing the action.")
    parser.add_argument("--department", choices=DEPARTMENT_CHOICES, required=True)


def register_add_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-order``."""
    name = "add-order"
    help_text = "Register or replace an order in the Orders sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--order-number", required=True)
        parser.add_argument("--client-code", required=True)
        parser.add_argument("--client-name", required=True)
        parser.add_argument("--seller-code", default="")
        parser.add_argument("--seller-name", default="")
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            help="Catalog line as PRODUCT=VOLUME[:UNIT]@UNIT_PRICE (repeatable).",
        )
        parser.add_argument("--actor", default="system")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_order)


def register_create_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-request``."""
    name = "create-request"
    help_text = "Open a billing request against an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--volume", required=True)
        parser.add_argument("--note", default=None)
        parser.add_argument("--actor", required=True)
        parser.add_argument("--department", choices=DEPARTMENT_CHOICES, default=Department.SELLER.value)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_request)


def register_submit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``submit``."""
    name = "submit"
    help_text = "Send a pending request to Commercial and Credit review."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=[],
            help="Line item as PRODUCT=VOLUME[:UNIT][#NOTE] (repeatable).",
        )
        parser.add_argument("--deadline", required=True)
        parser.add_argument("--note", default=None)
        parser.add_argument("--actor", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_submit)


def register_approve_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``approve``."""
    name = "approve"
    help_text = "Record a Commercial or Credit approval."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument("--note", default=None)
        parser.add_argument("--accept", action="append", default=[], help="Product accepted (repeatable).")
        parser.add_argument(
            "--decline",
            action="append",
            default=[],
            help="Product declined as PRODUCT=REASON (repeatable, Commercial only).",
        )
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_approve)


def register_reject_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reject``."""
    name = "reject"
    help_text = "Block a request and notify the requester."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument("--reason", required=True)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reject)


def register_unblock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``unblock``."""
    name = "unblock"
    help_text = "Lift a block on a rejected request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument("--admin", action="store_true", help="Act with administrator rights.")
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_unblock)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Issue the invoice for an approved request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument(
            "--fulfilled",
            action="append",
            default=[],
            help="Shipped volume as PRODUCT=VOLUME (repeatable).",
        )
        parser.add_argument("--note", default=None)
        parser.add_argument("--actor", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_purge_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purge-order``."""
    name = "purge-order"
    help_text = "Delete an order with its requests and history (Admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--actor", required=True)
        parser.add_argument("--department", choices=DEPARTMENT_CHOICES, default=Department.ADMIN.value)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purge_order)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "Display orders and their balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--department",
            choices=DEPARTMENT_CHOICES,
            default=None,
            help="View orders as this department; VENDEDOR only sees its own.",
        )
        parser.add_argument("--actor", default=None, help="Seller name for the VENDEDOR view.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_requests_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``requests``."""
    name = "requests"
    help_text = "Display the billing requests of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_requests_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the audit history of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ----------------------------------------------------------------------
# Argument parsing helpers
# ----------------------------------------------------------------------
def parse_item_argument(raw: str) -> ItemDraft:
    """Parse ``PRODUCT=VOLUME[:UNIT][#NOTE]`` into an :class:`ItemDraft`.

    The volume is kept as text; the state machine validates it.

    Raises:
        ValueError: If the ``=`` separator is missing or the product is blank.
    """
    body, _, note = raw.partition("#")
    product, sep, quantity = body.rpartition("=")
    if not sep or not product.strip():
        raise ValueError(f"Invalid item '{raw}': expected PRODUCT=VOLUME[:UNIT][#NOTE]")
    volume, _, unit = quantity.partition(":")
    return ItemDraft(
        product_name=product.strip(),
        volume=volume.strip(),
        unit=unit.strip() or None,
        note=note.strip() or None,
    )


def parse_pair_argument(raw: str, what: str) -> tuple[str, str]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"Invalid {what} '{raw}': expected PRODUCT=VALUE")
    return key.strip(), value.strip()


def parse_order_line(raw: str) -> OrderLine:
    """Parse ``PRODUCT=VOLUME[:UNIT]@UNIT_PRICE`` into a fresh catalog line."""
    item_text, sep, price_raw = raw.rpartition("@")
    if not sep:
        raise ValueError(f"Invalid line '{raw}': expected PRODUCT=VOLUME[:UNIT]@UNIT_PRICE")
    item = parse_item_argument(item_text)
    volume = parse_decimal(item.volume)
    price = parse_decimal(price_raw)
    if volume is None or volume < 0 or price is None or price < 0:
        raise ValueError(f"Invalid line '{raw}': volume and price must be non-negative numbers")
    return OrderLine(
        product_name=item.product_name,
        unit=item.unit or "UN",
        total_volume=volume,
        remaining_volume=volume,
        invoiced_volume=Decimal("0"),
        unit_price=price,
        total_value=volume * price,
    )


# ----------------------------------------------------------------------
# Translators
# ----------------------------------------------------------------------
def translate_add_order(args: argparse.Namespace) -> Order:
    """Translate CLI args into a new :class:`Order`."""
    lines = tuple(parse_order_line(raw) for raw in args.lines)
    summary = summarize_items(
        [LineItem(product_name=line.product_name, volume=line.total_volume, unit=line.unit) for line in lines]
    )
    return Order(
        order_id=args.order_id,
        order_number=args.order_number,
        client_code=args.client_code,
        client_name=args.client_name,
        product_name=summary.product_summary,
        unit=summary.unit,
        total_volume=summary.total_volume,
        remaining_volume=summary.total_volume,
        invoiced_volume=Decimal("0"),
        total_value=sum((line.total_value for line in lines), Decimal("0")),
        invoiced_value=Decimal("0"),
        seller_code=args.seller_code,
        seller_name=args.seller_name,
        status=OrderStatus.PENDING,
        created_at=datetime.now(UTC).date().isoformat(),
        items=lines,
    )


def translate_create_request(args: argparse.Namespace) -> core_logic.CreateRequestCommand:
    """Translate CLI args into a create-request command object."""
    return core_logic.CreateRequestCommand(
        order_id=args.order_id,
        volume=args.volume,
        actor=args.actor,
        department=Department(args.department),
        seller_note=args.note,
    )


def translate_submit(args: argparse.Namespace) -> core_logic.SubmitForReviewCommand:
    """Translate CLI args into a submit-for-review command object."""
    return core_logic.SubmitForReviewCommand(
        request_id=args.request_id,
        items=[parse_item_argument(raw) for raw in args.items],
        deadline=args.deadline,
        actor=args.actor,
        note=args.note,
    )


def translate_approve(args: argparse.Namespace) -> core_logic.ApproveStepCommand:
    """Translate CLI args into an approve-step command object."""
    decisions: List[ItemDecision] = [ItemDecision(product_name=p.strip(), accepted=True) for p in args.accept]
    for raw in args.decline:
        product, reason = parse_pair_argument(raw, "decline")
        decisions.append(ItemDecision(product_name=product, accepted=False, reason=reason or None))
    return core_logic.ApproveStepCommand(
        request_id=args.request_id,
        department=Department(args.department),
        actor=args.actor,
        note=args.note,
        item_split=decisions or None,
    )


def translate_reject(args: argparse.Namespace) -> core_logic.RejectCommand:
    """Translate CLI args into a reject command object."""
    return core_logic.RejectCommand(
        request_id=args.request_id,
        department=Department(args.department),
        actor=args.actor,
        reason=args.reason,
    )


def translate_unblock(args: argparse.Namespace) -> core_logic.UnblockCommand:
    """Translate CLI args into an unblock command object."""
    return core_logic.UnblockCommand(
        request_id=args.request_id,
        department=Department(args.department),
        actor=args.actor,
        is_admin=args.admin,
    )


def translate_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    fulfilled = dict(parse_pair_argument(raw, "fulfilled volume") for raw in args.fulfilled)
    return core_logic.InvoiceCommand(
        request_id=args.request_id,
        fulfilled_volumes=fulfilled,
        actor=args.actor,
        note=args.note,
    )


def translate_purge_order(args: argparse.Namespace) -> core_logic.PurgeOrderCommand:
    """Translate CLI args into a purge-order command object."""
    return core_logic.PurgeOrderCommand(
        order_id=args.order_id,
        actor=args.actor,
        department=Department(args.department),
    )


# ----------------------------------------------------------------------
# Executors
# ----------------------------------------------------------------------
def _report_request(result: core_logic.TransitionResult) -> None:
    request = result.request
    if request is None:
        return
    print(f"{request.request_id}\t{request.status.value}\t{request.product_summary}")
    if not result.durable_ok:
        print("warning: saved locally only; the workbook write will be retried")


def run_add_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order registration workflow in the BLL."""
    order = translate_add_order(args)
    core_logic.register_order(context, order, actor=args.actor)
    print(f"{order.order_id}\t{order.status.value}\t{format_volume(order.remaining_volume)} {order.unit}")
    return 0


def run_create_request(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-request workflow via the BLL."""
    _report_request(core_logic.create_request(context, translate_create_request(args)))
    return 0


def run_submit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the submit-for-review workflow via the BLL."""
    _report_request(core_logic.submit_for_review(context, translate_submit(args)))
    return 0


def run_approve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the approve-step workflow via the BLL."""
    _report_request(core_logic.approve_step(context, translate_approve(args)))
    return 0


def run_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reject workflow via the BLL."""
    _report_request(core_logic.reject(context, translate_reject(args)))
    return 0


def run_unblock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the unblock workflow via the BLL."""
    _report_request(core_logic.unblock(context, translate_unblock(args)))
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice workflow via the BLL."""
    result = core_logic.invoice(context, translate_invoice(args))
    _report_request(result)
    if result.order is not None:
        order = result.order
        print(
            f"order {order.order_id}: remaining {format_volume(order.remaining_volume)}, "
            f"invoiced {format_volume(order.invoiced_volume)} ({order.status.value})"
        )
    return 0


def run_purge_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purge-order workflow via the BLL."""
    core_logic.purge_order(context, translate_purge_order(args))
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the visible orders with their balances."""
    department = Department(args.department) if args.department else None
    for order in core_logic.list_orders(context, department=department, actor=args.actor):
        print(
            f"{order.order_id}\t{order.order_number}\t{order.client_name}\t"
            f"{format_volume(order.remaining_volume)}/{format_volume(order.total_volume)} {order.unit}\t"
            f"{order.status.value}"
        )
    return 0


def _describe_request(request: BillingRequest) -> str:
    flags = f"C={'Y' if request.commercial_approved else 'N'} K={'Y' if request.credit_approved else 'N'}"
    reason = strip_block_tag(request.rejection_reason)
    suffix = f"\t{request.blocked_by.value}: {reason}" if request.blocked_by else ""
    return (
        f"{request.request_id}\t{request.status.value}\t{flags}\t"
        f"{format_volume(request.requested_volume)} {request.unit}\t{request.product_summary}{suffix}"
    )


def run_requests_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the requests of one order, newest first."""
    for request in core_logic.list_requests_for_order(context, args.order_id):
        print(_describe_request(request))
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the merged audit history of one order."""
    for event in core_logic.read_history(context, args.order_id):
        print(
            f"{event.timestamp.isoformat(timespec='seconds')}\t{event.severity.value}\t"
            f"{event.department}\t{event.actor}\t{event.action}\t{event.detail}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, WorkflowPermissionError):
        log.error("Permission denied: %s", error)
        return 4
    if isinstance(error, WorkflowError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)
    if context.repository.local.has_pending():
        log.warning("Some writes are still pending after saving the workbook")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
