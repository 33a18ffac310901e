"""Command-line entry points for the goods-receipt staging engine.

Every invocation opens the staging session of one branch, recovers the stored
draft (unless ``--fresh`` is given), runs one sub-command against it and
exits. The draft store saves after each change, so a receipt can be built up
over several invocations and committed at the end. Orchestration here is
limited to argparse wiring and translating arguments into session calls.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, workbook_backend
from .constants import DiscountMode, PaymentMethod, PaymentType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.StagingSession, argparse.Namespace], int]


def amount(raw: str) -> Decimal:
    """argparse ``type`` for money and quantities."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-cli",
        description="Stage and commit goods receipts against the receipts workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument("--branch", default=None, help="Branch to stage for (defaults to [Defaults] BranchID).")
    parser.add_argument("--role", default=None, help="Operator role (defaults to [Defaults] Role).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Decline the stored draft and start an empty receipt.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    line_specs = register_line_commands(subparsers)
    receipt_specs = register_receipt_commands(subparsers)
    return build_command_table([*line_specs.values(), *receipt_specs.values()])


def register_line_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that add, edit or remove draft lines."""
    specs = {
        "scan": register_scan_command(subparsers),
        "search": register_search_command(subparsers),
        "add": register_add_command(subparsers),
        "new-item": register_new_item_command(subparsers),
        "set-qty": register_edit_command(
            "set-qty", "Change the quantity of a line.", "quantity", run_set_quantity
        ),
        "set-import-price": register_edit_command(
            "set-import-price", "Change the import price of a line.", "price", run_set_import_price
        ),
        "set-retail-price": register_edit_command(
            "set-retail-price", "Set the retail price of a line by hand.", "price", run_set_retail_price
        ),
        "set-wholesale-price": register_edit_command(
            "set-wholesale-price", "Set the wholesale price of a line.", "price", run_set_wholesale_price
        ),
        "remove": register_remove_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_receipt_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands acting on the receipt as a whole."""
    specs = {
        "supplier": register_supplier_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "discount": register_discount_command(subparsers),
        "show": register_show_command(subparsers),
        "commit": register_commit_command(subparsers),
        "discard": register_discard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_scan_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``scan``."""
    name = "scan"
    help_text = "Add the item matching a barcode or SKU."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("code")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_scan)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""
    name = "search"
    help_text = "List catalog items whose name or SKU contains a term."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("term", nargs="?", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_search)


def register_add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add``."""
    name = "add"
    help_text = "Add a catalog item to the draft by its part id."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add)


def register_new_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-item``."""
    name = "new-item"
    help_text = "Create a catalog item and add it to the draft."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--import-price", type=amount, required=True)
        parser.add_argument("--quantity", type=amount, default=Decimal(1))
        parser.add_argument("--retail-price", type=amount, default=None)
        parser.add_argument("--wholesale-price", type=amount, default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_item)


def register_edit_command(
    name: str,
    help_text: str,
    value_name: str,
    executor: Callable[[core_logic.StagingSession, argparse.Namespace], int],
) -> CommandSpec:
    """Build the spec of a ``set-*`` command taking an item id and a value."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("item_id")
        parser.add_argument("value", type=amount, metavar=value_name.upper())
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=executor)


def register_remove_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove``."""
    name = "remove"
    help_text = "Remove a line from the draft."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("item_id")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove)


def register_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier``."""
    name = "supplier"
    help_text = "Choose the draft's supplier, or list suppliers when no id is given."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("supplier_id", nargs="?", default=None)
        parser.add_argument("--clear", action="store_true", help="Remove the supplier from the draft.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Create a supplier and choose it for the draft."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_discount_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``discount``."""
    name = "discount"
    help_text = "Set the receipt discount as an amount or a percentage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("value", type=amount)
        parser.add_argument("--percent", action="store_true", help="Read VALUE as a percentage of the subtotal.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_discount)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display the draft lines and totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_commit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``commit``."""
    name = "commit"
    help_text = "Commit the draft as a goods receipt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in PaymentType],
            default=None,
        )
        parser.add_argument("--paid", type=amount, default=None, help="Amount paid now for partial payments.")
        parser.add_argument("--note", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_commit)


def register_discard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``discard``."""
    name = "discard"
    help_text = "Throw the draft away."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_discard)


def load_runtime_context(config_path: Optional[Path] = None) -> workbook_backend.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations."""
    context = workbook_backend.load_runtime_context(config_path)
    workbook_backend.ensure_schema_version(context)
    return context


def open_session(
    context: workbook_backend.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.StagingSession:
    """Build the session for the requested branch and settle draft recovery."""
    session = workbook_backend.build_session(context, getattr(args, "branch", None))
    offered = session.open()
    if offered is not None:
        if getattr(args, "fresh", False):
            session.resolve_recovery(False)
            print("Stored draft discarded; starting a new receipt.")
        else:
            session.resolve_recovery(True)
    if getattr(args, "role", None) is None:
        args.role = context.settings.default_role
    return session


def dispatch_command(
    session: core_logic.StagingSession,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(session, args)


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


def require_line(session: core_logic.StagingSession, item_id: str) -> None:
    """Refuse edits of lines that are not on the draft."""
    if item_id not in session.ledger:
        raise core_logic.MissingReferenceError(f"No line for item '{item_id}' on the draft")


def print_warnings(warnings: Iterable[str]) -> None:
    for message in warnings:
        print(f"Warning: {message}")


def translate_new_item(args: argparse.Namespace) -> core_logic.NewItemSpec:
    """Translate CLI args into a new-item request."""
    return core_logic.NewItemSpec(
        name=args.name,
        import_price=args.import_price,
        quantity=args.quantity,
        retail_price=args.retail_price,
        wholesale_price=args.wholesale_price,
        sku=args.sku,
        category=args.category,
    )


def translate_supplier(args: argparse.Namespace) -> core_logic.SupplierSpec:
    """Translate CLI args into a new-supplier request."""
    return core_logic.SupplierSpec(
        name=args.name,
        phone=args.phone,
        address=args.address,
        note=args.note,
    )


def run_scan(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Add the scanned item to the draft."""
    outcome = session.scan(args.code)
    print(f"{outcome.value.capitalize()}: {args.code}")
    return 0


def run_search(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Print matching catalog items with their prices at the session's branch."""
    for item in session.search(args.term):
        cost = item.cost_price.get(session.location_id, 0)
        retail = item.retail_price.get(session.location_id, 0)
        print(f"{item.item_id}\t{item.sku}\t{item.name}\tcost={cost:,}\tretail={retail:,}")
    return 0


def run_add(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Add a catalog item by id."""
    match = next((item for item in session.catalog_items() if item.item_id == args.item_id), None)
    if match is None:
        raise core_logic.MissingReferenceError(f"Unknown part id: {args.item_id}")
    outcome = session.add_item(match)
    print(f"{outcome.value.capitalize()}: {match.name}")
    return 0


def run_new_item(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Create an item in the catalog and add it to the draft."""
    line = session.create_and_add_item(translate_new_item(args))
    print(f"Created {line.item_id} ({line.sku}) and added {line.quantity} to the draft.")
    return 0


def run_set_quantity(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    require_line(session, args.item_id)
    print_warnings(session.edit_quantity(args.item_id, args.value))
    return 0


def run_set_import_price(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    require_line(session, args.item_id)
    print_warnings(session.edit_import_price(args.item_id, args.value))
    return 0


def run_set_retail_price(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    require_line(session, args.item_id)
    session.edit_retail_price(args.item_id, args.value)
    return 0


def run_set_wholesale_price(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    require_line(session, args.item_id)
    session.edit_wholesale_price(args.item_id, args.value)
    return 0


def run_remove(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    require_line(session, args.item_id)
    session.remove_item(args.item_id)
    return 0


def run_supplier(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Choose, clear or list suppliers."""
    if args.clear:
        session.choose_supplier(None)
        return 0
    if args.supplier_id is None:
        for supplier in session.list_suppliers():
            marker = "*" if supplier.supplier_id == session.supplier_id else " "
            print(f"{marker} {supplier.supplier_id}\t{supplier.supplier_name}\t{supplier.phone or ''}")
        return 0
    known = {supplier.supplier_id for supplier in session.list_suppliers()}
    if args.supplier_id not in known:
        raise core_logic.MissingReferenceError(f"Unknown supplier id: {args.supplier_id}")
    session.choose_supplier(args.supplier_id)
    return 0


def run_add_supplier(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    supplier = session.create_supplier(translate_supplier(args))
    print(f"Created supplier {supplier.supplier_id}: {supplier.supplier_name}")
    return 0


def run_discount(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    mode = DiscountMode.PERCENT if args.percent else DiscountMode.AMOUNT
    session.set_discount(args.value, mode)
    return 0


def run_show(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Print the draft as a table followed by its totals."""
    if session.ledger.is_empty():
        print(f"Draft for {session.location_id} is empty.")
    for line in session.ledger:
        flag = " (manual)" if line.price_was_manually_set else ""
        print(
            f"{line.item_id}\t{line.display_name}\tqty={line.quantity}"
            f"\timport={line.import_unit_price:,}\tretail={line.retail_unit_price:,}{flag}"
            f"\twholesale={line.wholesale_unit_price:,}\tline={line.line_total:,}"
        )
    settlement = session.settlement()
    print(f"Supplier: {session.supplier_id or '-'}")
    print(f"Subtotal: {settlement.subtotal:,}")
    print(f"Discount: {session.resolved_discount():,}")
    print(f"Total: {settlement.total_amount:,}")
    return 0


def run_commit(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    """Apply payment choices and commit the draft."""
    if args.method is not None:
        session.choose_payment_method(PaymentMethod(args.method))
    if args.payment_type is not None:
        session.choose_payment_type(PaymentType(args.payment_type))
    if args.paid is not None:
        session.set_partial_amount(args.paid)
    request = session.commit(args.role, note=args.note)
    debt = max(0, request.total_amount - request.payment_info.paid_amount)
    print(f"Committed receipt {session.last_commit_reference}")
    print(f"Total: {request.total_amount:,}  Paid: {request.payment_info.paid_amount:,}  Debt: {debt:,}")
    return 0


def run_discard(session: core_logic.StagingSession, args: argparse.Namespace) -> int:
    session.discard()
    print("Draft discarded.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.PreconditionFailure, core_logic.MissingReferenceError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.CommitError):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.CreationError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        session = open_session(context, args)
        return dispatch_command(session, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
