"""Command-line entry points for the Warung POS toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into business-layer calls and rendering results as
plain text. Keeping the CLI thin lets tests and alternative front-ends reuse
the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .aggregation import DashboardSnapshot, weekday_formatter
from .alerts import LowStockAlert
from .constants import PaymentMethod
from .dashboard import DashboardHost


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
        prog="warung-cli",
        description="Command-line tools for the Warung POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory when omitted).",
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
    """Declare mutating CLI commands such as sales and stock updates."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "set-stock": register_set_stock_command(subparsers),
        "fix-role": register_fix_role_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as the dashboard."""
    specs = {
        "dashboard": register_dashboard_command(subparsers),
        "products": register_products_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--min-stock-alert", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Append a transaction to the log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", type=int, required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Overwrite the stock level of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--stock", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_fix_role_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``fix-role``."""
    name = "fix-role"
    help_text = "Force the stored profile role to owner."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_fix_role)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display today's sales, the weekly series and stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--at",
            type=datetime.fromisoformat,
            default=None,
            help="Compute the dashboard as of this ISO timestamp instead of now.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products with their stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else None
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


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


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        total_amount=args.amount,
        payment_method=PaymentMethod(args.method),
    )


def build_dashboard_host(context: core_logic.RuntimeContext, at: Optional[datetime] = None) -> DashboardHost:
    """Compose a dashboard host over the context's workbook and channel."""
    kwargs = {}
    if at is not None:
        kwargs["clock"] = lambda: at
    return DashboardHost(
        core_logic.WorkbookRecordStore(context),
        context.events,
        weekday_label=weekday_formatter(context.settings.weekday_labels),
        strict=context.settings.strict_validation,
        **kwargs,
    )


def render_snapshot(snapshot: DashboardSnapshot, alert: Optional[LowStockAlert] = None) -> str:
    """Render a snapshot as plain text lines for the terminal."""
    methods = snapshot.today_method_totals
    lines = [
        f"Today's sales:      {snapshot.today_sales}",
        f"This month's sales: {snapshot.month_sales}",
        f"Transactions:       {snapshot.total_transactions}",
        f"Low stock products: {snapshot.low_stock_count}",
        f"Today by method:    cash={methods.cash} qris={methods.qris} debt={methods.debt}",
        "Last 7 days:",
    ]
    lines.extend(f"  {entry.label:<4} {entry.sales_total}" for entry in snapshot.seven_day_series)
    if alert is not None and alert.visible:
        lines.append(alert.message())
    return "\n".join(lines)


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        stock=args.stock,
        min_stock_alert=args.min_stock_alert,
    )
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.record_transaction(context, translate_sale(args))
    return 0


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.set_product_stock(context, args.product_id, args.stock)
    return 0


def run_fix_role(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    profile = core_logic.force_owner_role(context)
    print(f"Role for {profile.warung_id} set to {profile.role}.")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Compute one dashboard snapshot and print it."""
    host = build_dashboard_host(context, getattr(args, "at", None))
    snapshot = host.activate()
    try:
        print(render_snapshot(snapshot, host.alert))
    finally:
        host.deactivate()
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.product_name}\t{product.stock}\t(min {product.min_stock_alert})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
