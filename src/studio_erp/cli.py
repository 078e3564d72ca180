"""Command-line entry points for the Studio ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Executors are coroutines; :func:`main` runs the whole invocation
(session opening, dispatch) inside a single event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from decimal import InvalidOperation
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, set_console_level
from .constants import InvoiceStatus
from .errors import BusinessRuleViolation, RemoteStoreError, TenantScopeError
from .invoicing import LineItemDraft


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="studio-cli",
        description="Command-line tools for the Studio ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Echo informational log messages to stderr.",
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
    """Declare mutating CLI commands such as invoices and client deletes."""
    specs = {
        "add-client": register_add_client_command(subparsers),
        "delete-client": register_delete_client_command(subparsers),
        "add-project": register_add_project_command(subparsers),
        "archive-project": register_archive_project_command(subparsers),
        "new-invoice": register_new_invoice_command(subparsers),
        "mark-paid": register_mark_paid_command(subparsers),
        "set-status": register_set_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "refresh": register_refresh_command(subparsers),
        "clients": register_clients_command(subparsers),
        "projects": register_projects_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-client``."""
    name = "add-client"
    help_text = "Create a new client."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--city", default="")
        parser.add_argument("--no-taxes", action="store_true", help="Do not charge taxes by default.")
        parser.add_argument("--portal", action="store_true", help="Enable the client portal.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_client)


def register_delete_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-client``."""
    name = "delete-client"
    help_text = "Delete a client that no project or invoice references."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the deletion without prompting.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_client)


def register_add_project_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-project``."""
    name = "add-project"
    help_text = "Create a new project."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--client-id", default=None)
        parser.add_argument("--status-id", default=None)
        parser.add_argument("--type-id", dest="project_type_id", default=None)
        parser.add_argument("--deadline", default=None)
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_project)


def register_archive_project_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive-project``."""
    name = "archive-project"
    help_text = "Archive (or with --undo, unarchive) a project."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--project-id", required=True)
        parser.add_argument("--undo", action="store_true", help="Unarchive instead of archiving.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive_project)


def register_new_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-invoice``."""
    name = "new-invoice"
    help_text = "Create an invoice with its line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            nargs=3,
            action="append",
            metavar=("DESCRIPTION", "QUANTITY", "RATE"),
            default=[],
            help="Line item; repeat for several.",
        )
        parser.add_argument("--issue-date", default=None, help="ISO date (defaults to today).")
        parser.add_argument("--due-date", default=None, help="ISO date (defaults to payment terms).")
        parser.add_argument("--no-tps", action="store_true")
        parser.add_argument("--no-tvq", action="store_true")
        parser.add_argument(
            "--status",
            choices=[member.value for member in InvoiceStatus],
            default=InvoiceStatus.UNPAID.value,
        )
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_invoice)


def register_mark_paid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-paid``."""
    name = "mark-paid"
    help_text = "Mark an unpaid or overdue invoice as paid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_paid)


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Change the status of an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in InvoiceStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_refresh_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refresh``."""
    name = "refresh"
    help_text = "Reload every collection and report stale ones."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refresh)


def register_clients_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clients``."""
    name = "clients"
    help_text = "List clients alphabetically."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clients_report)


def register_projects_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``projects``."""
    name = "projects"
    help_text = "List active projects, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--archived", action="store_true", help="List archived projects instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_projects_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, most recently issued first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display income, outstanding, and expense totals for a year."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--year", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


async def dispatch_command(
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
    return await spec.execute(context, args)


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


def translate_add_client(args: argparse.Namespace) -> core_logic.ClientCommand:
    """Translate CLI args into a client command object."""
    return core_logic.ClientCommand(
        name=args.name,
        email=args.email,
        phone=args.phone,
        city=args.city,
        charge_taxes_by_default=not getattr(args, "no_taxes", False),
        portal_enabled=getattr(args, "portal", False),
    )


def translate_add_project(args: argparse.Namespace) -> core_logic.ProjectCommand:
    """Translate CLI args into a project command object."""
    return core_logic.ProjectCommand(
        name=args.name,
        client_id=args.client_id,
        status_id=args.status_id,
        project_type_id=args.project_type_id,
        deadline=args.deadline,
        notes=args.notes,
    )


def translate_new_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object.

    Omitted tax flags are left to the client's default; ``--no-tps`` and
    ``--no-tvq`` force the tax off.
    """
    try:
        drafts = [LineItemDraft.of(description, quantity, rate) for description, quantity, rate in args.items]
    except InvalidOperation as exc:
        raise BusinessRuleViolation("Line item quantity and rate must be numbers") from exc
    return core_logic.InvoiceCommand(
        line_items=drafts,
        client_id=args.client_id,
        issue_date=_parse_date(args.issue_date),
        due_date=_parse_date(args.due_date),
        apply_tps=False if args.no_tps else None,
        apply_tvq=False if args.no_tvq else None,
        status=args.status,
        notes=args.notes,
    )


async def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the client creation workflow in the BLL."""
    client = await core_logic.save_client(context, translate_add_client(args))
    print(f"Created client {client.name} ({client.id})")
    return 0


async def run_delete_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Check the guard, ask for confirmation, then delete."""
    check = core_logic.check_client_deletion(context, args.client_id)
    if not check.allowed:
        print(check.message)
        return 2
    if not args.yes:
        answer = await asyncio.to_thread(input, f"Delete client {args.client_id}? [y/N] ")
        if answer.strip().lower() not in {"y", "yes"}:
            print("Aborted.")
            return 0
    result = await core_logic.delete_client(context, args.client_id)
    if not result.allowed:
        print(result.message)
        return 2
    print(f"Deleted client {args.client_id}")
    return 0


async def run_add_project(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the project creation workflow in the BLL."""
    project = await core_logic.save_project(context, translate_add_project(args))
    print(f"Created project {project.name} ({project.id})")
    return 0


async def run_archive_project(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the archive/unarchive workflow in the BLL."""
    project = await core_logic.set_project_archived(context, args.project_id, not args.undo)
    print(f"{'Archived' if project.is_archived else 'Unarchived'} project {project.name}")
    return 0


async def run_new_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice creation workflow in the BLL."""
    invoice = await core_logic.save_invoice(context, translate_new_invoice(args))
    print(f"Created invoice {invoice.invoice_number} total {invoice.total_amount:.2f}")
    return 0


async def run_mark_paid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-paid workflow in the BLL."""
    invoice = await core_logic.mark_invoice_paid(context, args.invoice_id)
    print(f"Invoice {invoice.invoice_number} marked paid")
    return 0


async def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the status change workflow in the BLL."""
    invoice = await core_logic.set_invoice_status(context, args.invoice_id, args.status)
    print(f"Invoice {invoice.invoice_number} is now {invoice.status}")
    return 0


async def run_refresh(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Reload every collection; exit non-zero when some stayed stale."""
    report = await core_logic.refresh(context)
    print(f"Refreshed {len(report.refreshed)} collections")
    for collection, reason in report.failed.items():
        print(f"  stale: {collection.value} ({reason})")
    return 0 if report.ok else 5


async def run_clients_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the cached clients."""
    for client in context.cache.clients:
        print(f"{client.id}  {client.name}  {client.email}")
    return 0


async def run_projects_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print active or archived projects with their client and status."""
    for project in context.cache.projects(archived=args.archived):
        client = project.client.name if project.client else "-"
        status = project.status.name if project.status else "-"
        print(f"{project.id}  {project.name}  [{status}]  {client}")
    return 0


async def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the cached invoices."""
    for invoice in context.cache.invoices:
        client = invoice.client.name if invoice.client else "-"
        print(f"{invoice.invoice_number}  {invoice.issue_date}  {invoice.status:<9}  {invoice.total_amount:>10.2f}  {client}")
    return 0


async def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the yearly dashboard figures."""
    summary = core_logic.calculate_dashboard_summary(context, year=args.year)
    print(f"Year {summary.year}")
    print(f"  Income:       {summary.total_income:.2f}")
    print(f"  Outstanding:  {summary.total_outstanding:.2f}")
    print(f"  Expenses:     {summary.total_expenses:.2f}")
    print(f"  Net:          {summary.net_income:.2f}")
    print(f"  Overdue invoices: {summary.overdue_invoices}")
    print(f"  Active projects:  {summary.active_projects}")
    print(f"  Pending tasks:    {summary.pending_tasks}")
    print(f"  Upcoming bookings: {summary.upcoming_bookings}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, TenantScopeError):
        log.error("%s", error)
        return 4
    if isinstance(error, RemoteStoreError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


async def execute(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Load the context, open the configured session, and run one command."""
    context = load_runtime_context(getattr(args, "config", None))
    core_logic.ensure_schema_version(context)
    await core_logic.open_session(context)
    try:
        return await dispatch_command(context, args, command_table)
    finally:
        core_logic.close_session(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        return asyncio.run(execute(args, command_table))
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise BusinessRuleViolation(f"Invalid date: {value}") from exc
