"""``county-tax`` command line interface."""

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

import structlog

from county_tax.config import configure_logging
from county_tax.enrichment import FilterOptions
from county_tax.enums import IncludeMode, RunType
from county_tax.errors import DuplicateEntryError
from county_tax.pipeline import TaxPipeline
from county_tax.rates import load_rates, read_rates_csv
from county_tax.reports import ResultFilters, list_counted_results, summarize_by_county
from county_tax.tax import format_tax_display, tax_line_items

logger = structlog.get_logger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from e


def _parse_amount(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"invalid amount {value!r}") from e


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid run id {value!r}") from e


def _add_list_commands(subparsers: Any, name: str, noun: str) -> None:
    parser = subparsers.add_parser(name, help=f"Manage the customer {noun} list")
    actions = parser.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help=f"Show the {noun} list")
    add = actions.add_parser("add", help=f"Add a customer to the {noun} list")
    add.add_argument("customer_id", help="Bill.com customer id")
    add.add_argument("--name", help="Customer name")
    add.add_argument("--address", help="Customer address")
    add.add_argument("--reason", help="Why the customer is listed")
    add.add_argument("--user", help="Who made the change")
    remove = actions.add_parser("remove", help=f"Remove an entry from the {noun} list")
    remove.add_argument("entry_id", type=int, help="List entry id (see 'list')")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="county-tax",
        description="County sales tax reconciliation for Bill.com invoices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init-db
  %(prog)s load-rates nc_county_rates.csv
  %(prog)s sync --user ops
  %(prog)s calculate --mode=exclude
  %(prog)s report --start=2024-01-01 --end=2024-03-31
  %(prog)s quote 1000 --address="123 Main St, Asheville, NC 28801"
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL setting)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        help="Log format (default: LOG_FORMAT setting)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the database tables")

    load = commands.add_parser("load-rates", help="Load county rates from a CSV file")
    load.add_argument("csv_path", help="CSV with county_name,state_tax_rate,county_tax_rate")

    sync = commands.add_parser("sync", help="Mirror invoices from Bill.com")
    sync.add_argument("--user", help="Who started the run")

    calculate = commands.add_parser("calculate", help="Calculate tax for mirrored invoices")
    calculate.add_argument(
        "--mode",
        choices=[mode.value for mode in IncludeMode],
        default=IncludeMode.ALL.value,
        help="Customer filter mode (default: all)",
    )
    calculate.add_argument(
        "--customer",
        action="append",
        dest="customers",
        metavar="CUSTOMER_ID",
        help="Customer id for the filter; repeatable. Defaults to the stored list.",
    )
    calculate.add_argument("--user", help="Who started the run")

    status = commands.add_parser("status", help="Show progress of a run")
    status.add_argument("run_id", type=_parse_uuid)

    runs = commands.add_parser("runs", help="List recent runs")
    runs.add_argument("--type", choices=[run_type.value for run_type in RunType])
    runs.add_argument("--limit", type=int, default=20)

    report = commands.add_parser("report", help="Report counted tax")
    report.add_argument("--group-by", choices=["county", "invoice"], default="county")
    report.add_argument("--start", type=_parse_date, help="Paid on or after (YYYY-MM-DD)")
    report.add_argument("--end", type=_parse_date, help="Paid on or before (YYYY-MM-DD)")
    report.add_argument("--county", help="Exact county name")
    report.add_argument("--customer", help="Part of the customer name")

    quote = commands.add_parser("quote", help="Calculate tax for a single amount")
    quote.add_argument("subtotal", type=_parse_amount)
    where = quote.add_mutually_exclusive_group()
    where.add_argument("--address", help="Billing address to geocode")
    where.add_argument("--county", help="County to use instead of geocoding")
    quote.add_argument("--line-items", action="store_true", help="Print invoice tax lines")

    _add_list_commands(commands, "exclusions", "exclusion")
    _add_list_commands(commands, "inclusions", "inclusion")
    return parser


def _install_cancel_handler(cancel_event: asyncio.Event) -> bool:
    """Route SIGINT to the cancel event so the run ends as cancelled."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # Not available on this platform; Ctrl-C falls back to KeyboardInterrupt
        return False
    return True


def _remove_cancel_handler() -> None:
    asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)


async def _run_stage(pipeline: TaxPipeline, args: argparse.Namespace) -> int:
    cancel_event = asyncio.Event()
    installed = _install_cancel_handler(cancel_event)
    try:
        if args.command == "sync":
            result = await pipeline.sync_invoices(initiated_by=args.user, cancel_event=cancel_event)
        else:
            filters = FilterOptions(
                include_mode=IncludeMode(args.mode), customer_ids=args.customers
            )
            result = await pipeline.calculate_taxes(
                initiated_by=args.user, filters=filters, cancel_event=cancel_event
            )
    finally:
        if installed:
            _remove_cancel_handler()
    _print_json(result.to_dict())
    return 0 if result.success else 1


async def _run_report(pipeline: TaxPipeline, args: argparse.Namespace) -> int:
    filters = ResultFilters(
        start=args.start, end=args.end, county=args.county, customer=args.customer
    )
    if args.group_by == "county":
        _print_json((await summarize_by_county(pipeline.store, filters)).to_dict())
        return 0

    listing = await list_counted_results(pipeline.store, filters)
    _print_json(
        {
            "invoices": [
                {
                    "invoice_number": result.invoice_number,
                    "customer_name": result.customer_name,
                    "paid_date": result.paid_date,
                    "county": result.geocoded_county,
                    "subtotal": result.subtotal,
                    "state_tax": result.state_tax_amount,
                    "county_tax": result.county_tax_amount,
                    "total_tax": result.total_tax,
                }
                for result in listing.results
            ],
            "totals": listing.totals.to_dict(),
        }
    )
    return 0


async def _run_list_command(pipeline: TaxPipeline, args: argparse.Namespace) -> int:
    store = pipeline.store
    exclusions = args.command == "exclusions"

    if args.action == "list":
        entries = await (store.list_exclusions() if exclusions else store.list_inclusions())
        _print_json(
            [
                {
                    "id": entry.id,
                    "customer_id": entry.external_customer_id,
                    "customer_name": entry.customer_name,
                    "reason": entry.reason,
                    "created_by": entry.created_by,
                    "created_at": entry.created_at,
                }
                for entry in entries
            ]
        )
        return 0

    if args.action == "add":
        add = store.add_exclusion if exclusions else store.add_inclusion
        try:
            entry = await add(
                args.customer_id,
                customer_name=args.name,
                customer_address=args.address,
                reason=args.reason,
                created_by=args.user,
            )
        except DuplicateEntryError as e:
            print(str(e), file=sys.stderr)
            return 1
        _print_json({"id": entry.id, "customer_id": entry.external_customer_id})
        return 0

    remove = store.remove_exclusion if exclusions else store.remove_inclusion
    if not await remove(args.entry_id):
        print(f"No entry with id {args.entry_id}", file=sys.stderr)
        return 1
    return 0


async def _dispatch(pipeline: TaxPipeline, args: argparse.Namespace) -> int:
    command = args.command
    if command == "init-db":
        print("Database ready")
        return 0
    if command == "load-rates":
        created, updated = await load_rates(pipeline.store, read_rates_csv(args.csv_path))
        _print_json({"created": created, "updated": updated})
        return 0
    if command in ("sync", "calculate"):
        return await _run_stage(pipeline, args)
    if command == "status":
        progress = await pipeline.get_status(args.run_id)
        if progress is None:
            print(f"Run {args.run_id} not found", file=sys.stderr)
            return 1
        _print_json(progress.to_dict())
        return 0
    if command == "runs":
        run_type = RunType(args.type) if args.type else None
        runs = await pipeline.tracker.recent_runs(run_type, args.limit)
        _print_json(
            [
                {
                    "id": run.id,
                    "type": run.run_type.value,
                    "status": run.status.value,
                    "processed": run.items_processed,
                    "total": run.total_items,
                    "failed": run.items_failed,
                    "created_by": run.created_by,
                    "created_at": run.created_at,
                    "completed_at": run.completed_at,
                    "message": run.current_status,
                }
                for run in runs
            ]
        )
        return 0
    if command == "report":
        return await _run_report(pipeline, args)
    if command == "quote":
        tax = await pipeline.quote(args.subtotal, address=args.address, county=args.county)
        print(format_tax_display(tax))
        if tax.fallback:
            print(f"Default county rate used: {tax.fallback_reason}")
        if args.line_items:
            _print_json(tax_line_items(tax))
        return 0
    return await _run_list_command(pipeline, args)


async def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and run one command."""
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    logger.debug("county_tax_command", command=args.command)

    async with TaxPipeline() as pipeline:
        return await _dispatch(pipeline, args)


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("county_tax_interrupted")
        sys.exit(130)
    except Exception as e:
        logger.exception("county_tax_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    run()
