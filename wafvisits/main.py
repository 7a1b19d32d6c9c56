"""Command-line entrypoints for the WAF visit aggregator."""
from __future__ import annotations

import argparse
import contextlib
import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
import tomllib
from dotenv import load_dotenv

from wafvisits.aggregate.aggregator import SnapshotAggregator
from wafvisits.aggregate.driver import (
    DEFAULT_UPDATE_MAX_PAGES,
    apply_update,
    page_limit,
    plan_update,
    require_codes,
)
from wafvisits.errors import InvalidDate, WafVisitsError
from wafvisits.imperva.client import ImpervaClient
from wafvisits.observability.log import configure_logging
from wafvisits.observability.metrics import MetricsRegistry, record_duration
from wafvisits.render.csv_export import dump_csv
from wafvisits.render.human import format_date, print_snapshot
from wafvisits.storage.snapshot import load_snapshot, new_snapshot
from wafvisits.whois.client import WhoisClient

LOGGER = structlog.get_logger(__name__)

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
LOGGING_CONFIG_PATH = Path("config/logging.yaml")
QUERY_DEFAULT_MAX_PAGES = 10

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "imperva": {
        "base_url": "https://my.imperva.com",
        "visits_path": "/api/visits/v1",
        "page_size": 100,
        "timeout_seconds": 30,
        "max_attempts": 4,
        "retry_delay_seconds": 1.0,
    },
    "whois": {
        "base_url": "https://whois.arin.net/rest/ip",
        "timeout_seconds": 15,
    },
    "update": {
        "initial_days": 30,
    },
}


def load_settings(path: Path) -> Dict[str, Dict[str, Any]]:
    """Read the TOML configuration file over the built-in defaults."""
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    if not path.exists():
        return settings
    with path.open("rb") as handle:
        overrides = tomllib.load(handle)
    for section, values in overrides.items():
        if isinstance(values, dict):
            settings.setdefault(section, {}).update(values)
    return settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_visit_source(settings: Dict[str, Dict[str, Any]], metrics: MetricsRegistry) -> ImpervaClient:
    return ImpervaClient.from_settings(settings["imperva"], metrics=metrics)


def build_whois(settings: Dict[str, Dict[str, Any]], metrics: MetricsRegistry) -> WhoisClient:
    return WhoisClient.from_settings(settings["whois"], metrics=metrics)


def parse_date(label: str, value: str) -> datetime:
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise InvalidDate(label, value) from exc
    return parsed.replace(tzinfo=timezone.utc)


def _query_window(args: argparse.Namespace) -> Tuple[datetime, datetime]:
    start = parse_date("Start", args.start_date)
    end = parse_date("End", args.end_date) if args.end_date else utcnow()
    return start, end


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="waf-visits",
        description="Aggregate Imperva WAF visits by source IP with WHOIS ownership details",
        epilog="You must provide IMPERVA_API_KEY and IMPERVA_API_ID environment variables.",
    )
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS_PATH), help="Path to settings TOML")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Query from the specified start date (yyyy-mm-dd format) or date range")
    scan.add_argument("start_date", metavar="start")
    scan.add_argument("end_date", metavar="end", nargs="?")

    codes = sub.add_parser("codes", help="List rule codes encountered from the specified start date or date range")
    codes.add_argument("start_date", metavar="start")
    codes.add_argument("end_date", metavar="end", nargs="?")

    update = sub.add_parser("update", help="Maintain aggregation state in a file; will not process partial days")
    update.add_argument("db_path", metavar="dbPath")

    for command, default_pages in ((scan, QUERY_DEFAULT_MAX_PAGES), (codes, QUERY_DEFAULT_MAX_PAGES), (update, DEFAULT_UPDATE_MAX_PAGES)):
        command.add_argument("--site", dest="site_id", required=True, help="The Imperva site ID - see Websites list on Imperva")
        command.add_argument(
            "--max-pages",
            type=int,
            default=default_pages,
            help=f"Limit the number of pages of events, default is {default_pages}",
        )
    for command in (scan, update):
        command.add_argument(
            "--code",
            dest="codes",
            action="append",
            default=[],
            help="A rule code or code prefix; repeat for more, at least one is required",
        )

    view = sub.add_parser("view", help="Dump the aggregation details in human-readable format")
    view.add_argument("db_path", metavar="dbPath")

    csv_cmd = sub.add_parser("csv", help="Dump the aggregation details as CSV")
    csv_cmd.add_argument("db_path", metavar="dbPath")
    csv_cmd.add_argument("--no-heading", action="store_true", help="Omit the first heading row")

    return parser


def cmd_scan(args: argparse.Namespace, settings: Dict[str, Dict[str, Any]]) -> None:
    codes = require_codes(args.codes)
    start, end = _query_window(args)
    max_pages = page_limit(args.max_pages, QUERY_DEFAULT_MAX_PAGES)
    metrics = MetricsRegistry()
    snapshot = new_snapshot(args.site_id)

    print("Getting visits")
    with contextlib.closing(build_visit_source(settings, metrics)) as source, contextlib.closing(
        build_whois(settings, metrics)
    ) as whois:
        with record_duration(metrics, "run_duration_ms"):
            batch = source.get_visits(args.site_id, start, end, max_pages, codes)
            SnapshotAggregator(snapshot, whois, metrics=metrics).add_visits(batch.visits)
    LOGGER.info("scan_complete", site_id=args.site_id, **metrics.snapshot())
    print_snapshot(snapshot)


def cmd_codes(args: argparse.Namespace, settings: Dict[str, Dict[str, Any]]) -> None:
    start, end = _query_window(args)
    max_pages = page_limit(args.max_pages, QUERY_DEFAULT_MAX_PAGES)
    metrics = MetricsRegistry()

    print("Getting visits")
    with contextlib.closing(build_visit_source(settings, metrics)) as source:
        batch = source.get_visits(args.site_id, start, end, max_pages, ())

    print()
    if batch.codes:
        for code in sorted(batch.codes):
            count = batch.codes[code]
            print(f"{code}: {count} {'hit' if count == 1 else 'hits'}")
        print()
    if len(batch.codes) == 1:
        print("1 code found")
    else:
        print(f"{len(batch.codes)} codes found")


def cmd_update(args: argparse.Namespace, settings: Dict[str, Dict[str, Any]]) -> None:
    codes = require_codes(args.codes)
    plan = plan_update(
        args.db_path,
        args.site_id,
        now=utcnow(),
        initial_days=int(settings["update"]["initial_days"]),
    )
    print(f"{'Creating' if plan.created else 'Loading'} {args.db_path}")
    if plan.up_to_date:
        print("Database is up to date.")
        return

    start_date, end_date = format_date(plan.start), format_date(plan.end)
    if start_date == end_date:
        print(f"Updating - loading events from {start_date}")
    else:
        print(f"Updating - loading events from {start_date} to {end_date}")

    metrics = MetricsRegistry()
    with contextlib.closing(build_visit_source(settings, metrics)) as source, contextlib.closing(
        build_whois(settings, metrics)
    ) as whois:
        folded = apply_update(
            plan,
            codes=codes,
            visit_source=source,
            whois=whois,
            max_pages=args.max_pages,
            metrics=metrics,
        )
    print(f"Update complete: {folded} visits folded")


def cmd_view(args: argparse.Namespace) -> None:
    snapshot = load_snapshot(args.db_path)
    print_snapshot(snapshot)
    print(f"Last update: {format_date(snapshot.last_update)}\n")


def cmd_csv(args: argparse.Namespace) -> None:
    snapshot = load_snapshot(args.db_path)
    dump_csv(snapshot, sys.stdout, heading=not args.no_heading)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(LOGGING_CONFIG_PATH, verbose=args.verbose)
    settings = load_settings(Path(args.config))

    try:
        if args.command == "scan":
            cmd_scan(args, settings)
        elif args.command == "codes":
            cmd_codes(args, settings)
        elif args.command == "update":
            cmd_update(args, settings)
        elif args.command == "view":
            cmd_view(args)
        elif args.command == "csv":
            cmd_csv(args)
    except WafVisitsError as exc:
        LOGGER.debug("command_failed", command=args.command, error=str(exc))
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
