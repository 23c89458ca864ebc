#!/usr/bin/env python3
"""
CLI for the HMO enrichment pipeline.

Usage:
    python run.py run --postcode "M14 5RR" --postcode "M14 6AA"
    python run.py run --city Manchester --limit 50 --time-budget 600
    python run.py run --record-id pr-0123456789ab --force
    python run.py sweep --days 7
    python run.py score records.json

Configuration comes from the environment (see utils/config.py).
"""

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from adapters.factory import build_context
from core.errors import ConfigurationError, PipelineError
from core.freshness import FreshnessTracker
from core.licences import sweep_licences
from core.models import ListingType, PropertyRecord, RunScope
from core.persistence import InMemoryPropertyRepository
from core.pipeline import run_enrichment_pass, utc_now
from core.scoring import InvestmentScorer
from utils.config import Config
from utils.formatting import format_currency, format_duration, format_percent, format_score


logger = logging.getLogger("run")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def cmd_run(args):
    """Run one enrichment pass."""
    config = Config.load()
    try:
        scope = RunScope(
            source_name=args.source,
            limit=args.limit,
            record_id=args.record_id,
            city=args.city,
            postcodes=list(args.postcode or []),
            listing_type=ListingType(args.listing_type) if args.listing_type else None,
            time_budget_seconds=args.time_budget,
            force=args.force,
            ingest=not args.enrich_only,
        )
    except ValueError as e:
        print(f"Error: Invalid scope: {e}", file=sys.stderr)
        return 2

    try:
        context = build_context(config)
    except PipelineError as e:
        print(f"Error: Could not set up the run: {e}", file=sys.stderr)
        return 2
    if args.source:
        context.credential_needs.append(args.source)

    try:
        result = run_enrichment_pass(scope, context)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(
        f"Processed {result.processed}, created {result.created}, updated {result.updated}, "
        f"skipped {result.skipped} in {format_duration(result.duration_ms)}"
    )
    for sample in result.samples:
        print(
            f"  {sample['property_id']}  {format_score(sample['deal_score'], sample['classification'])}"
            f"  {sample['address']}, {sample['postcode']}  ({sample['action']})"
        )
    if result.errors_total:
        print(f"{result.errors_total} error(s):", file=sys.stderr)
        for message in result.errors:
            print(f"  {message}", file=sys.stderr)
        if result.errors_total > len(result.errors):
            print(f"  ... {result.errors_total - len(result.errors)} more", file=sys.stderr)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


def cmd_sweep(args):
    """Mark unseen records stale and refresh licence statuses."""
    config = Config.load()
    repository = InMemoryPropertyRepository(persist_path=config.repository_file, autosave=False)
    now = utc_now()

    days = args.days if args.days is not None else config.stale_after_days
    marked = FreshnessTracker(repository, timedelta(days=days)).sweep(now)
    refreshed = sweep_licences(repository, now)
    repository.flush()

    print(f"Marked {marked} record(s) stale (window {days} days)")
    print(f"Refreshed {refreshed} licence status(es)")
    return 0


def cmd_score(args):
    """Score canonical records from a JSON file, highest first."""
    input_path = Path(args.records_file)

    if not input_path.exists():
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return 1

    try:
        with open(input_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}", file=sys.stderr)
        return 1

    if isinstance(data, dict):
        data = data.get("properties", [data])
    if isinstance(data, dict):
        # Repository files key records by property id
        data = list(data.values())

    try:
        records = [PropertyRecord.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        print(f"Error: Invalid record data: {e}", file=sys.stderr)
        return 1

    scorer = InvestmentScorer()
    for record, result in scorer.rank(records):
        classification = result.classification.value if result.classification else None
        print(
            f"{format_score(result.deal_score, classification)}  "
            f"{format_currency(record.price):>10}  "
            f"yield {format_percent(result.estimated_yield_pct):>6}  "
            f"{record.address or record.property_id}"
        )
        b = result.breakdown
        print(
            f"      size {b.size_score}  location {b.location_score}  price {b.price_score}  "
            f"yield {b.yield_score}  epc {b.epc_score}"
        )
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="HMO enrichment and scoring pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run.py run --postcode "M14 5RR"
    python run.py run --city Leeds --source listing_feed --limit 100
    python run.py sweep --days 7
    python run.py score data/properties.json
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run one enrichment pass")
    run_parser.add_argument("--source", help="Only this source (e.g. listing_feed, hmo_register)")
    run_parser.add_argument("--postcode", action="append", help="Postcode in scope (repeatable)")
    run_parser.add_argument("--city", help="City in scope")
    run_parser.add_argument("--record-id", help="Enrich a single canonical record")
    run_parser.add_argument("--listing-type", choices=[t.value for t in ListingType])
    run_parser.add_argument("--limit", type=int, help="Maximum items per phase")
    run_parser.add_argument("--time-budget", type=float, help="Stop starting new work after N seconds")
    run_parser.add_argument("--force", action="store_true", help="Re-run stages already checked")
    run_parser.add_argument("--enrich-only", action="store_true", help="Skip source ingestion")
    run_parser.add_argument("--json", action="store_true", help="Also print the result as JSON")
    run_parser.set_defaults(func=cmd_run)

    # Sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Freshness and licence status sweep")
    sweep_parser.add_argument("--days", type=int, help="Staleness window in days")
    sweep_parser.set_defaults(func=cmd_sweep)

    # Score command
    score_parser = subparsers.add_parser("score", help="Score records from a JSON file")
    score_parser.add_argument("records_file", help="Path to JSON list of property records")
    score_parser.set_defaults(func=cmd_score)

    args = parser.parse_args()
    configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
