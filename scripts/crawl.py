"""Crawl the academic portal and print a JSON summary.

Standalone CLI script for operator runs. Authenticates with the portal
credential from .env, crawls class schedules or curricula (or probes for
hidden terms, or fetches the personal records of that account), runs the
regression guard and prints the result.

Run with: python scripts/crawl.py schedule --term 2025-2
Subset:   python scripts/crawl.py schedule --term 2025-2 --dept DISCS --dept MA
Curricula: python scripts/crawl.py curriculum
Terms:    python scripts/crawl.py discover-terms --start 2018 --end 2026
Personal: python scripts/crawl.py personal
Strict:   python scripts/crawl.py schedule --term 2025-2 --fail-on-regression

Exit codes:
  0 = success (JSON summary on stdout)
  1 = error (message on stderr)
  2 = regression detected (with --fail-on-regression)
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.ingest.config import get_config  # noqa: E402
from src.ingest.crawl import ItemState, ProgressEvent  # noqa: E402
from src.ingest.errors import RegressionDetected  # noqa: E402
from src.ingest.logging import setup_logging  # noqa: E402
from src.ingest.pipeline import IngestPipeline  # noqa: E402


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Crawl the academic portal and print a JSON summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "mode",
        choices=["schedule", "curriculum", "discover-terms", "personal"],
        help="What to crawl.",
    )
    parser.add_argument("--term", type=str, default=None, help="Term code for schedule mode (e.g. 2025-2).")
    parser.add_argument(
        "--dept",
        action="append",
        default=None,
        help="Department code (repeatable). Default: every department in the selector.",
    )
    parser.add_argument(
        "--degree",
        action="append",
        default=None,
        help="Degree code (repeatable). Default: every degree in the selector.",
    )
    parser.add_argument("--start", type=int, default=2018, help="First year for discover-terms.")
    parser.add_argument("--end", type=int, default=None, help="Last year for discover-terms (default: start + 8).")
    parser.add_argument(
        "--fail-on-regression",
        action="store_true",
        help="Exit with code 2 when the regression guard flags the run.",
    )
    return parser.parse_args()


def _print_progress(event: ProgressEvent) -> None:
    if event.state is ItemState.FAILED:
        _log(f"  {event.code:<12} FAILED  {event.error}")
    else:
        marker = "*" if event.unchanged else " "
        _log(f"  {event.code:<12}{marker} {event.count}")


async def main(args: argparse.Namespace) -> int:
    config = get_config()
    setup_logging(json_output=config.log_json, log_level=config.log_level)

    if not config.portal_user or not config.portal_pass:
        _log("ERROR: PORTAL_USER and PORTAL_PASS must be set in .env")
        return 1

    async with IngestPipeline(config) as pipeline:
        if args.mode == "discover-terms":
            end = args.end if args.end is not None else args.start + 8
            _log(f"crawl: probing terms {args.start}-{end}")
            terms = await pipeline.discover_terms(config.portal_user, config.portal_pass, args.start, end)
            print(json.dumps([t.model_dump(mode="json") for t in terms], indent=2))
            return 0

        if args.mode == "personal":
            _log("crawl: personal records")
            records = await pipeline.fetch_personal_records(config.portal_user, config.portal_pass)
            print(json.dumps(records.model_dump(mode="json"), indent=2))
            for kind, error in records.errors.items():
                _log(f"  {kind:<12} {error.category}: {error.message}")
            return 1 if records.errors else 0

        if args.mode == "schedule":
            if not args.term:
                _log("ERROR: --term is required for schedule mode")
                return 1
            _log(f"crawl: schedules for {args.term}")
            result, report = await pipeline.crawl_schedules(
                config.portal_user,
                config.portal_pass,
                args.term,
                args.dept,
                on_progress=_print_progress,
            )
        else:
            _log("crawl: curricula")
            result, report = await pipeline.crawl_curricula(
                config.portal_user,
                config.portal_pass,
                args.degree,
                on_progress=_print_progress,
            )

    summary = {
        "result": result.model_dump(mode="json"),
        "guard": report.model_dump(mode="json"),
    }
    print(json.dumps(summary, indent=2))
    _log(f"crawl: {result.total} records, {len(result.failed)} failed, {len(result.batch_sizes)} batches")

    if args.fail_on_regression:
        try:
            report.raise_for_regressions()
        except RegressionDetected as e:
            _log(f"REGRESSION: {e}")
            return 2
    return 0


if __name__ == "__main__":
    args = _parse_args()
    try:
        sys.exit(asyncio.run(main(args)))
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
