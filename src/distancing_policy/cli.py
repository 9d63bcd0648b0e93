"""Command-line interface for downloading the outcome sources."""

import argparse
from pathlib import Path

from distancing_policy.config import DEFAULT_CACHE_DIR, DEFAULT_REPORT_DATE
from distancing_policy.sources import SourceFetcher, daily_report_url, normalize_report_date


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="distancing-fetch",
        description="Download and cache COVID-19 daily report and census population data.",
    )
    parser.add_argument(
        "date",
        nargs="?",
        default=DEFAULT_REPORT_DATE,
        help=f"Daily report date, YYYY-MM-DD or MM-DD-YYYY (default: {DEFAULT_REPORT_DATE})",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=Path(DEFAULT_CACHE_DIR),
        help=f"Download cache directory (default: {DEFAULT_CACHE_DIR})",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear cached downloads before fetching",
    )

    args = parser.parse_args(argv)
    try:
        report_date = normalize_report_date(args.date)
    except ValueError as e:
        parser.error(str(e))

    fetcher = SourceFetcher(cache_dir=args.cache_dir)
    if args.clear_cache:
        fetcher.clear_cache()

    print("=" * 60)
    print(f"  Fetching outcome sources for {report_date}")
    print(f"  Daily report: {daily_report_url(report_date)}")
    print("=" * 60)

    counts = fetcher.load_case_counts(report_date)
    print(f"  Case counts: {counts.height} US regions")
    population = fetcher.load_population()
    print(f"  Population:  {population.height} rows")
    print(f"  Cached in {args.cache_dir}")
