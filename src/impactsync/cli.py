"""Command-line argument parsing for the PR impact ingest tool."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

from .config import ALLOWED_WINDOWS, DEFAULT_DAYS
from .stats import RANK_ORDERINGS


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _window(value: str) -> int:
    """Parse a leaderboard window, which must be one of 30, 60 or 90 days."""
    parsed = _positive_int(value)
    if parsed not in ALLOWED_WINDOWS:
        allowed = ", ".join(str(days) for days in ALLOWED_WINDOWS)
        raise argparse.ArgumentTypeError(f"must be one of {allowed}")
    return parsed


def _add_repository_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--owner", required=True, help="GitHub repository owner (user or organization).")
    parser.add_argument("--repo", required=True, help="GitHub repository name.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments; ``command`` names the selected subcommand.
    """
    parser = argparse.ArgumentParser(
        prog="pr-impact-ingest",
        description=(
            "Ingest merged GitHub pull requests into SQLite and compute "
            "per-author impact leaderboards."
        ),
    )
    parser.add_argument("--db", default=None, help="SQLite database path (default: $IMPACT_DB_PATH or data/raw_api_data.db).")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Fetch merged PRs from GitHub into the raw store.")
    _add_repository_arguments(sync)
    sync.add_argument(
        "--days",
        type=_positive_int,
        default=DEFAULT_DAYS,
        help=f"Lookback window in days (default: {DEFAULT_DAYS}).",
    )
    sync.add_argument("--max-details", type=_positive_int, default=None, help="Cap on PR details to fetch.")
    sync.add_argument("--max-list-pages", type=_positive_int, default=None, help="Cap on listing pages to walk.")
    sync.add_argument(
        "--refresh-facts",
        action="store_true",
        help="Derive PR facts right after the sync.",
    )

    ingest = subparsers.add_parser("ingest", help="Store the PR listing (all states) without fetching details.")
    _add_repository_arguments(ingest)
    ingest.add_argument(
        "--days",
        type=_positive_int,
        default=DEFAULT_DAYS,
        help=f"Lookback window in days (default: {DEFAULT_DAYS}).",
    )
    ingest.add_argument("--per-page", type=_positive_int, default=None, help="Listing page size, at most 100.")
    ingest.add_argument("--max-pages", type=_positive_int, default=None, help="Cap on listing pages to walk.")

    recompute = subparsers.add_parser("recompute", help="Recompute author stats from stored data.")
    _add_repository_arguments(recompute)
    recompute.add_argument("--days", type=_window, default=DEFAULT_DAYS, help="Window: 30, 60 or 90 days.")
    recompute.add_argument("--json", action="store_true", help="Print the JSON envelope instead of a report.")

    leaderboard = subparsers.add_parser("leaderboard", help="Show the author leaderboard without calling GitHub.")
    _add_repository_arguments(leaderboard)
    leaderboard.add_argument("--days", type=_window, default=DEFAULT_DAYS, help="Window: 30, 60 or 90 days.")
    leaderboard.add_argument(
        "--rank-by",
        choices=sorted(RANK_ORDERINGS),
        default="overall",
        help="Ranking key (default: overall).",
    )
    leaderboard.add_argument("--json", action="store_true", help="Print the JSON envelope instead of a report.")

    merged = subparsers.add_parser("merged", help="List stored merged PRs for a repository.")
    _add_repository_arguments(merged)
    merged.add_argument("--days", type=_positive_int, default=DEFAULT_DAYS, help="Lookback window in days.")
    merged.add_argument("--limit", type=_positive_int, default=None, help="Maximum PRs to list.")
    merged.add_argument("--exclude-bots", action="store_true", help="Hide PRs authored by bot accounts.")

    status = subparsers.add_parser("status", help="Show stored row counts.")
    status.add_argument("--owner", default=None, help="Limit to one repository (requires --repo).")
    status.add_argument("--repo", default=None, help="Repository name.")

    recent = subparsers.add_parser("recent", help="Show the most recently stored raw responses.")
    recent.add_argument("--limit", type=_positive_int, default=10, help="Number of rows (default: 10).")
    recent.add_argument("--source", default=None, help="Only rows with this source tag.")

    return parser.parse_args(argv)
