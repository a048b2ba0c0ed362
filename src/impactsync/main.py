"""Application entrypoint and orchestration for the PR impact ingest tool."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, Optional, Sequence

from .cli import parse_args
from .config import load_config
from .errors import AuthenticationError, ConfigurationError
from .models import AuthorStatsResult
from .service import ImpactService
from .stats import generate_report

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_UNEXPECTED_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_AUTHENTICATION_ERROR = 3
EXIT_ORIGIN_ERROR = 4
EXIT_RATE_LIMITED = 5
EXIT_DATA_INTEGRITY_GAP = 6

_STATUS_EXIT_CODES = {
    400: EXIT_CONFIGURATION_ERROR,
    401: EXIT_AUTHENTICATION_ERROR,
    409: EXIT_DATA_INTEGRITY_GAP,
    429: EXIT_RATE_LIMITED,
    502: EXIT_ORIGIN_ERROR,
}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def run_command(service: ImpactService, args: argparse.Namespace) -> Dict[str, Any]:
    """Dispatch a parsed subcommand to the matching service operation."""
    if args.command == "sync":
        # Caps left unset keep each operation's own defaults.
        caps = {
            name: value
            for name, value in (("max_details", args.max_details), ("max_list_pages", args.max_list_pages))
            if value is not None
        }
        if args.refresh_facts:
            return service.sync_and_refresh(args.owner, args.repo, days=args.days, **caps)
        return service.trigger_sync(args.owner, args.repo, days=args.days, **caps)
    if args.command == "ingest":
        return service.ingest_pulls(
            args.owner,
            args.repo,
            days=args.days,
            per_page=args.per_page,
            max_pages=args.max_pages,
        )
    if args.command == "recompute":
        return service.recompute_stats(args.owner, args.repo, days=args.days)
    if args.command == "leaderboard":
        return service.read_stats(args.owner, args.repo, days=args.days, rank_by=args.rank_by)
    if args.command == "merged":
        return service.merged_prs(
            args.owner,
            args.repo,
            days=args.days,
            limit=args.limit,
            exclude_bots=args.exclude_bots,
        )
    if args.command == "status":
        if args.owner or args.repo:
            return service.repo_status(args.owner, args.repo)
        return service.database_status()
    if args.command == "recent":
        return service.recent_responses(limit=args.limit, source=args.source)
    raise ConfigurationError(f"Unknown command '{args.command}'.")


def render_output(args: argparse.Namespace, envelope: Dict[str, Any]) -> str:
    """Render leaderboards as text unless JSON was requested; everything else as JSON."""
    wants_report = args.command in ("recompute", "leaderboard") and not getattr(args, "json", False)
    if envelope.get("ok") and wants_report:
        return generate_report(
            repo_name=f"{args.owner}/{args.repo}",
            result=AuthorStatsResult.from_dict(envelope),
        )
    return json.dumps(envelope, indent=2, sort_keys=False)


def exit_code_for(envelope: Dict[str, Any]) -> int:
    if envelope.get("ok"):
        return EXIT_SUCCESS
    return _STATUS_EXIT_CODES.get(envelope.get("status", 500), EXIT_UNEXPECTED_ERROR)


def orchestrate(argv: Optional[Sequence[str]] = None) -> int:
    """Run the end-to-end CLI flow and return a process exit code.

    Exit codes:
        0: Success.
        1: Unexpected error.
        2: Configuration error.
        3: Authentication error (missing GitHub token).
        4: GitHub API error.
        5: GitHub rate limit reached; partial progress is printed.
        6: Required repository metadata is missing.
    """
    try:
        args = parse_args(argv)
        config = load_config(database_path=args.db)
        configure_logging(args.verbose or config.debug)

        service = ImpactService(config=config)
        envelope = run_command(service, args)
        print(render_output(args, envelope))
        return exit_code_for(envelope)
    except AuthenticationError as exc:
        print(f"Authentication error: {exc}", file=sys.stderr)
        return EXIT_AUTHENTICATION_ERROR
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error while running command")
        print(f"Unexpected error: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED_ERROR


def main() -> None:
    sys.exit(orchestrate())


if __name__ == "__main__":
    main()
