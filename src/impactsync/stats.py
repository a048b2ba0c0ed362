"""Per-author statistics over rolling windows, plus leaderboard formatting.

This module provides utilities for:
- Recomputing author statistics from freshly derived facts.
- Serving stored statistics, aggregating from facts on demand when none exist.
- Building a human-readable leaderboard report.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import DEFAULT_DAYS, require_repository
from .db import Database
from .facts import refresh_pr_facts
from .github_client import GitHubClient
from .models import AuthorStat, AuthorStatsResult, StatsWindow
from .payload import format_timestamp, utc_now
from .raw_store import RawStore

logger = logging.getLogger(__name__)

TOP_AUTHOR_LIMIT = 5
BOT_LOGIN_PATTERN = "%[bot]"
DEFAULT_RANK = "overall"
RANK_ORDERINGS: Dict[str, str] = {
    "overall": "total_score DESC, total_prs DESC",
    "feat": "feat_count DESC, total_score DESC",
    "fix": "fix_count DESC, total_score DESC",
    "chore": "chore_count DESC, total_score DESC",
    "revert": "revert_count DESC, total_score DESC",
    "other": "other_count DESC, total_score DESC",
}

AGGREGATE_FACTS_SQL = """
SELECT
    author,
    author_url,
    SUM(points) AS total_score,
    COUNT(*) AS total_prs,
    SUM(CASE WHEN kind = 'feat' THEN 1 ELSE 0 END) AS feat_count,
    SUM(CASE WHEN kind = 'fix' THEN 1 ELSE 0 END) AS fix_count,
    SUM(CASE WHEN kind = 'chore' THEN 1 ELSE 0 END) AS chore_count,
    SUM(CASE WHEN kind = 'revert' THEN 1 ELSE 0 END) AS revert_count,
    SUM(CASE WHEN kind = 'other' THEN 1 ELSE 0 END) AS other_count
FROM pr_facts
WHERE owner = :owner
  AND repo = :repo
  AND merged_at >= :since
  AND merged_at <= :until
  AND lower(author) NOT LIKE :bot_pattern
GROUP BY author, author_url
ORDER BY {order_by}, author ASC
LIMIT :limit
"""

READ_STATS_SQL = """
SELECT author, author_url, total_score, total_prs,
       feat_count, fix_count, chore_count, revert_count, other_count,
       since_iso, until_iso, computed_at
FROM author_stats
WHERE owner = :owner AND repo = :repo AND days = :days
ORDER BY {order_by}, author ASC
LIMIT :limit
"""

UPSERT_STAT_SQL = """
INSERT INTO author_stats (
    owner, repo, days, since_iso, until_iso, author, author_url,
    total_score, total_prs, feat_count, fix_count, chore_count, revert_count, other_count, computed_at
) VALUES (
    :owner, :repo, :days, :since_iso, :until_iso, :author, :author_url,
    :total_score, :total_prs, :feat_count, :fix_count, :chore_count, :revert_count, :other_count, :computed_at
)
ON CONFLICT(owner, repo, days, author) DO UPDATE SET
    since_iso = excluded.since_iso,
    until_iso = excluded.until_iso,
    author_url = excluded.author_url,
    total_score = excluded.total_score,
    total_prs = excluded.total_prs,
    feat_count = excluded.feat_count,
    fix_count = excluded.fix_count,
    chore_count = excluded.chore_count,
    revert_count = excluded.revert_count,
    other_count = excluded.other_count,
    computed_at = excluded.computed_at
"""


def normalize_rank(rank_by: Optional[str]) -> str:
    key = (rank_by or DEFAULT_RANK).strip().lower()
    return key if key in RANK_ORDERINGS else DEFAULT_RANK


def build_window(days: int, now: datetime) -> StatsWindow:
    return StatsWindow(
        days=days,
        since=format_timestamp(now - timedelta(days=days)),
        until=format_timestamp(now),
    )


def _row_to_stat(row: sqlite3.Row, computed_at: Optional[str] = None) -> AuthorStat:
    keys = row.keys()
    return AuthorStat(
        author=row["author"],
        author_url=row["author_url"],
        total_score=float(row["total_score"] or 0),
        total_prs=int(row["total_prs"] or 0),
        feat_count=int(row["feat_count"] or 0),
        fix_count=int(row["fix_count"] or 0),
        chore_count=int(row["chore_count"] or 0),
        revert_count=int(row["revert_count"] or 0),
        other_count=int(row["other_count"] or 0),
        computed_at=row["computed_at"] if "computed_at" in keys else computed_at,
    )


def aggregate_author_stats(
    database: Database,
    owner: str,
    repo: str,
    window: StatsWindow,
    rank_by: str = DEFAULT_RANK,
) -> List[AuthorStat]:
    """Group facts merged inside ``window`` by author, excluding ``[bot]`` accounts.

    Returns at most ``TOP_AUTHOR_LIMIT`` authors in ranking order.
    """
    rows = database.fetch_all(
        AGGREGATE_FACTS_SQL.format(order_by=RANK_ORDERINGS[normalize_rank(rank_by)]),
        {
            "owner": owner,
            "repo": repo,
            "since": window.since,
            "until": window.until,
            "bot_pattern": BOT_LOGIN_PATTERN,
            "limit": TOP_AUTHOR_LIMIT,
        },
    )
    return [_row_to_stat(row) for row in rows]


def persist_author_stats(
    database: Database,
    owner: str,
    repo: str,
    window: StatsWindow,
    stats: List[AuthorStat],
    computed_at: str,
) -> int:
    """Upsert each author's stats for the window, replacing every stored value."""
    with database.transaction() as connection:
        for stat in stats:
            stat.computed_at = computed_at
            connection.execute(
                UPSERT_STAT_SQL,
                {
                    "owner": owner,
                    "repo": repo,
                    "days": window.days,
                    "since_iso": window.since,
                    "until_iso": window.until,
                    "author": stat.author,
                    "author_url": stat.author_url,
                    "total_score": stat.total_score,
                    "total_prs": stat.total_prs,
                    "feat_count": stat.feat_count,
                    "fix_count": stat.fix_count,
                    "chore_count": stat.chore_count,
                    "revert_count": stat.revert_count,
                    "other_count": stat.other_count,
                    "computed_at": computed_at,
                },
            )
    return len(stats)


def compute_author_stats(
    database: Database,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    client: Optional[GitHubClient] = None,
    raw_store: Optional[RawStore] = None,
    now: Optional[datetime] = None,
) -> AuthorStatsResult:
    """Refresh facts, then recompute and store the top authors for a window.

    Facts are always re-derived first so the statistics reflect every stored
    raw detail. Each author row is fully overwritten.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS
    now = now or utc_now()

    refresh_pr_facts(database, owner, repo, window_days, client=client, raw_store=raw_store, now=now)

    started = time.perf_counter()
    window = build_window(window_days, now)
    top_authors = aggregate_author_stats(database, owner, repo, window)
    computed_at = format_timestamp(utc_now())
    rows_written = persist_author_stats(database, owner, repo, window, top_authors, computed_at)

    logger.info(
        "Recomputed author stats",
        extra={
            "owner": owner,
            "repo": repo,
            "days": window_days,
            "rows_written": rows_written,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    return AuthorStatsResult(
        window=window,
        top_authors=top_authors,
        computed_at=computed_at,
        rows_written=rows_written,
        origin="recomputed",
    )


def read_author_stats(
    database: Database,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    rank_by: Optional[str] = DEFAULT_RANK,
    now: Optional[datetime] = None,
) -> AuthorStatsResult:
    """Serve the leaderboard for a window without contacting GitHub.

    Stored statistics are returned when present. Otherwise the facts are
    aggregated for the window ending now, and that result is stored so the
    next read can use it.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS
    rank = normalize_rank(rank_by)
    window = build_window(window_days, now or utc_now())

    rows = database.fetch_all(
        READ_STATS_SQL.format(order_by=RANK_ORDERINGS[rank]),
        {"owner": owner, "repo": repo, "days": window_days, "limit": TOP_AUTHOR_LIMIT},
    )
    if rows:
        top_authors = [_row_to_stat(row) for row in rows]
        computed_at = max((stat.computed_at for stat in top_authors if stat.computed_at), default=None)
        logger.debug("Serving stored author stats", extra={"owner": owner, "repo": repo, "days": window_days})
        return AuthorStatsResult(
            window=window,
            top_authors=top_authors,
            computed_at=computed_at,
            rows_written=0,
            origin="precomputed",
        )

    logger.debug("No stored author stats; aggregating from facts", extra={"owner": owner, "repo": repo})
    top_authors = aggregate_author_stats(database, owner, repo, window, rank)
    computed_at = None
    rows_written = 0
    if top_authors:
        computed_at = format_timestamp(utc_now())
        rows_written = persist_author_stats(database, owner, repo, window, top_authors, computed_at)

    return AuthorStatsResult(
        window=window,
        top_authors=top_authors,
        computed_at=computed_at,
        rows_written=rows_written,
        origin="facts",
    )


def format_score(score: float) -> str:
    """Render a score without a trailing ``.0`` for whole numbers."""
    return f"{score:g}"


def generate_report(repo_name: str, result: AuthorStatsResult) -> str:
    """Generate a human-readable leaderboard for one repository window.

    Args:
        repo_name: Repository display name, usually ``owner/repo``.
        result: Leaderboard rows and window from the read or recompute path.

    Returns:
        Formatted multi-line text report.
    """
    lines = [
        f"Repository: {repo_name}",
        f"Top authors, last {result.window.days} days ({result.window.since} to {result.window.until})",
        "",
    ]

    if not result.top_authors:
        lines.append("   No merged pull requests in this window.")
    for position, stat in enumerate(result.top_authors, start=1):
        lines.append(
            f"{position}) {stat.author}  score={format_score(stat.total_score)}  prs={stat.total_prs}"
        )
        lines.append(
            f"   feat={stat.feat_count} fix={stat.fix_count} chore={stat.chore_count} "
            f"revert={stat.revert_count} other={stat.other_count}"
        )

    lines.append("")
    lines.append(f"Computed at: {result.computed_at or 'n/a'}")
    return "\n".join(lines)
