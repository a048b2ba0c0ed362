"""Read-only views over the raw store for inspection and debugging."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .config import DEFAULT_DAYS, require_repository
from .db import Database
from .facts import like_escape
from .github_client import repository_path
from .models import PullRequestPreview, RepositoryPreview
from .payload import parse_json, utc_now
from .raw_store import GITHUB_SOURCE, RawStore
from .stats import build_window

logger = logging.getLogger(__name__)

DEFAULT_VIEW_LIMIT = 200
MAX_VIEW_LIMIT = 5000

BOT_FILTER_SQL = """
  AND lower(coalesce(json_extract(payload, '$.user.type'), '')) != 'bot'
  AND lower(coalesce(json_extract(payload, '$.user.login'), '')) NOT LIKE '%bot%'
"""

MERGED_VIEW_SQL = r"""
WITH latest AS (
    SELECT max(id) AS id
    FROM api_raw_responses
    WHERE source = :source
      AND endpoint LIKE :endpoint_like ESCAPE '\'
      AND status_code = 200
      AND json_valid(payload)
      AND json_extract(payload, '$.number') IS NOT NULL
      AND json_extract(payload, '$.merged_at') IS NOT NULL
      AND json_extract(payload, '$.merged_at') >= :since
      AND json_extract(payload, '$.base.ref') = :branch
      {bot_filter}
    GROUP BY json_extract(payload, '$.number')
)
SELECT payload
FROM api_raw_responses
WHERE id IN (SELECT id FROM latest)
ORDER BY json_extract(payload, '$.merged_at') DESC
LIMIT :limit
"""


def merged_pull_requests_view(
    database: Database,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    limit: Optional[int] = DEFAULT_VIEW_LIMIT,
    exclude_bots: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """List the latest stored detail of each PR merged into the default branch, newest first.

    Returns an empty PR list when no repository metadata (and so no default
    branch) has been stored yet.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS
    row_limit = min(max(int(limit or DEFAULT_VIEW_LIMIT), 1), MAX_VIEW_LIMIT)
    window = build_window(window_days, now or utc_now())

    repo_payload = RawStore(database).latest_payload(GITHUB_SOURCE, repository_path(owner, repo))
    repo_preview = RepositoryPreview.from_payload(repo_payload)

    view: Dict[str, Any] = {"window": window.to_dict(), "repo": repo_preview.to_dict(), "prs": []}
    if not repo_preview.default_branch:
        return view

    rows = database.fetch_all(
        MERGED_VIEW_SQL.format(bot_filter=BOT_FILTER_SQL if exclude_bots else ""),
        {
            "source": GITHUB_SOURCE,
            "endpoint_like": like_escape(f"{repository_path(owner, repo)}/pulls/") + "%",
            "since": window.since,
            "branch": repo_preview.default_branch,
            "limit": row_limit,
        },
    )

    prs = []
    for row in rows:
        payload = parse_json(row["payload"])
        if payload is None:
            logger.warning("Failed to parse stored pull request payload")
            continue
        prs.append(PullRequestPreview.from_payload(payload).to_dict())

    view["prs"] = prs
    view["counts"] = {
        "rowsReturned": len(prs),
        "uniquePrs": len({pr["number"] for pr in prs if pr["number"] is not None}),
    }
    return view


def repository_ingest_status(database: Database, owner: str, repo: str) -> Dict[str, Any]:
    """Count stored GitHub rows for a repository and report when metadata was last fetched."""
    owner, repo = require_repository(owner, repo)
    detail_like = like_escape(f"{repository_path(owner, repo)}/pulls/") + "%"

    total = database.fetch_one(
        "SELECT COUNT(*) AS count FROM api_raw_responses WHERE source = ?",
        (GITHUB_SOURCE,),
    )
    details = database.fetch_one(
        "SELECT COUNT(*) AS count FROM api_raw_responses WHERE source = ? AND endpoint LIKE ? ESCAPE '\\'",
        (GITHUB_SOURCE, detail_like),
    )
    merged_details = database.fetch_one(
        """
        SELECT COUNT(*) AS count FROM api_raw_responses
        WHERE source = ? AND endpoint LIKE ? ESCAPE '\\'
          AND json_valid(payload)
          AND json_extract(payload, '$.merged_at') IS NOT NULL
        """,
        (GITHUB_SOURCE, detail_like),
    )
    latest_metadata = database.fetch_one(
        """
        SELECT fetched_at FROM api_raw_responses
        WHERE source = ? AND endpoint = ?
        ORDER BY id DESC
        LIMIT 1
        """,
        (GITHUB_SOURCE, repository_path(owner, repo)),
    )

    return {
        "totalGithubRows": total["count"],
        "repoPullDetailRows": details["count"],
        "repoMergedPullDetailRows": merged_details["count"],
        "latestRepoMetadataFetchedAt": latest_metadata["fetched_at"] if latest_metadata else None,
    }


def table_counts(database: Database) -> Dict[str, int]:
    counts = {}
    for table in ("api_raw_responses", "pr_facts", "author_stats"):
        row = database.fetch_one(f"SELECT COUNT(*) AS count FROM {table}")
        counts[table] = int(row["count"]) if row else 0
    return counts
