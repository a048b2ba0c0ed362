"""Derivation of normalized merged-PR facts from stored raw detail payloads.

Only the latest stored detail per PR number counts, and only PRs merged into
the repository's default branch inside the lookback window become facts.
Titles are classified by their conventional-commit style prefix:

| Prefix starts with | Kind   | Points |
|--------------------|--------|--------|
| ``feat``           | feat   | 3      |
| ``fix``            | fix    | 2      |
| ``chore``          | chore  | 1      |
| ``revert``         | revert | 0.5    |
| anything else      | other  | 0.5    |
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .config import DEFAULT_DAYS, require_repository
from .db import Database
from .errors import DataIntegrityGap, MalformedRecord, OriginHttpError
from .github_client import GitHubClient, as_rate_limit_error, repository_path
from .models import FactWindow, PullRequestFact
from .payload import format_timestamp, get_str, normalize_timestamp, parse_json, utc_now
from .raw_store import GITHUB_SOURCE, RawStore

logger = logging.getLogger(__name__)

KIND_RULES: Tuple[Tuple[str, str, float], ...] = (
    ("feat", "feat", 3.0),
    ("fix", "fix", 2.0),
    ("chore", "chore", 1.0),
    ("revert", "revert", 0.5),
)
OTHER_KIND = ("other", 0.5)
AUTHOR_PROFILE_BASE_URL = "https://github.com"

LATEST_MERGED_DETAILS_SQL = r"""
WITH pr_rows AS (
    SELECT
        id AS source_row_id,
        fetched_at,
        payload,
        json_extract(payload, '$.number') AS pr_number,
        json_extract(payload, '$.base.ref') AS base_ref
    FROM api_raw_responses
    WHERE source = :source
      AND endpoint LIKE :endpoint_like ESCAPE '\'
      AND status_code = 200
      AND json_valid(payload)
      AND json_extract(payload, '$.number') IS NOT NULL
      AND json_extract(payload, '$.merged_at') IS NOT NULL
      AND json_extract(payload, '$.merged_at') >= :since
),
latest AS (
    SELECT pr_number, MAX(source_row_id) AS source_row_id
    FROM pr_rows
    GROUP BY pr_number
)
SELECT r.source_row_id, r.fetched_at, r.payload
FROM pr_rows r
JOIN latest l ON r.source_row_id = l.source_row_id
WHERE r.base_ref = :default_branch
ORDER BY r.source_row_id
"""

UPSERT_FACT_SQL = """
INSERT INTO pr_facts (
    owner, repo, pr_url, merged_at, title, author, author_url, kind, points, source_row_id, fetched_at
) VALUES (
    :owner, :repo, :pr_url, :merged_at, :title, :author, :author_url, :kind, :points, :source_row_id, :fetched_at
)
ON CONFLICT(owner, repo, pr_url) DO UPDATE SET
    merged_at = excluded.merged_at,
    title = excluded.title,
    author = excluded.author,
    author_url = excluded.author_url,
    kind = excluded.kind,
    points = excluded.points,
    source_row_id = excluded.source_row_id,
    fetched_at = excluded.fetched_at
"""


def classify_title(title: str) -> Tuple[str, float]:
    """Classify a PR title by the text before its first colon, case-insensitively."""
    prefix = title.lower().split(":", 1)[0].strip()
    for marker, kind, points in KIND_RULES:
        if prefix.startswith(marker):
            return kind, points
    return OTHER_KIND


def author_profile_url(login: str) -> str:
    return f"{AUTHOR_PROFILE_BASE_URL}/{login}"


def like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def resolve_default_branch(
    raw_store: RawStore,
    owner: str,
    repo: str,
    client: Optional[GitHubClient] = None,
) -> str:
    """Return the default branch from stored repository metadata.

    When no metadata is stored and a client is given, the metadata is fetched
    and stored first. Without a client the stored copy must already exist.

    Raises:
        DataIntegrityGap: If no metadata is available or it lacks ``default_branch``.
        OriginRateLimitError: If the on-demand fetch is rate limited.
    """
    endpoint = repository_path(owner, repo)
    payload = raw_store.latest_payload(GITHUB_SOURCE, endpoint)

    if payload is None and client is not None:
        logger.info("Fetching missing repository metadata", extra={"owner": owner, "repo": repo})
        try:
            response = client.fetch(client.repository_url(owner, repo))
        except OriginHttpError as exc:
            if exc.is_rate_limited:
                raise as_rate_limit_error(exc) from exc
            raise
        raw_store.store(GITHUB_SOURCE, endpoint, response.status, response.data)
        payload = response.data

    if payload is None:
        raise DataIntegrityGap(f"No stored repository metadata for '{owner}/{repo}'; run a sync first.")

    default_branch = get_str(payload, "default_branch")
    if not default_branch:
        raise DataIntegrityGap("default_branch not found in stored repo metadata")
    return default_branch


def parse_fact(owner: str, repo: str, row: sqlite3.Row) -> PullRequestFact:
    """Build a fact from one raw detail row.

    Raises:
        MalformedRecord: If the payload lacks the URL, merge time, title or author.
    """
    payload = parse_json(row["payload"])
    pr_url = get_str(payload, "html_url")
    merged_at = normalize_timestamp(get_str(payload, "merged_at"))
    title = get_str(payload, "title")
    author = get_str(payload, "user", "login")

    if not pr_url or not merged_at or not title or not author:
        raise MalformedRecord(f"Raw response {row['source_row_id']} is missing required pull request fields")

    kind, points = classify_title(title)
    return PullRequestFact(
        owner=owner,
        repo=repo,
        pr_url=pr_url,
        merged_at=merged_at,
        title=title,
        author=author,
        author_url=author_profile_url(author),
        kind=kind,
        points=points,
        source_row_id=row["source_row_id"],
        fetched_at=row["fetched_at"],
    )


def upsert_fact(connection: sqlite3.Connection, fact: PullRequestFact) -> None:
    connection.execute(
        UPSERT_FACT_SQL,
        {
            "owner": fact.owner,
            "repo": fact.repo,
            "pr_url": fact.pr_url,
            "merged_at": fact.merged_at,
            "title": fact.title,
            "author": fact.author,
            "author_url": fact.author_url,
            "kind": fact.kind,
            "points": fact.points,
            "source_row_id": fact.source_row_id,
            "fetched_at": fact.fetched_at,
        },
    )


def refresh_pr_facts(
    database: Database,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    client: Optional[GitHubClient] = None,
    raw_store: Optional[RawStore] = None,
    now: Optional[datetime] = None,
) -> FactWindow:
    """Derive and upsert facts for every qualifying merged PR of a repository.

    Re-running on unchanged raw data rewrites the same rows with the same
    values. Rows with unusable payloads are skipped individually.

    Returns:
        The window used, plus how many facts were written.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS
    now = now or utc_now()
    since = format_timestamp(now - timedelta(days=window_days))
    until = format_timestamp(now)
    raw_store = raw_store or RawStore(database)

    started = time.perf_counter()
    default_branch = resolve_default_branch(raw_store, owner, repo, client=client)

    rows = database.fetch_all(
        LATEST_MERGED_DETAILS_SQL,
        {
            "source": GITHUB_SOURCE,
            "endpoint_like": like_escape(f"{repository_path(owner, repo)}/pulls/") + "%",
            "since": since,
            "default_branch": default_branch,
        },
    )

    facts: List[PullRequestFact] = []
    skipped = 0
    for row in rows:
        try:
            facts.append(parse_fact(owner, repo, row))
        except MalformedRecord as exc:
            skipped += 1
            logger.debug("Skipping malformed pull request payload", extra={"reason": str(exc)})

    with database.transaction() as connection:
        for fact in facts:
            upsert_fact(connection, fact)

    logger.debug(
        "Refreshed pull request facts",
        extra={
            "owner": owner,
            "repo": repo,
            "candidates": len(rows),
            "facts_written": len(facts),
            "skipped": skipped,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    return FactWindow(since=since, until=until, facts_written=len(facts))
