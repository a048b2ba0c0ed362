"""Service surface for request handlers and the CLI.

Every public method returns a JSON-ready envelope: ``{"ok": True, ...}`` on
success, or ``{"ok": False, "error": ..., "status": ...}`` where ``status`` is
the HTTP-equivalent code. Rate-limit failures add ``rateLimit`` and the partial
``summary`` so callers can schedule a retry after the reset time.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from .config import Config, normalize_window
from .db import Database, init_database
from .discovery import ingest_pull_requests, sync_merged_pull_requests
from .errors import (
    AuthenticationError,
    ConfigurationError,
    DataIntegrityGap,
    ImpactSyncError,
    OriginHttpError,
    OriginRateLimitError,
)
from .facts import refresh_pr_facts
from .github_client import GitHubClient
from .raw_store import RawStore
from .stats import compute_author_stats, read_author_stats
from .views import merged_pull_requests_view, repository_ingest_status, table_counts

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]


def error_status(error: ImpactSyncError) -> int:
    """Map an error to its HTTP-equivalent status code."""
    if isinstance(error, OriginRateLimitError):
        return 429
    if isinstance(error, AuthenticationError):
        return 401
    if isinstance(error, ConfigurationError):
        return 400
    if isinstance(error, DataIntegrityGap):
        return 409
    if isinstance(error, OriginHttpError):
        return 502
    return 500


def error_envelope(error: ImpactSyncError) -> Envelope:
    envelope: Envelope = {"ok": False, "error": str(error), "status": error_status(error)}
    if isinstance(error, OriginRateLimitError):
        envelope["rateLimit"] = error.rate_limit.to_dict() if error.rate_limit else None
        envelope["summary"] = error.summary.to_dict() if error.summary else None
    elif isinstance(error, OriginHttpError):
        envelope["originStatus"] = error.status
    return envelope


class ImpactService:
    """Wires configuration, storage and the GitHub client behind envelope-returning operations."""

    def __init__(
        self,
        config: Config,
        database: Optional[Database] = None,
        client: Optional[GitHubClient] = None,
    ) -> None:
        self._config = config
        self._database = database or init_database(config.database_path)
        self._raw_store = RawStore(self._database)
        self._client = client

    @property
    def database(self) -> Database:
        return self._database

    def _github(self) -> GitHubClient:
        if self._client is None:
            self._client = GitHubClient(self._config)
        return self._client

    def _enveloped(self, operation: Callable[[], Envelope]) -> Envelope:
        try:
            return {"ok": True, **operation()}
        except ImpactSyncError as exc:
            logger.warning(
                "Operation failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )
            return error_envelope(exc)

    def trigger_sync(
        self,
        owner: str,
        repo: str,
        days: Optional[int] = None,
        max_details: Optional[int] = None,
        max_list_pages: Optional[int] = None,
    ) -> Envelope:
        """Discover merged PRs and store their raw details."""
        return self._enveloped(
            lambda: sync_merged_pull_requests(
                self._github(),
                self._raw_store,
                owner,
                repo,
                days=days,
                max_details=max_details,
                max_list_pages=max_list_pages,
            ).to_dict()
        )

    def ingest_pulls(
        self,
        owner: str,
        repo: str,
        days: Optional[int] = None,
        per_page: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> Envelope:
        """Store the all-state PR listing for the lookback window without fetching details."""
        return self._enveloped(
            lambda: ingest_pull_requests(
                self._github(),
                self._raw_store,
                owner,
                repo,
                days=days,
                per_page=per_page,
                max_pages=max_pages,
            ).to_dict()
        )

    def sync_and_refresh(
        self,
        owner: str,
        repo: str,
        days: Optional[int] = None,
        max_details: Optional[int] = 2000,
        max_list_pages: Optional[int] = 10,
    ) -> Envelope:
        """Sync raw data, then derive facts, reporting how many new facts appeared."""

        def operation() -> Envelope:
            client = self._github()
            facts_before = self._count_facts(owner, repo)
            summary = sync_merged_pull_requests(
                client,
                self._raw_store,
                owner,
                repo,
                days=days,
                max_details=max_details,
                max_list_pages=max_list_pages,
            )
            window = refresh_pr_facts(
                self._database,
                summary.owner,
                summary.repo,
                summary.days,
                client=client,
                raw_store=self._raw_store,
            )
            facts_after = self._count_facts(summary.owner, summary.repo)
            return {
                "discoveredMergedPrs": summary.prs_discovered,
                "fetchedPrDetails": summary.details_fetched,
                "storedRaw": summary.details_stored + summary.list_pages_fetched,
                "insertedPrFacts": max(facts_after - facts_before, 0),
                "skippedDuplicates": summary.details_already_present,
                "rateLimit": summary.rate_limit.to_dict() if summary.rate_limit else None,
                "repoDefaultBranch": summary.default_branch,
                "factWindow": window.to_dict(),
            }

        return self._enveloped(operation)

    def _count_facts(self, owner: str, repo: str) -> int:
        row = self._database.fetch_one(
            "SELECT COUNT(*) AS count FROM pr_facts WHERE owner = ? AND repo = ?",
            ((owner or "").strip(), (repo or "").strip()),
        )
        return int(row["count"]) if row else 0

    def recompute_stats(self, owner: str, repo: str, days: Optional[int] = None) -> Envelope:
        """Recompute stored author stats for a 30/60/90-day window.

        GitHub is only contacted when repository metadata has never been stored.
        """

        def operation() -> Envelope:
            client = self._client
            if client is None and self._config.github_token:
                client = self._github()
            result = compute_author_stats(
                self._database,
                owner,
                repo,
                normalize_window(days),
                client=client,
                raw_store=self._raw_store,
            )
            return result.to_dict()

        return self._enveloped(operation)

    def read_stats(
        self,
        owner: str,
        repo: str,
        days: Optional[int] = None,
        rank_by: Optional[str] = None,
    ) -> Envelope:
        """Read the leaderboard for a 30/60/90-day window; never calls GitHub."""
        return self._enveloped(
            lambda: read_author_stats(self._database, owner, repo, normalize_window(days), rank_by).to_dict()
        )

    def merged_prs(
        self,
        owner: str,
        repo: str,
        days: Optional[int] = None,
        limit: Optional[int] = None,
        exclude_bots: bool = False,
    ) -> Envelope:
        return self._enveloped(
            lambda: {
                "view": merged_pull_requests_view(
                    self._database, owner, repo, days=days, limit=limit, exclude_bots=exclude_bots
                )
            }
        )

    def repo_status(self, owner: str, repo: str) -> Envelope:
        return self._enveloped(lambda: repository_ingest_status(self._database, owner, repo))

    def database_status(self) -> Envelope:
        return self._enveloped(lambda: {"dbPath": self._database.path, "counts": table_counts(self._database)})

    def recent_responses(self, limit: int = 10, source: Optional[str] = None) -> Envelope:
        return self._enveloped(
            lambda: {"recent": [row.to_dict() for row in self._raw_store.recent(limit=limit, source=source)]}
        )
