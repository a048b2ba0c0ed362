"""Discovery of merged pull requests and concurrent detail fetching.

Two entry points share the listing walk. A merged-PR sync works in three
phases:
- Fetch repository metadata once to learn the default branch.
- Walk the closed-PR listing for that branch, newest update first, collecting
  PR numbers until the lookback window or one of the caps is exhausted.
- Fetch details for numbers not already stored as merged, four at a time.

Every GitHub reply is written to the raw store as soon as it arrives. Nothing
is rolled back when a run stops early; rerunning simply picks up where the
stored data leaves off.

The all-state ingest only stores the listing pages themselves.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlencode

from .config import DEFAULT_DAYS, require_repository
from .errors import DataIntegrityGap, OriginHttpError
from .github_client import (
    GitHubClient,
    OriginResponse,
    as_rate_limit_error,
    pull_path,
    pulls_list_params,
    repository_path,
)
from .models import IngestSummary, PullRequestPreview, RepositoryPreview, SyncSummary
from .payload import format_timestamp, get_int, get_list, get_str, parse_datetime, utc_now
from .raw_store import GITHUB_SOURCE, RawStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PR_DETAILS = 5000
MAX_PR_DETAILS_CAP = 10000
DEFAULT_MAX_LIST_PAGES = 200
DETAIL_CONCURRENCY = 4
PREVIEW_LIMIT = 5
ALL_STATES = "all"


def _clamp(value: Optional[int], default: int, low: int, high: int) -> int:
    if not value:
        return default
    return min(max(int(value), low), high)


def _cancel_pending(futures: Dict[Future, int]) -> None:
    for pending in futures:
        pending.cancel()


def list_endpoint(
    owner: str,
    repo: str,
    base: Optional[str],
    page: int,
    per_page: int,
    since: str,
    state: str = "closed",
) -> str:
    """Storage key for one listing page; the lookback boundary is part of the key."""
    query = urlencode(pulls_list_params(base, page, per_page, state=state), safe="/:")
    return f"{repository_path(owner, repo)}/pulls?{query}&since={since}"


class MergedPullRequestSync:
    """One discovery-and-fetch run for a single repository."""

    def __init__(
        self,
        client: GitHubClient,
        raw_store: RawStore,
        owner: str,
        repo: str,
        days: int,
        max_details: int,
        max_list_pages: int,
        now: datetime,
    ) -> None:
        self._client = client
        self._raw_store = raw_store
        self._owner = owner
        self._repo = repo
        self._max_details = max_details
        self._max_list_pages = max_list_pages
        self._since_at = now - timedelta(days=days)
        self.summary = SyncSummary(
            owner=owner,
            repo=repo,
            days=days,
            since=format_timestamp(self._since_at),
            default_branch="",
        )

    def run(self) -> SyncSummary:
        logger.info(
            "Starting merged PR sync",
            extra={"owner": self._owner, "repo": self._repo, "since": self.summary.since},
        )
        default_branch = self._fetch_repository()
        numbers = self._discover_numbers(default_branch)
        to_fetch = self._select_missing(numbers)
        self.summary.pr_previews = self._fetch_details(to_fetch)[:PREVIEW_LIMIT]

        logger.info(
            "Finished merged PR sync",
            extra={
                "owner": self._owner,
                "repo": self._repo,
                "list_pages": self.summary.list_pages_fetched,
                "discovered": self.summary.prs_discovered,
                "already_present": self.summary.details_already_present,
                "fetched": self.summary.details_fetched,
                "stored": self.summary.details_stored,
            },
        )
        return self.summary

    def _fetch(self, url: str) -> OriginResponse:
        """Fetch from the coordinating thread, attaching progress to rate-limit failures."""
        try:
            response = self._client.fetch(url)
        except OriginHttpError as exc:
            if exc.is_rate_limited:
                error = as_rate_limit_error(exc, summary=self.summary)
                self.summary.rate_limit = error.rate_limit or self.summary.rate_limit
                raise error from exc
            raise
        self._note_rate_limit(response)
        return response

    def _note_rate_limit(self, response: OriginResponse) -> None:
        self.summary.rate_limit = response.rate_limit or self.summary.rate_limit

    def _fetch_repository(self) -> str:
        response = self._fetch(self._client.repository_url(self._owner, self._repo))
        self._raw_store.store(
            GITHUB_SOURCE,
            repository_path(self._owner, self._repo),
            response.status,
            response.data,
        )

        preview = RepositoryPreview.from_payload(response.data)
        self.summary.repo_preview = preview
        if not preview.default_branch:
            raise DataIntegrityGap(
                f"Repository '{self._owner}/{self._repo}' has no default_branch; "
                "it is required to filter merged pull requests."
            )
        self.summary.default_branch = preview.default_branch
        return preview.default_branch

    def _discover_numbers(self, default_branch: str) -> List[int]:
        """Collect unique PR numbers from the closed-PR listing, newest update first.

        Stops on an empty page, once ``max_details`` numbers are known, once a
        page ends with a PR last updated before the lookback boundary, or after
        ``max_list_pages`` pages.
        """
        seen: Dict[int, None] = {}
        page_size = self._client.PULL_REQUEST_PAGE_SIZE

        for page in range(1, self._max_list_pages + 1):
            response = self._fetch(self._client.pulls_list_url(self._owner, self._repo, default_branch, page))
            self.summary.list_pages_fetched += 1
            self._raw_store.store(
                GITHUB_SOURCE,
                list_endpoint(self._owner, self._repo, default_branch, page, page_size, self.summary.since),
                response.status,
                response.data,
            )

            items = get_list(response.data) or []
            for item in items:
                number = get_int(item, "number")
                if number is not None and number not in seen:
                    seen[number] = None

            logger.debug(
                "Fetched pull request listing page",
                extra={"page": page, "items": len(items), "discovered": len(seen)},
            )

            if not items or len(seen) >= self._max_details:
                break

            last_updated = parse_datetime(get_str(items[-1], "updated_at"))
            if last_updated is not None and last_updated < self._since_at:
                break

        numbers = list(seen)[: self._max_details]
        self.summary.prs_discovered = len(numbers)
        return numbers

    def _select_missing(self, numbers: List[int]) -> List[int]:
        """Drop PRs whose newest stored detail already records a merge; merged details do not change."""
        to_fetch: List[int] = []
        for number in numbers:
            if self._raw_store.has_merged_detail(GITHUB_SOURCE, pull_path(self._owner, self._repo, number)):
                self.summary.details_already_present += 1
                continue
            to_fetch.append(number)
        return to_fetch

    def _fetch_details(self, numbers: List[int]) -> List[PullRequestPreview]:
        """Fetch PR details with a fixed-size worker pool.

        Workers only talk to GitHub; results are stored here in completion
        order. The first failure cancels everything not yet started, lets
        in-flight requests finish (their results are still stored) and is then
        re-raised. Rate-limit failures carry the partial summary.
        """
        previews: List[PullRequestPreview] = []
        if not numbers:
            return previews

        first_error: Optional[Exception] = None
        with ThreadPoolExecutor(max_workers=DETAIL_CONCURRENCY) as executor:
            futures: Dict[Future, int] = {
                executor.submit(self._client.fetch, self._client.pull_url(self._owner, self._repo, number)): number
                for number in numbers
            }
            try:
                for future in as_completed(futures):
                    if future.cancelled():
                        continue
                    number = futures[future]
                    try:
                        response = future.result()
                    except Exception as exc:
                        if first_error is None:
                            first_error = exc
                            _cancel_pending(futures)
                        else:
                            logger.warning(
                                "Pull request detail fetch failed after the run was stopped",
                                extra={"number": number, "error": str(exc)},
                            )
                        continue
                    previews.append(self._record_detail(number, response))
            except BaseException:
                # Storage failures stop dispatch the same way fetch failures do.
                _cancel_pending(futures)
                raise

        if first_error is not None:
            self.summary.pr_previews = previews[:PREVIEW_LIMIT]
            if isinstance(first_error, OriginHttpError) and first_error.is_rate_limited:
                error = as_rate_limit_error(first_error, summary=self.summary)
                self.summary.rate_limit = error.rate_limit or self.summary.rate_limit
                logger.warning(
                    "GitHub rate limit reached during detail fetch",
                    extra={"owner": self._owner, "repo": self._repo, "fetched": self.summary.details_fetched},
                )
                raise error from first_error
            raise first_error

        return previews

    def _record_detail(self, number: int, response: OriginResponse) -> PullRequestPreview:
        self._note_rate_limit(response)
        self.summary.details_fetched += 1

        result = self._raw_store.store(
            GITHUB_SOURCE,
            pull_path(self._owner, self._repo, number),
            response.status,
            response.data,
        )
        if result.inserted:
            self.summary.details_stored += 1

        preview = PullRequestPreview.from_payload(response.data, number=number)
        merged_at = parse_datetime(preview.merged_at)
        if merged_at is not None:
            merged_iso = format_timestamp(merged_at)
            if self.summary.oldest_merged_at is None or merged_iso < self.summary.oldest_merged_at:
                self.summary.oldest_merged_at = merged_iso
            if self.summary.newest_merged_at is None or merged_iso > self.summary.newest_merged_at:
                self.summary.newest_merged_at = merged_iso
            if merged_at >= self._since_at:
                self.summary.merged_in_window += 1
        return preview


def sync_merged_pull_requests(
    client: GitHubClient,
    raw_store: RawStore,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    max_details: Optional[int] = None,
    max_list_pages: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SyncSummary:
    """Discover merged pull requests for a repository and store their raw details.

    Args:
        client: Authenticated GitHub client.
        raw_store: Destination for every raw reply.
        owner: Repository owner.
        repo: Repository name.
        days: Lookback window in days; non-positive values fall back to 90.
        max_details: Cap on PR numbers collected, clamped to ``[1, 10000]``.
        max_list_pages: Cap on listing pages walked, clamped to ``[1, 200]``.
        now: Reference time, defaults to the current UTC time.

    Returns:
        The run's ``SyncSummary``.

    Raises:
        ConfigurationError: If owner or repo is blank.
        DataIntegrityGap: If the repository has no default branch.
        OriginRateLimitError: If GitHub rate limiting stopped the run; the
            partial summary is attached as ``summary``.
        OriginHttpError: For any other failed GitHub request.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS

    run = MergedPullRequestSync(
        client=client,
        raw_store=raw_store,
        owner=owner,
        repo=repo,
        days=window_days,
        max_details=_clamp(max_details, DEFAULT_MAX_PR_DETAILS, 1, MAX_PR_DETAILS_CAP),
        max_list_pages=_clamp(max_list_pages, DEFAULT_MAX_LIST_PAGES, 1, DEFAULT_MAX_LIST_PAGES),
        now=now or utc_now(),
    )
    return run.run()


def ingest_pull_requests(
    client: GitHubClient,
    raw_store: RawStore,
    owner: str,
    repo: str,
    days: Optional[int] = DEFAULT_DAYS,
    per_page: Optional[int] = None,
    max_pages: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IngestSummary:
    """Store every page of the all-state PR listing that overlaps the lookback window.

    Unlike :func:`sync_merged_pull_requests` this neither filters by branch nor
    fetches details; it keeps a raw history of the listing itself. Paging stops
    on an empty page, once a page ends with a PR last updated before the
    boundary (``stopped_early``), or after ``max_pages`` pages.

    Args:
        client: Authenticated GitHub client.
        raw_store: Destination for every listing page.
        owner: Repository owner.
        repo: Repository name.
        days: Lookback window in days; non-positive values fall back to 90.
        per_page: Page size, clamped to ``[1, 100]``.
        max_pages: Cap on pages walked, clamped to ``[1, 200]``.
        now: Reference time, defaults to the current UTC time.

    Raises:
        ConfigurationError: If owner or repo is blank.
        OriginRateLimitError: If GitHub rate limiting stopped the run; the
            partial summary is attached as ``summary``.
        OriginHttpError: For any other failed request or a listing that is
            not a JSON array.
    """
    owner, repo = require_repository(owner, repo)
    window_days = int(days) if days and days > 0 else DEFAULT_DAYS
    page_size = _clamp(per_page, client.PULL_REQUEST_PAGE_SIZE, 1, client.PULL_REQUEST_PAGE_SIZE)
    page_limit = _clamp(max_pages, DEFAULT_MAX_LIST_PAGES, 1, DEFAULT_MAX_LIST_PAGES)
    since_at = (now or utc_now()) - timedelta(days=window_days)
    summary = IngestSummary(
        owner=owner,
        repo=repo,
        days=window_days,
        since=format_timestamp(since_at),
        per_page=page_size,
    )

    for page in range(1, page_limit + 1):
        url = client.pulls_list_url(owner, repo, None, page, per_page=page_size, state=ALL_STATES)
        try:
            response = client.fetch(url)
        except OriginHttpError as exc:
            if exc.is_rate_limited:
                error = as_rate_limit_error(exc, summary=summary)
                summary.rate_limit = error.rate_limit or summary.rate_limit
                raise error from exc
            raise
        summary.rate_limit = response.rate_limit or summary.rate_limit

        items = get_list(response.data)
        if items is None:
            raise OriginHttpError(
                f"Unexpected GitHub response shape for pulls page {page}.",
                status=response.status,
            )

        result = raw_store.store(
            GITHUB_SOURCE,
            list_endpoint(owner, repo, None, page, page_size, summary.since, state=ALL_STATES),
            response.status,
            response.data,
        )
        if result.inserted:
            summary.stored_count += 1
        else:
            summary.skipped_duplicates_count += 1
        summary.pages_fetched += 1
        summary.prs_fetched_total += len(items)

        if not items:
            break

        last_updated = parse_datetime(get_str(items[-1], "updated_at"))
        if last_updated is not None and last_updated < since_at:
            summary.stopped_early = True
            break

        logger.info(
            "Fetched pull request page",
            extra={"owner": owner, "repo": repo, "page": page, "items": len(items), "total": summary.prs_fetched_total},
        )

    return summary
