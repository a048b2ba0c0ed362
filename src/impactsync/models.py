"""Domain models for raw GitHub responses, derived facts and author statistics.

Preview dataclasses intentionally model only the subset of payload fields that
are reported back to callers; the full payload always stays in the raw store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .payload import get_int, get_str


@dataclass(slots=True)
class RateLimitInfo:
    """Last known GitHub rate-limit state, kept as the raw header strings."""

    remaining: Optional[str]
    reset: Optional[str]

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, Any]]) -> Optional["RateLimitInfo"]:
        lowered = {str(key).lower(): str(value) for key, value in (headers or {}).items()}
        remaining = lowered.get("x-ratelimit-remaining")
        reset = lowered.get("x-ratelimit-reset")
        if remaining is None and reset is None:
            return None
        return cls(remaining=remaining, reset=reset)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"remaining": self.remaining, "reset": self.reset}


@dataclass(slots=True)
class StoreResult:
    """Outcome of one raw-response write: either a new row id or a skip reason."""

    inserted: bool
    id: Optional[int] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class RawResponse:
    """Metadata of one stored GitHub reply."""

    id: int
    source: str
    endpoint: str
    fetched_at: str
    status_code: Optional[int]
    checksum: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "endpoint": self.endpoint,
            "fetched_at": self.fetched_at,
            "status_code": self.status_code,
            "checksum": self.checksum,
        }


@dataclass(slots=True)
class RepositoryPreview:
    name: Optional[str] = None
    stars: Optional[int] = None
    forks: Optional[int] = None
    default_branch: Optional[str] = None
    open_issues: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "RepositoryPreview":
        return cls(
            name=get_str(payload, "name"),
            stars=get_int(payload, "stargazers_count"),
            forks=get_int(payload, "forks_count"),
            default_branch=get_str(payload, "default_branch"),
            open_issues=get_int(payload, "open_issues_count"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stars": self.stars,
            "forks": self.forks,
            "defaultBranch": self.default_branch,
            "openIssues": self.open_issues,
        }


@dataclass(slots=True)
class PullRequestPreview:
    number: Optional[int]
    title: Optional[str] = None
    author: Optional[str] = None
    merged_at: Optional[str] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None
    url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, number: Optional[int] = None) -> "PullRequestPreview":
        return cls(
            number=number if number is not None else get_int(payload, "number"),
            title=get_str(payload, "title"),
            author=get_str(payload, "user", "login"),
            merged_at=get_str(payload, "merged_at"),
            additions=get_int(payload, "additions"),
            deletions=get_int(payload, "deletions"),
            changed_files=get_int(payload, "changed_files"),
            url=get_str(payload, "html_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "author": self.author,
            "mergedAt": self.merged_at,
            "additions": self.additions,
            "deletions": self.deletions,
            "changedFiles": self.changed_files,
            "url": self.url,
        }


@dataclass(slots=True)
class SyncSummary:
    """Progress counters for one discovery run; also attached to rate-limit errors."""

    owner: str
    repo: str
    days: int
    since: str
    default_branch: str
    list_pages_fetched: int = 0
    prs_discovered: int = 0
    details_already_present: int = 0
    details_fetched: int = 0
    details_stored: int = 0
    merged_in_window: int = 0
    oldest_merged_at: Optional[str] = None
    newest_merged_at: Optional[str] = None
    rate_limit: Optional[RateLimitInfo] = None
    repo_preview: RepositoryPreview = field(default_factory=RepositoryPreview)
    pr_previews: List[PullRequestPreview] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "days": self.days,
            "sinceIso": self.since,
            "defaultBranch": self.default_branch,
            "listPagesFetched": self.list_pages_fetched,
            "prsDiscoveredFromList": self.prs_discovered,
            "prDetailsAlreadyPresent": self.details_already_present,
            "prDetailsFetched": self.details_fetched,
            "prDetailsStored": self.details_stored,
            "mergedPrsWithinWindowCount": self.merged_in_window,
            "rateLimit": self.rate_limit.to_dict() if self.rate_limit else None,
            "oldestMergedAtFetched": self.oldest_merged_at,
            "newestMergedAtFetched": self.newest_merged_at,
            "preview": {
                "repo": self.repo_preview.to_dict(),
                "prs": [preview.to_dict() for preview in self.pr_previews],
            },
        }


@dataclass(slots=True)
class IngestSummary:
    """Counters for one all-state listing ingest."""

    owner: str
    repo: str
    days: int
    since: str
    per_page: int
    pages_fetched: int = 0
    prs_fetched_total: int = 0
    stored_count: int = 0
    skipped_duplicates_count: int = 0
    stopped_early: bool = False
    rate_limit: Optional[RateLimitInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "days": self.days,
            "sinceIso": self.since,
            "perPage": self.per_page,
            "pagesFetched": self.pages_fetched,
            "prsFetchedTotal": self.prs_fetched_total,
            "storedCount": self.stored_count,
            "skippedDuplicatesCount": self.skipped_duplicates_count,
            "stoppedEarly": self.stopped_early,
            "rateLimit": self.rate_limit.to_dict() if self.rate_limit else None,
        }


@dataclass(slots=True)
class PullRequestFact:
    """One merged pull request, classified and scored."""

    owner: str
    repo: str
    pr_url: str
    merged_at: str
    title: str
    author: str
    author_url: str
    kind: str
    points: float
    source_row_id: int
    fetched_at: str


@dataclass(slots=True)
class FactWindow:
    since: str
    until: str
    facts_written: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"sinceIso": self.since, "untilIso": self.until, "factsWritten": self.facts_written}


@dataclass(slots=True)
class StatsWindow:
    days: int
    since: str
    until: str

    def to_dict(self) -> Dict[str, Any]:
        return {"days": self.days, "since": self.since, "until": self.until}


@dataclass(slots=True)
class AuthorStat:
    """One author's aggregate for a single repository window."""

    author: str
    author_url: str
    total_score: float
    total_prs: int
    feat_count: int = 0
    fix_count: int = 0
    chore_count: int = 0
    revert_count: int = 0
    other_count: int = 0
    computed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorStat":
        return cls(
            author=data["author"],
            author_url=data["authorUrl"],
            total_score=data["totalScore"],
            total_prs=data["totalPrs"],
            feat_count=data.get("featCount", 0),
            fix_count=data.get("fixCount", 0),
            chore_count=data.get("choreCount", 0),
            revert_count=data.get("revertCount", 0),
            other_count=data.get("otherCount", 0),
            computed_at=data.get("computedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "authorUrl": self.author_url,
            "totalScore": self.total_score,
            "totalPrs": self.total_prs,
            "featCount": self.feat_count,
            "fixCount": self.fix_count,
            "choreCount": self.chore_count,
            "revertCount": self.revert_count,
            "otherCount": self.other_count,
            "computedAt": self.computed_at,
        }


@dataclass(slots=True)
class AuthorStatsResult:
    """Leaderboard rows for one window plus where they came from.

    ``origin`` is ``"recomputed"`` for the explicit recompute path,
    ``"precomputed"`` when served from stored stats and ``"facts"`` when the
    read path had to aggregate on demand.
    """

    window: StatsWindow
    top_authors: List[AuthorStat]
    computed_at: Optional[str]
    rows_written: int
    origin: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorStatsResult":
        window = data["window"]
        return cls(
            window=StatsWindow(days=window["days"], since=window["since"], until=window["until"]),
            top_authors=[AuthorStat.from_dict(row) for row in data.get("topAuthors", [])],
            computed_at=data.get("computedAt"),
            rows_written=data.get("rowsWritten", 0),
            origin=data.get("origin", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window.to_dict(),
            "topAuthors": [author.to_dict() for author in self.top_authors],
            "computedAt": self.computed_at,
            "rowsWritten": self.rows_written,
            "origin": self.origin,
        }
