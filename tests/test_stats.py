"""Tests for author statistics aggregation, the read path and report rendering."""

import sys
from itertools import count
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from factories import NOW, OWNER, REPO, pr_detail, repo_payload
from impactsync.errors import ConfigurationError
from impactsync.facts import classify_title
from impactsync.models import AuthorStat, AuthorStatsResult, StatsWindow
from impactsync.stats import (
    aggregate_author_stats,
    build_window,
    compute_author_stats,
    format_score,
    generate_report,
    read_author_stats,
)

_pr_numbers = count(1)


def _insert_fact(database, author, title="feat: work", merged_at="2026-02-20T00:00:00Z", owner=OWNER, repo=REPO):
    number = next(_pr_numbers)
    kind, points = classify_title(title)
    database.execute(
        """
        INSERT INTO pr_facts (
            owner, repo, pr_url, merged_at, title, author, author_url, kind, points, source_row_id, fetched_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            owner,
            repo,
            f"https://github.com/{owner}/{repo}/pull/{number}",
            merged_at,
            title,
            author,
            f"https://github.com/{author}",
            kind,
            points,
            number,
            "2026-02-28T00:00:00Z",
        ),
    )


def _authors(stats):
    return [stat.author for stat in stats]


def test_build_window_spans_days_ending_now():
    """Verify the window boundaries are rendered as second-precision UTC strings."""
    window = build_window(90, NOW)

    assert window.since == "2025-12-01T12:00:00Z"
    assert window.until == "2026-03-01T12:00:00Z"


def test_aggregate_sums_points_and_counts_kinds(database):
    """Verify per-author totals and per-kind counts."""
    _insert_fact(database, "alice", "feat: a")
    _insert_fact(database, "alice", "fix: b")
    _insert_fact(database, "alice", "Revert x")
    _insert_fact(database, "bob", "chore: c")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["alice", "bob"]
    alice = stats[0]
    assert alice.total_score == pytest.approx(5.5)
    assert alice.total_prs == 3
    assert (alice.feat_count, alice.fix_count, alice.chore_count, alice.revert_count, alice.other_count) == (
        1,
        1,
        0,
        1,
        0,
    )
    assert alice.author_url == "https://github.com/alice"


def test_aggregate_breaks_ties_by_pr_count_then_author(database):
    """Verify equal scores rank more PRs first, then authors alphabetically."""
    _insert_fact(database, "zed", "feat: a")
    _insert_fact(database, "amy", "feat: b")
    _insert_fact(database, "bob", "fix: c")
    _insert_fact(database, "bob", "chore: d")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["bob", "amy", "zed"]


def test_aggregate_limits_to_top_five(database):
    """Verify only the five highest-scoring authors are returned."""
    for position, author in enumerate(["a1", "a2", "a3", "a4", "a5", "a6", "a7"]):
        for _ in range(7 - position):
            _insert_fact(database, author, "chore: x")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["a1", "a2", "a3", "a4", "a5"]


def test_aggregate_excludes_bot_accounts(database):
    """Verify authors whose login ends in [bot] are never ranked."""
    _insert_fact(database, "dependabot[bot]", "feat: bump")
    _insert_fact(database, "dependabot[bot]", "feat: bump again")
    _insert_fact(database, "alice", "chore: tidy")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["alice"]


def test_aggregate_window_boundary_is_inclusive(database):
    """Verify a merge exactly at the window start counts and one second earlier does not."""
    _insert_fact(database, "edge", "feat: on boundary", merged_at="2025-12-01T12:00:00Z")
    _insert_fact(database, "early", "feat: just before", merged_at="2025-12-01T11:59:59Z")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["edge"]


def test_aggregate_is_scoped_to_repository(database):
    """Verify facts of other repositories are ignored."""
    _insert_fact(database, "alice", "feat: here")
    _insert_fact(database, "mallory", "feat: elsewhere", repo="gadgets")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW))

    assert _authors(stats) == ["alice"]


def test_aggregate_rank_by_kind(database):
    """Verify ranking by fix count reorders authors."""
    _insert_fact(database, "alice", "feat: a")
    _insert_fact(database, "alice", "feat: b")
    _insert_fact(database, "bob", "fix: c")

    stats = aggregate_author_stats(database, OWNER, REPO, build_window(90, NOW), rank_by="fix")

    assert _authors(stats) == ["bob", "alice"]


def _seed_raw(raw_store, details):
    raw_store.store("github", "/repos/acme/widgets", 200, repo_payload())
    for payload in details:
        raw_store.store("github", f"/repos/acme/widgets/pulls/{payload['number']}", 200, payload)


def test_compute_refreshes_facts_and_persists_top_authors(database, raw_store):
    """Verify recompute derives facts from raw data and stores one row per author."""
    _seed_raw(
        raw_store,
        [
            pr_detail(101, title="feat: a", author="alice"),
            pr_detail(102, title="fix: b", author="bob"),
            pr_detail(103, title="feat: c", author="renovate[bot]"),
        ],
    )

    result = compute_author_stats(database, OWNER, REPO, 30, raw_store=raw_store, now=NOW)

    assert result.origin == "recomputed"
    assert result.window.days == 30
    assert result.rows_written == 2
    assert result.computed_at is not None
    assert _authors(result.top_authors) == ["alice", "bob"]
    stored = database.fetch_all("SELECT author, days, total_score FROM author_stats ORDER BY author")
    assert [(row["author"], row["days"], row["total_score"]) for row in stored] == [
        ("alice", 30, 3.0),
        ("bob", 30, 2.0),
    ]


def test_compute_overwrites_instead_of_accumulating(database, raw_store, clock):
    """Verify a second recompute replaces stored totals."""
    _seed_raw(raw_store, [pr_detail(101, title="feat: a", author="alice")])
    compute_author_stats(database, OWNER, REPO, 90, raw_store=raw_store, now=NOW)

    clock.advance(minutes=1)
    _seed_raw(raw_store, [pr_detail(102, title="fix: b", author="alice")])
    compute_author_stats(database, OWNER, REPO, 90, raw_store=raw_store, now=NOW)
    compute_author_stats(database, OWNER, REPO, 90, raw_store=raw_store, now=NOW)

    row = database.fetch_one("SELECT total_score, total_prs FROM author_stats WHERE author = 'alice'")
    assert row["total_score"] == 5.0
    assert row["total_prs"] == 2
    assert database.fetch_one("SELECT COUNT(*) AS count FROM author_stats")["count"] == 1


def test_compute_rejects_blank_repository(database):
    """Verify owner and repo are required."""
    with pytest.raises(ConfigurationError):
        compute_author_stats(database, OWNER, " ", 90, now=NOW)


def test_read_falls_back_to_facts_and_persists(database):
    """Verify the first read aggregates from facts and later reads use stored stats."""
    _insert_fact(database, "alice", "feat: a")
    _insert_fact(database, "bob", "chore: b")

    first = read_author_stats(database, OWNER, REPO, 90, now=NOW)
    second = read_author_stats(database, OWNER, REPO, 90, now=NOW)

    assert first.origin == "facts"
    assert first.rows_written == 2
    assert _authors(first.top_authors) == ["alice", "bob"]
    assert second.origin == "precomputed"
    assert second.rows_written == 0
    assert _authors(second.top_authors) == ["alice", "bob"]
    assert second.computed_at == first.computed_at


def test_read_without_facts_returns_empty_and_writes_nothing(database):
    """Verify an empty repository yields an empty leaderboard."""
    result = read_author_stats(database, OWNER, REPO, 60, now=NOW)

    assert result.top_authors == []
    assert result.rows_written == 0
    assert result.computed_at is None
    assert database.fetch_one("SELECT COUNT(*) AS count FROM author_stats")["count"] == 0


def test_read_windows_are_stored_independently(database):
    """Verify stats for one window do not answer reads for another."""
    _insert_fact(database, "recent", "feat: a", merged_at="2026-02-25T00:00:00Z")
    _insert_fact(database, "older", "feat: b", merged_at="2026-01-01T00:00:00Z")

    thirty = read_author_stats(database, OWNER, REPO, 30, now=NOW)
    ninety = read_author_stats(database, OWNER, REPO, 90, now=NOW)

    assert _authors(thirty.top_authors) == ["recent"]
    assert sorted(_authors(ninety.top_authors)) == ["older", "recent"]
    assert ninety.origin == "facts"


def test_read_precomputed_honours_rank_by(database):
    """Verify stored stats are re-ordered by the requested ranking key."""
    _insert_fact(database, "alice", "feat: a")
    _insert_fact(database, "bob", "fix: b")
    read_author_stats(database, OWNER, REPO, 90, now=NOW)

    result = read_author_stats(database, OWNER, REPO, 90, rank_by="fix", now=NOW)

    assert result.origin == "precomputed"
    assert _authors(result.top_authors) == ["bob", "alice"]


def test_format_score_drops_trailing_zero():
    """Verify whole scores render without decimals and halves keep them."""
    assert format_score(6.0) == "6"
    assert format_score(3.5) == "3.5"


def test_generate_report_output_format_contains_expected_sections_and_values():
    """Verify report output includes repository header, window, ranked authors and kind counts."""
    result = AuthorStatsResult(
        window=StatsWindow(days=30, since="2026-01-30T12:00:00Z", until="2026-03-01T12:00:00Z"),
        top_authors=[
            AuthorStat(author="alice", author_url="https://github.com/alice", total_score=6.5, total_prs=3,
                       feat_count=1, fix_count=1, chore_count=1, revert_count=1),
            AuthorStat(author="bob", author_url="https://github.com/bob", total_score=2.0, total_prs=1,
                       fix_count=1),
        ],
        computed_at="2026-03-01T12:00:05Z",
        rows_written=2,
        origin="recomputed",
    )

    report = generate_report(repo_name="acme/widgets", result=result)

    assert "Repository: acme/widgets" in report
    assert "Top authors, last 30 days (2026-01-30T12:00:00Z to 2026-03-01T12:00:00Z)" in report
    assert "1) alice  score=6.5  prs=3" in report
    assert "2) bob  score=2  prs=1" in report
    assert "feat=1 fix=1 chore=1 revert=1 other=0" in report
    assert "Computed at: 2026-03-01T12:00:05Z" in report


def test_generate_report_without_authors():
    """Verify an empty leaderboard renders a placeholder line."""
    result = AuthorStatsResult(
        window=StatsWindow(days=90, since="2025-12-01T12:00:00Z", until="2026-03-01T12:00:00Z"),
        top_authors=[],
        computed_at=None,
        rows_written=0,
        origin="facts",
    )

    report = generate_report(repo_name="acme/widgets", result=result)

    assert "No merged pull requests in this window." in report
    assert "Computed at: n/a" in report
