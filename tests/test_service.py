"""Tests for the envelope-returning service surface."""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from factories import OWNER, REPO, list_item, pr_detail, repo_payload
from impactsync.config import Config
from impactsync.errors import (
    ConfigurationError,
    DataIntegrityGap,
    ImpactSyncError,
    OriginHttpError,
    OriginRateLimitError,
)
from impactsync.models import RateLimitInfo
from impactsync.payload import format_timestamp, utc_now
from impactsync.service import ImpactService, error_envelope, error_status


RECENT = format_timestamp(utc_now() - timedelta(days=5))


def _config(token="test-token"):
    return Config(github_token=token, database_path=":memory:")


@pytest.fixture
def service(database, fake_github):
    return ImpactService(config=_config(), database=database, client=fake_github.client)


def _recent_merge(fake_github, numbers):
    fake_github.pages = [[list_item(n, updated_at=RECENT) for n in numbers]]
    fake_github.details = {n: pr_detail(n, merged_at=RECENT) for n in numbers}


@pytest.mark.parametrize(
    "error, status",
    [
        (OriginRateLimitError("limited", status=403), 429),
        (ConfigurationError("bad"), 400),
        (DataIntegrityGap("gap"), 409),
        (OriginHttpError("boom", status=500), 502),
        (ImpactSyncError("other"), 500),
    ],
)
def test_error_status_mapping(error, status):
    """Verify each error type maps to its HTTP-equivalent status."""
    assert error_status(error) == status


def test_error_envelope_for_rate_limit_includes_reset():
    """Verify rate-limit envelopes expose the reset time for retry scheduling."""
    error = OriginRateLimitError("limited", status=429, rate_limit=RateLimitInfo(remaining="0", reset="1772373600"))

    envelope = error_envelope(error)

    assert envelope == {
        "ok": False,
        "error": "limited",
        "status": 429,
        "rateLimit": {"remaining": "0", "reset": "1772373600"},
        "summary": None,
    }


def test_trigger_sync_returns_summary_envelope(service, fake_github):
    """Verify a successful sync returns ok with the summary fields."""
    _recent_merge(fake_github, [2, 1])

    envelope = service.trigger_sync(OWNER, REPO, days=30)

    assert envelope["ok"] is True
    assert envelope["owner"] == OWNER
    assert envelope["prDetailsFetched"] == 2
    assert envelope["defaultBranch"] == "main"


def test_trigger_sync_rate_limited_returns_429_with_summary(service, fake_github):
    """Verify rate limiting becomes a 429 envelope carrying partial progress."""
    fake_github.pages = [[list_item(1, updated_at=RECENT)]]
    fake_github.details = {
        1: OriginHttpError(
            "GitHub request failed (403)",
            status=403,
            headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1772373600"},
        )
    }

    envelope = service.trigger_sync(OWNER, REPO)

    assert envelope["ok"] is False
    assert envelope["status"] == 429
    assert envelope["rateLimit"]["reset"] == "1772373600"
    assert envelope["summary"]["listPagesFetched"] == 2
    assert envelope["summary"]["prDetailsFetched"] == 0


def test_trigger_sync_without_token_returns_401(database):
    """Verify a missing token is reported without contacting GitHub."""
    service = ImpactService(config=_config(token=""), database=database)

    envelope = service.trigger_sync(OWNER, REPO)

    assert envelope["ok"] is False
    assert envelope["status"] == 401
    assert "GITHUB_TOKEN" in envelope["error"]


def test_trigger_sync_blank_repo_returns_400(service, fake_github):
    """Verify missing identifying input is a client error."""
    envelope = service.trigger_sync(OWNER, "")

    assert envelope["status"] == 400
    assert fake_github.requested == []


def test_trigger_sync_origin_failure_returns_502(service, fake_github):
    """Verify other GitHub failures surface the upstream status."""
    fake_github.repository = OriginHttpError("GitHub request failed (404)", status=404)

    envelope = service.trigger_sync(OWNER, REPO)

    assert envelope["status"] == 502
    assert envelope["originStatus"] == 404


def test_sync_and_refresh_reports_new_facts(service, fake_github):
    """Verify the combined operation syncs, derives facts and counts the new ones."""
    _recent_merge(fake_github, [3, 2, 1])

    first = service.sync_and_refresh(OWNER, REPO, days=90)
    second = service.sync_and_refresh(OWNER, REPO, days=90)

    assert first["ok"] is True
    assert first["discoveredMergedPrs"] == 3
    assert first["fetchedPrDetails"] == 3
    assert first["insertedPrFacts"] == 3
    assert first["repoDefaultBranch"] == "main"
    assert first["factWindow"]["factsWritten"] == 3
    assert set(first["factWindow"]) == {"sinceIso", "untilIso", "factsWritten"}
    assert second["insertedPrFacts"] == 0
    assert second["skippedDuplicates"] == 3
    assert second["fetchedPrDetails"] == 0



def test_ingest_pulls_returns_listing_counters(service, fake_github):
    """Verify the listing ingest envelope reports stored pages and duplicates on a rerun."""
    fake_github.pages = [[list_item(2, updated_at=RECENT), list_item(1, updated_at=RECENT)]]

    first = service.ingest_pulls(OWNER, REPO, days=30)
    second = service.ingest_pulls(OWNER, REPO, days=30)

    assert first["ok"] is True
    assert first["pagesFetched"] == 2
    assert first["prsFetchedTotal"] == 2
    assert first["storedCount"] == 2
    assert first["skippedDuplicatesCount"] == 0
    assert first["stoppedEarly"] is False
    assert second["storedCount"] == 0
    assert second["skippedDuplicatesCount"] == 2
    assert fake_github.detail_requests() == []


def test_ingest_pulls_rate_limited_returns_429_with_summary(service, fake_github):
    """Verify a rate-limited listing page yields a 429 envelope with the ingest counters."""
    fake_github.pages = [
        [list_item(2, updated_at=RECENT)],
        OriginHttpError(
            "GitHub request failed (429)",
            status=429,
            headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1772373600"},
        ),
    ]

    envelope = service.ingest_pulls(OWNER, REPO)

    assert envelope["status"] == 429
    assert envelope["rateLimit"]["remaining"] == "0"
    assert envelope["summary"]["pagesFetched"] == 1
    assert envelope["summary"]["storedCount"] == 1

def test_recompute_and_read_stats(service, fake_github):
    """Verify recompute stores stats that the read path then serves."""
    _recent_merge(fake_github, [2, 1])
    service.trigger_sync(OWNER, REPO)

    recomputed = service.recompute_stats(OWNER, REPO, days=30)
    read = service.read_stats(OWNER, REPO, days=30)

    assert recomputed["ok"] is True
    assert recomputed["origin"] == "recomputed"
    assert recomputed["topAuthors"][0]["author"] == "alice"
    assert recomputed["topAuthors"][0]["totalScore"] == 6.0
    assert read["origin"] == "precomputed"
    assert read["topAuthors"][0]["totalPrs"] == 2


def test_unsupported_window_falls_back_to_ninety_days(service):
    """Verify windows other than 30, 60 or 90 days are normalized to 90."""
    envelope = service.read_stats(OWNER, REPO, days=45)

    assert envelope["ok"] is True
    assert envelope["window"]["days"] == 90


def test_recompute_without_metadata_or_token_returns_409(database):
    """Verify recompute without stored metadata and no way to fetch it is a data gap."""
    service = ImpactService(config=_config(token=""), database=database)

    envelope = service.recompute_stats(OWNER, REPO, days=90)

    assert envelope["ok"] is False
    assert envelope["status"] == 409


def test_recompute_fetches_missing_metadata_with_token(service, fake_github, raw_store):
    """Verify recompute fetches repository metadata when it was never stored."""
    raw_store.store("github", "/repos/acme/widgets/pulls/1", 200, pr_detail(1, merged_at=RECENT))

    envelope = service.recompute_stats(OWNER, REPO, days=90)

    assert envelope["ok"] is True
    assert fake_github.requested == ["https://api.github.com/repos/acme/widgets"]


def test_inspection_operations(service, raw_store):
    """Verify the merged view, status and recent rows are wrapped in ok envelopes."""
    raw_store.store("github", "/repos/acme/widgets", 200, repo_payload())
    raw_store.store("github", "/repos/acme/widgets/pulls/1", 200, pr_detail(1, merged_at=RECENT))

    merged = service.merged_prs(OWNER, REPO, days=90)
    repo_status = service.repo_status(OWNER, REPO)
    db_status = service.database_status()
    recent = service.recent_responses(limit=1)

    assert merged["ok"] is True
    assert [pr["number"] for pr in merged["view"]["prs"]] == [1]
    assert repo_status["repoPullDetailRows"] == 1
    assert db_status["dbPath"] == ":memory:"
    assert db_status["counts"]["api_raw_responses"] == 2
    assert len(recent["recent"]) == 1
