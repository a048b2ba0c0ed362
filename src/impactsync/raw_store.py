"""Append-mostly storage of raw GitHub API responses."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .db import Database
from .models import RawResponse, StoreResult
from .payload import format_timestamp, parse_json, utc_now

logger = logging.getLogger(__name__)

GITHUB_SOURCE = "github"
DEDUP_WINDOW = timedelta(minutes=60)
DUPLICATE_REASON = "duplicate within last 60 minutes"


def serialize_payload(payload: Any) -> str:
    """Serialize a payload deterministically; strings are stored untouched."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(payload_text: str) -> str:
    return hashlib.sha256(payload_text.encode("utf-8")).hexdigest()


class RawStore:
    """Raw response log keyed by (source, endpoint) with recent-duplicate suppression.

    Identical content for the same source and endpoint is written at most once
    per rolling 60-minute window. Once the window has passed the same content
    is stored again, so the history shows when a resource was re-checked.
    Rows are never updated or deleted here.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._database = database
        self._clock = clock

    def store(
        self,
        source: str,
        endpoint: str,
        status_code: Optional[int],
        payload: Any,
    ) -> StoreResult:
        """Insert a raw response unless identical content was stored within the dedup window.

        Returns:
            ``StoreResult(inserted=True, id=...)`` for a new row, otherwise
            ``StoreResult(inserted=False, reason=...)``. Duplicates are a normal
            outcome and never raise.
        """
        payload_text = serialize_payload(payload)
        checksum = compute_checksum(payload_text)
        now = self._clock()
        cutoff = format_timestamp(now - DEDUP_WINDOW)

        with self._database.transaction() as connection:
            existing = connection.execute(
                """
                SELECT id FROM api_raw_responses
                WHERE source = ? AND endpoint = ? AND checksum = ?
                  AND fetched_at >= ?
                LIMIT 1
                """,
                (source, endpoint, checksum, cutoff),
            ).fetchone()
            if existing is not None:
                logger.debug(
                    "Skipped duplicate raw response",
                    extra={"source": source, "endpoint": endpoint, "existing_id": existing["id"]},
                )
                return StoreResult(inserted=False, reason=DUPLICATE_REASON)

            cursor = connection.execute(
                """
                INSERT INTO api_raw_responses (source, endpoint, fetched_at, status_code, payload, checksum)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (source, endpoint, format_timestamp(now), status_code, payload_text, checksum),
            )
            row_id = int(cursor.lastrowid)

        return StoreResult(inserted=True, id=row_id)

    def recent(self, limit: int = 10, source: Optional[str] = None) -> List[RawResponse]:
        """Return the most recently fetched rows, newest first, without payloads."""
        limit = max(1, int(limit))
        columns = "id, source, endpoint, fetched_at, status_code, checksum"
        if source:
            rows = self._database.fetch_all(
                f"""
                SELECT {columns} FROM api_raw_responses
                WHERE source = ?
                ORDER BY fetched_at DESC, id DESC
                LIMIT ?
                """,
                (source, limit),
            )
        else:
            rows = self._database.fetch_all(
                f"SELECT {columns} FROM api_raw_responses ORDER BY fetched_at DESC, id DESC LIMIT ?",
                (limit,),
            )

        return [
            RawResponse(
                id=row["id"],
                source=row["source"],
                endpoint=row["endpoint"],
                fetched_at=row["fetched_at"],
                status_code=row["status_code"],
                checksum=row["checksum"],
            )
            for row in rows
        ]

    def latest_payload(self, source: str, endpoint: str) -> Any:
        """Return the parsed payload of the newest row for an endpoint, matched case-insensitively."""
        row = self._database.fetch_one(
            """
            SELECT payload FROM api_raw_responses
            WHERE source = ? AND lower(endpoint) = lower(?)
            ORDER BY id DESC
            LIMIT 1
            """,
            (source, endpoint),
        )
        if row is None:
            return None
        return parse_json(row["payload"])

    def has_merged_detail(self, source: str, endpoint: str) -> bool:
        """Whether the newest successful row for a PR detail endpoint records a merge."""
        row = self._database.fetch_one(
            """
            SELECT CASE WHEN json_valid(payload) THEN json_extract(payload, '$.merged_at') END AS merged_at
            FROM api_raw_responses
            WHERE source = ? AND endpoint = ? AND status_code = 200
            ORDER BY id DESC
            LIMIT 1
            """,
            (source, endpoint),
        )
        return row is not None and bool(row["merged_at"])
