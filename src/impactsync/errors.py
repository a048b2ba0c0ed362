"""Custom exception types for the PR impact ingest pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

if TYPE_CHECKING:
    from .models import IngestSummary, RateLimitInfo, SyncSummary


class ImpactSyncError(Exception):
    """Base exception for all pipeline errors surfaced to callers."""


class ConfigurationError(ImpactSyncError):
    """Raised when runtime configuration or required identifying input is missing or invalid."""


class AuthenticationError(ConfigurationError):
    """Raised when the GitHub token is not configured."""


class OriginHttpError(ImpactSyncError):
    """Raised when a GitHub API request does not return a successful response."""

    def __init__(
        self,
        message: str,
        status: int,
        headers: Optional[Mapping[str, Any]] = None,
        body_text: str = "",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.headers = {str(key).lower(): str(value) for key, value in (headers or {}).items()}
        self.body_text = body_text

    @property
    def rate_limit_remaining(self) -> Optional[str]:
        return self.headers.get("x-ratelimit-remaining")

    @property
    def rate_limit_reset(self) -> Optional[str]:
        return self.headers.get("x-ratelimit-reset")

    @property
    def is_rate_limited(self) -> bool:
        """True for 403/429 responses that carry rate-limit headers."""
        if self.status not in (403, 429):
            return False
        return (
            self.rate_limit_remaining is not None
            or self.rate_limit_reset is not None
            or "retry-after" in self.headers
        )


class OriginRateLimitError(OriginHttpError):
    """Raised when GitHub rate limiting stops a run; carries the progress made so far."""

    def __init__(
        self,
        message: str,
        status: int,
        rate_limit: Optional["RateLimitInfo"] = None,
        summary: Optional[Union["SyncSummary", "IngestSummary"]] = None,
        headers: Optional[Mapping[str, Any]] = None,
        body_text: str = "",
    ) -> None:
        super().__init__(message, status, headers=headers, body_text=body_text)
        self.rate_limit = rate_limit
        self.summary = summary


class DataIntegrityGap(ImpactSyncError):
    """Raised when required upstream metadata (such as the default branch) is absent."""


class MalformedRecord(ImpactSyncError):
    """Raised when a stored payload lacks fields required for fact derivation."""
