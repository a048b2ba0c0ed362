"""GitHub REST API client used by the ingest pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote, urlencode

import requests

from .config import Config
from .errors import OriginHttpError, OriginRateLimitError
from .models import RateLimitInfo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OriginResponse:
    """Successful GitHub reply: status code, decoded JSON body and lower-cased headers."""

    status: int
    data: Any
    headers: Dict[str, str]

    @property
    def rate_limit(self) -> Optional[RateLimitInfo]:
        return RateLimitInfo.from_headers(self.headers)


class GitHubClient:
    """Small, typed client for the GitHub repository and pull request endpoints.

    The client performs exactly one request per call. Retrying and backing off
    on rate limits is left to callers, which can tell rate-limit failures apart
    through :attr:`OriginHttpError.is_rate_limited`.
    """

    _API_VERSION = "2022-11-28"
    _USER_AGENT = "pr-impact-ingest"
    PULL_REQUEST_PAGE_SIZE = 100

    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        """Initialize an authenticated GitHub API client.

        Args:
            config: Runtime configuration including the token and API base URL.
            session: Optional preconfigured session, mainly for tests.

        Raises:
            AuthenticationError: If no GitHub token is configured.
        """
        token = config.require_token()
        self._config = config
        self._timeout_seconds = config.timeout_seconds
        self._base_url = config.api_base_url.rstrip("/")

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": self._API_VERSION,
                "User-Agent": self._USER_AGENT,
            }
        )

    def build_url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Build a fully qualified API URL from a path and optional query parameters."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        if params:
            url = f"{url}?{urlencode(params, safe='/:')}"
        return url

    def repository_url(self, owner: str, repo: str) -> str:
        return self.build_url(repository_path(owner, repo))

    def pulls_list_url(
        self,
        owner: str,
        repo: str,
        base: Optional[str],
        page: int,
        per_page: Optional[int] = None,
        state: str = "closed",
    ) -> str:
        return self.build_url(
            f"{repository_path(owner, repo)}/pulls",
            pulls_list_params(base, page, per_page or self.PULL_REQUEST_PAGE_SIZE, state=state),
        )

    def pull_url(self, owner: str, repo: str, number: int) -> str:
        return self.build_url(pull_path(owner, repo, number))

    def fetch(self, url: str) -> OriginResponse:
        """Execute a single authenticated GET request.

        Raises:
            OriginHttpError: If the request cannot be sent, returns a non-2xx
                status, or the body is not valid JSON. Rate-limited responses
                are raised as :class:`OriginHttpError` with
                ``is_rate_limited`` set; callers decide how to react.
        """
        try:
            response = self._session.get(url, timeout=self._timeout_seconds)
        except requests.RequestException as exc:
            raise OriginHttpError(f"GitHub request failed: GET {url} ({exc})", status=0) from exc

        status_code = response.status_code
        headers = {str(key).lower(): str(value) for key, value in response.headers.items()}

        if not 200 <= status_code < 300:
            body_text = response.text or ""
            detail_parts = [
                f"GitHub request failed ({status_code})",
                f"url={url}",
                f"body={body_text}" if body_text else None,
                f"x-ratelimit-remaining={headers['x-ratelimit-remaining']}"
                if "x-ratelimit-remaining" in headers
                else None,
                f"x-ratelimit-reset={headers['x-ratelimit-reset']}" if "x-ratelimit-reset" in headers else None,
            ]
            message = " | ".join(part for part in detail_parts if part)
            logger.debug("GitHub request failed", extra={"url": url, "status": status_code})
            raise OriginHttpError(message, status=status_code, headers=headers, body_text=body_text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise OriginHttpError(
                f"GitHub API returned invalid JSON: GET {url}",
                status=status_code,
                headers=headers,
                body_text=response.text or "",
            ) from exc

        return OriginResponse(status=status_code, data=payload, headers=headers)


def repository_path(owner: str, repo: str) -> str:
    return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"


def pull_path(owner: str, repo: str, number: int) -> str:
    return f"{repository_path(owner, repo)}/pulls/{int(number)}"


def pulls_list_params(base: Optional[str], page: int, per_page: int, state: str = "closed") -> Dict[str, Any]:
    """Listing query, newest update first. Without ``base`` every branch is listed."""
    params: Dict[str, Any] = {"state": state}
    if base:
        params["base"] = base
    params.update({"sort": "updated", "direction": "desc", "per_page": per_page, "page": page})
    return params


def as_rate_limit_error(error: OriginHttpError, summary: Any = None) -> OriginRateLimitError:
    """Convert a rate-limited :class:`OriginHttpError` into an :class:`OriginRateLimitError`."""
    if isinstance(error, OriginRateLimitError):
        rate_limit = error.rate_limit
    else:
        rate_limit = RateLimitInfo.from_headers(error.headers)
    return OriginRateLimitError(
        "GitHub rate limit reached; retry after reset.",
        status=error.status,
        rate_limit=rate_limit,
        summary=summary,
        headers=error.headers,
        body_text=error.body_text,
    )
