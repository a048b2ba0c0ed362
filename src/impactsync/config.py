"""Configuration parsing and validation for the PR impact ingest pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .errors import AuthenticationError, ConfigurationError

DEFAULT_DAYS = 90
ALLOWED_WINDOWS = (30, 60, 90)
DEFAULT_DATABASE_PATH = os.path.join("data", "raw_api_data.db")
DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class Config:
    """Validated runtime settings shared by the client, store and CLI."""

    github_token: str
    database_path: str
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    debug: bool = False

    def require_token(self) -> str:
        """Return the GitHub token or fail fast when it is not configured.

        Raises:
            AuthenticationError: If ``GITHUB_TOKEN`` was empty when loading.
        """
        if not self.github_token:
            raise AuthenticationError(
                "Missing required GitHub token. "
                "Set the 'GITHUB_TOKEN' environment variable before calling the GitHub API."
            )
        return self.github_token


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def load_config(
    database_path: Optional[str] = None,
    timeout_seconds: Optional[int] = None,
) -> Config:
    """Build and validate application configuration from the environment.

    The token is not required here; read-only commands never reach GitHub.
    Components that do call GitHub use :meth:`Config.require_token`.

    Args:
        database_path: Overrides ``IMPACT_DB_PATH`` when provided.
        timeout_seconds: Overrides ``IMPACT_HTTP_TIMEOUT`` when provided.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If the timeout is not a positive integer or the
            database path is empty.
    """
    path = (database_path or os.getenv("IMPACT_DB_PATH", "") or DEFAULT_DATABASE_PATH).strip()
    if not path:
        raise ConfigurationError("Invalid value for 'database_path': expected a non-empty path.")

    if timeout_seconds is None:
        raw_timeout = os.getenv("IMPACT_HTTP_TIMEOUT", "").strip()
        try:
            timeout_seconds = int(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ConfigurationError(
                "Invalid value for 'IMPACT_HTTP_TIMEOUT': expected an integer number of seconds."
            ) from exc

    if timeout_seconds <= 0:
        raise ConfigurationError("Invalid value for 'timeout_seconds': expected an integer greater than 0.")

    api_base_url = os.getenv("GITHUB_API_URL", "").strip() or DEFAULT_API_BASE_URL

    return Config(
        github_token=os.getenv("GITHUB_TOKEN", "").strip(),
        database_path=path,
        api_base_url=api_base_url.rstrip("/"),
        timeout_seconds=timeout_seconds,
        debug=_env_flag("IMPACT_DEBUG"),
    )


def normalize_window(days: Optional[int]) -> int:
    """Restrict a requested window to the supported 30/60/90-day values, defaulting to 90."""
    if days in ALLOWED_WINDOWS:
        return int(days)
    return DEFAULT_DAYS


def require_repository(owner: Optional[str], repo: Optional[str]) -> tuple[str, str]:
    """Trim and validate the owner/repo pair identifying a repository.

    Raises:
        ConfigurationError: If either value is missing or blank.
    """
    owner_value = (owner or "").strip()
    repo_value = (repo or "").strip()
    if not owner_value or not repo_value:
        raise ConfigurationError("Both owner and repo are required.")
    return owner_value, repo_value
