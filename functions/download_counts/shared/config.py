"""
Runtime configuration for a build invocation.

Values come from DOWNLOAD_COUNTS_* environment variables so the same code
runs from cron, CI and a scheduled Lambda. CLI flags override them.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

from .constants import (
    BULK_QUERY_BATCH_SIZE,
    DEFAULT_TIME_RANGE,
    DEMOTE_THRESHOLD,
    FALLBACK_RETRY_AFTER_SECONDS,
    MAX_REQUEST_ERRORS,
    MAX_SIMULTANEOUS_REQUESTS,
    MIN_REQUEST_INTERVAL_SECONDS,
    NPM_DOWNLOADS_API,
    QUERY_BUDGET,
)

ENV_PREFIX = "DOWNLOAD_COUNTS_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() == "true"


@dataclass
class BuildConfig:
    """Configuration for one build invocation."""

    api_base: str = NPM_DOWNLOADS_API
    time_range: str = DEFAULT_TIME_RANGE
    bulk_batch_size: int = BULK_QUERY_BATCH_SIZE
    demote_threshold: int = DEMOTE_THRESHOLD
    max_workers: int = MAX_SIMULTANEOUS_REQUESTS
    min_request_interval: float = MIN_REQUEST_INTERVAL_SECONDS
    fallback_retry_after: float = FALLBACK_RETRY_AFTER_SECONDS
    max_request_errors: int = MAX_REQUEST_ERRORS
    query_budget: int = QUERY_BUDGET
    fail_on_rate_limit: bool = True

    # Persistence
    store: str = "local"  # "local" or "s3"
    state_dir: str = "."
    bucket: Optional[str] = None
    prefix: str = ""

    # Collaborators
    publisher: str = "npm"  # "npm", "s3" or "none"
    package_dir: str = "npm"
    publish_bucket: Optional[str] = None
    publish_key: str = "data/download-counts.json"
    names_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BuildConfig":
        """Build a config from the environment, falling back to defaults."""
        return cls(
            api_base=_env("API_BASE", NPM_DOWNLOADS_API),
            time_range=_env("TIME_RANGE", DEFAULT_TIME_RANGE),
            bulk_batch_size=int(_env("BULK_BATCH_SIZE", str(BULK_QUERY_BATCH_SIZE))),
            demote_threshold=int(_env("DEMOTE_THRESHOLD", str(DEMOTE_THRESHOLD))),
            max_workers=int(_env("MAX_WORKERS", str(MAX_SIMULTANEOUS_REQUESTS))),
            min_request_interval=float(
                _env("MIN_REQUEST_INTERVAL", str(MIN_REQUEST_INTERVAL_SECONDS))
            ),
            fallback_retry_after=float(
                _env("FALLBACK_RETRY_AFTER", str(FALLBACK_RETRY_AFTER_SECONDS))
            ),
            max_request_errors=int(_env("MAX_REQUEST_ERRORS", str(MAX_REQUEST_ERRORS))),
            query_budget=int(_env("QUERY_BUDGET", str(QUERY_BUDGET))),
            fail_on_rate_limit=_env_bool("FAIL_ON_RATE_LIMIT", True),
            store=_env("STORE", "local"),
            state_dir=_env("STATE_DIR", "."),
            bucket=_env("BUCKET"),
            prefix=_env("PREFIX", ""),
            publisher=_env("PUBLISHER", "npm"),
            package_dir=_env("PACKAGE_DIR", "npm"),
            publish_bucket=_env("PUBLISH_BUCKET"),
            publish_key=_env("PUBLISH_KEY", "data/download-counts.json"),
            names_file=_env("NAMES_FILE"),
        )

    def with_overrides(self, **overrides) -> "BuildConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
