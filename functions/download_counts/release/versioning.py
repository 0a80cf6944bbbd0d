"""
Release versioning.

Two releases per month, started on the 1st and the 15th. The version
format is 2.YYYYMMDD.0 where DD is 01 or 15:

- the major version 2 separates these builds from the 1.x series
- the release date is visible in the version itself
- a caret range like ^2.20250615 picks up every later release
- npm wants three parts, hence the trailing .0
"""

from datetime import datetime, timezone
from typing import Optional

from download_counts.shared.constants import RELEASE_MAJOR


def get_version(now: Optional[datetime] = None) -> str:
    """Version of the release cycle in progress at `now` (UTC)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    day = 15 if now.day >= 15 else 1
    return f"{RELEASE_MAJOR}.{now.year:04d}{now.month:02d}{day:02d}.0"
