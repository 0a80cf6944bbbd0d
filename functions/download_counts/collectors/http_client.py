"""
HTTP client factory for the downloads API.

One httpx.AsyncClient is created per fetch run and shared by all workers,
so keep-alive connections are reused across the ~20 concurrent workers.

Usage:
    async with create_http_client(max_workers=20) as client:
        response = await client.get(url)

Testing:
    Pass transport=httpx.MockTransport(handler) to route requests to a
    test handler instead of the network.
"""

import logging
from typing import Optional

import httpx

from download_counts import __version__
from download_counts.shared.constants import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_CONFIG = httpx.Timeout(
    DEFAULT_TIMEOUT,  # Total timeout
    connect=10.0,  # Connection timeout
)

USER_AGENT = f"download-counts/{__version__} (+https://github.com/zeke/download-counts)"


def _limits_for(max_workers: int) -> httpx.Limits:
    # Each worker has at most one request in flight
    return httpx.Limits(
        max_connections=max_workers,
        max_keepalive_connections=max_workers,
        keepalive_expiry=30.0,
    )


def create_http_client(
    max_workers: int = 20,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create an async client configured for the downloads API.

    Args:
        max_workers: Number of concurrent workers sharing the client
        transport: Optional transport override (tests)

    Returns:
        httpx.AsyncClient; the caller is responsible for closing it
    """
    logger.debug(f"Creating HTTP client for {max_workers} workers")
    return httpx.AsyncClient(
        timeout=DEFAULT_TIMEOUT_CONFIG,
        limits=_limits_for(max_workers),
        follow_redirects=True,
        http2=False,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )
