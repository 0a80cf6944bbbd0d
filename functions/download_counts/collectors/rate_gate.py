"""
Self-imposed rate limiting for the downloads API.

npm does not document the limit on api.npmjs.org/downloads and it is far
stricter than the published 5M-requests-per-month figure. Two mechanisms
keep us under it:

- Each worker waits MIN_REQUEST_INTERVAL_SECONDS between the *starts* of
  its consecutive requests (RequestGate).
- Should a 429 arrive anyway, every worker pauses until the time given in
  its Retry-After header (Cooldown, shared by all workers).

A 429 never reaches the caller: the gate waits out the cooldown and
retries the same request, so one call to get() is one logical request.

NOTE: Workers are coroutines on one event loop. Cooldown state is only
touched between awaits, so no lock is needed; waiters re-read the deadline
after every wake-up because another worker may have extended it.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    The downloads endpoint always sends a number of seconds, never an
    HTTP date. Missing, non-numeric and non-positive values are rejected.
    """
    if value is None:
        return None
    try:
        seconds = float(value)
    except (ValueError, TypeError):
        return None
    if seconds != seconds or seconds <= 0:  # NaN or not positive
        return None
    return seconds


class Cooldown:
    """Shared deadline before which no worker may start a request."""

    def __init__(self, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        self._clock = clock
        self._sleep = sleep
        self.deadline = 0.0
        self.rate_limited = False
        self.rate_limit_count = 0

    def extend(self, delay: float) -> float:
        """Push the deadline to now + delay, never moving it earlier."""
        self.deadline = max(self.deadline, self._clock() + delay)
        return self.deadline

    async def wait(self) -> None:
        """Sleep until the deadline has passed, including later extensions."""
        while self.deadline - self._clock() > 0:
            await self._sleep(self.deadline - self._clock())


class RequestGate:
    """
    Per-worker request wrapper enforcing spacing and the shared cooldown.

    Args:
        client: httpx.AsyncClient shared by all workers
        cooldown: Cooldown shared by all workers
        min_interval: Minimum seconds between this worker's request starts
        fallback_retry_after: Cooldown applied to a 429 without a usable
            Retry-After header
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cooldown: Cooldown,
        min_interval: float,
        fallback_retry_after: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.cooldown = cooldown
        self.min_interval = min_interval
        self.fallback_retry_after = fallback_retry_after
        self._clock = clock
        self._sleep = sleep
        self._next_allowed_start: Optional[float] = None

    async def _wait_for_turn(self) -> None:
        if self._next_allowed_start is not None:
            delay = self._next_allowed_start - self._clock()
            if delay > 0:
                await self._sleep(delay)
        await self.cooldown.wait()

    async def get(self, url: str) -> httpx.Response:
        """
        Issue a GET once the gate allows it, retrying through 429s.

        Raises:
            httpx.RequestError: No usable response (network failure, bad
                encoding, redirect loop)
        """
        while True:
            await self._wait_for_turn()

            self._next_allowed_start = self._clock() + self.min_interval

            response = await self.client.get(url)

            if response.status_code != 429:
                return response

            self.cooldown.rate_limited = True
            self.cooldown.rate_limit_count += 1
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is None:
                logger.error(
                    "Got a 429 without the expected numeric Retry-After header",
                    extra={"retry_after_header": response.headers.get("Retry-After")},
                )
                retry_after = self.fallback_retry_after
            else:
                logger.warning(
                    f"Rate limited (429), pausing all workers for {retry_after}s",
                    extra={"retry_after_seconds": retry_after},
                )
            self.cooldown.extend(retry_after)
