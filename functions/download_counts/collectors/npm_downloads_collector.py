"""
npm Downloads Collector - Concurrent fetch of download counts.

Drains the pending work of a BuildState with a fixed pool of coroutine
workers. Each worker repeatedly pops a batch of unscoped names (or, once
batches run out, a single name), queries

    api.npmjs.org/downloads/point/{range}/{name[,name...]}

through its own RequestGate and records the result:

- counts go into the shard for this invocation
- rejected batches are split or demoted (work_queue.split_batch)
- blocked single names go to BuildState.blocked_identifiers
- unexpected failures go back in the queue and count toward
  MAX_REQUEST_ERRORS; reaching it aborts the whole invocation

The run stops when the queue is empty or the query budget is spent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from download_counts.collectors.http_client import create_http_client
from download_counts.collectors.rate_gate import Clock, Cooldown, RequestGate, Sleep
from download_counts.collectors.work_queue import WorkQueue
from download_counts.shared.config import BuildConfig
from download_counts.shared.constants import PROGRESS_LOG_INTERVAL
from download_counts.shared.error_classification import (
    Outcome,
    classify_bulk_status,
    classify_single_status,
)
from download_counts.shared.errors import TooManyRequestErrorsError

logger = logging.getLogger(__name__)


class ErrorBudget:
    """Counts unexpected request failures and trips at a ceiling."""

    def __init__(self, limit: int):
        self.limit = limit
        self.count = 0

    def record(self) -> None:
        """
        Record one unexpected failure.

        Raises:
            TooManyRequestErrorsError: When the ceiling is reached
        """
        self.count += 1
        if self.count >= self.limit:
            logger.error(
                f"Got alarmingly many ({self.count}) unexpected errors querying API",
                extra={"error_count": self.count, "limit": self.limit},
            )
            raise TooManyRequestErrorsError(self.count, self.limit)


@dataclass
class FetchSummary:
    """Outcome of one fetch run."""

    counts: dict[str, int] = field(default_factory=dict)
    queries: int = 0
    request_errors: int = 0
    splits: int = 0
    demoted: int = 0
    not_found: int = 0
    blocked: int = 0
    rate_limited: bool = False
    rate_limit_count: int = 0

    def to_dict(self) -> dict:
        return {
            "counted": len(self.counts),
            "queries": self.queries,
            "request_errors": self.request_errors,
            "splits": self.splits,
            "demoted": self.demoted,
            "not_found": self.not_found,
            "blocked": self.blocked,
            "rate_limited": self.rate_limited,
            "rate_limit_count": self.rate_limit_count,
        }


class FetchRun:
    """
    One invocation's worth of download count fetching.

    Args:
        queue: WorkQueue over the BuildState being advanced
        client: httpx.AsyncClient shared by the workers
        config: BuildConfig for limits and API location
        clock, sleep: Time source and sleeper (injected by tests)
    """

    def __init__(
        self,
        queue: WorkQueue,
        client: httpx.AsyncClient,
        config: BuildConfig,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.queue = queue
        self.client = client
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self.cooldown = Cooldown(clock=clock, sleep=sleep)
        self.errors = ErrorBudget(config.max_request_errors)
        self.queries_remaining = config.query_budget
        self.summary = FetchSummary()

    def _url(self, names: str) -> str:
        return f"{self.config.api_base}/downloads/point/{self.config.time_range}/{names}"

    def _new_gate(self) -> RequestGate:
        return RequestGate(
            self.client,
            self.cooldown,
            min_interval=self.config.min_request_interval,
            fallback_retry_after=self.config.fallback_retry_after,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _record_count(self, name: str, downloads) -> None:
        if downloads is None:
            return
        if name in self.summary.counts:
            logger.warning(f"Counted {name} twice in one run")
        self.summary.counts[name] = downloads

    @staticmethod
    def _decode_body(resp: httpx.Response) -> Optional[dict]:
        """JSON object body of a 200, or None when it is not one."""
        try:
            data = resp.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _record_error(self) -> None:
        self.summary.request_errors += 1
        self.errors.record()

    async def run(self) -> FetchSummary:
        """
        Run the worker pool to completion.

        Raises:
            TooManyRequestErrorsError: The error ceiling was reached; the
                remaining workers are cancelled first
        """
        logger.info(
            f"Starting {self.config.max_workers} workers for {len(self.queue)} queued items",
            extra={
                "pending_batches": len(self.queue.batches),
                "pending_singles": len(self.queue.singles),
                "query_budget": self.config.query_budget,
            },
        )
        tasks = [
            asyncio.ensure_future(self._worker(i)) for i in range(self.config.max_workers)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            # Any worker failure ends the run; stop the rest before the
            # client closes
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.summary.rate_limited = self.cooldown.rate_limited
            self.summary.rate_limit_count = self.cooldown.rate_limit_count

        logger.info(
            f"Fetched {len(self.summary.counts)} download counts in {self.summary.queries} queries",
            extra=self.summary.to_dict(),
        )
        return self.summary

    async def _worker(self, worker_id: int) -> None:
        gate = self._new_gate()

        while self.queries_remaining > 0:
            item = self.queue.pop()
            if item is None:
                break
            self.queries_remaining -= 1

            # A one-name "bulk" query gets the single-package response
            # format (and 404s), so treat it as a single
            if isinstance(item, list) and len(item) == 1:
                await self._fetch_single(item[0], gate)
            elif isinstance(item, list):
                await self._fetch_batch(item, gate)
            else:
                await self._fetch_single(item, gate)

            self.summary.queries += 1
            if self.queries_remaining % PROGRESS_LOG_INTERVAL == 0:
                logger.info(
                    f"{self.queries_remaining} more API requests to make before next save point",
                    extra={"worker": worker_id, "queued": len(self.queue)},
                )

    async def _fetch_batch(self, batch: list[str], gate: RequestGate) -> None:
        batch_str = ",".join(batch)
        try:
            resp = await gate.get(self._url(batch_str))
        except httpx.RequestError as e:
            # No usable response at all; almost certainly temporary
            logger.error(
                f"Failed to fetch batch of {len(batch)}, requeueing: {e}",
                extra={"batch_size": len(batch), "error_type": type(e).__name__},
            )
            self.queue.requeue_batch(batch)
            self._record_error()
            return

        outcome = classify_bulk_status(resp.status_code)

        if outcome == Outcome.SPLIT:
            logger.warning(
                f"Got {resp.status_code} response for batch of {len(batch)}",
                extra={"status_code": resp.status_code, "batch": batch_str[:500]},
            )
            result = self.queue.apply_split(batch)
            if result.singles:
                self.summary.demoted += len(result.singles)
            else:
                self.summary.splits += 1
            return

        if outcome == Outcome.RETRY:
            logger.error(
                f"Got unexpected {resp.status_code} for batch of {len(batch)}",
                extra={"status_code": resp.status_code, "batch": batch_str[:500]},
            )
            self.queue.requeue_batch(batch)
            self._record_error()
            return

        data = self._decode_body(resp)
        if data is None:
            logger.error(
                f"Got an unreadable 200 body for batch of {len(batch)}, requeueing",
                extra={"batch": batch_str[:500], "body": resp.text[:200]},
            )
            self.queue.requeue_batch(batch)
            self._record_error()
            return

        for name, pkg_data in data.items():
            # A package that doesn't exist at all (e.g. unpublished) maps to null
            if isinstance(pkg_data, dict):
                self._record_count(name, pkg_data.get("downloads"))

    async def _fetch_single(self, name: str, gate: RequestGate) -> None:
        try:
            resp = await gate.get(self._url(name))
        except httpx.RequestError as e:
            logger.error(
                f"Failed to fetch {name}, requeueing: {e}",
                extra={"package": name, "error_type": type(e).__name__},
            )
            self.queue.requeue_single(name)
            self._record_error()
            return

        outcome = classify_single_status(resp.status_code)

        if outcome == Outcome.BLOCKED:
            logger.error(f"Got a 403 error for package {name}", extra={"package": name})
            self.queue.block(name)
            self.summary.blocked += 1
            return

        if outcome == Outcome.NOT_FOUND:
            logger.info(
                f"Got 404 for (presumably unpublished) package {name}",
                extra={"package": name},
            )
            self.summary.not_found += 1
            return

        if outcome == Outcome.RETRY:
            logger.error(
                f"Got unexpected {resp.status_code} for {name}",
                extra={"package": name, "status_code": resp.status_code},
            )
            self.queue.requeue_single(name)
            self._record_error()
            return

        data = self._decode_body(resp)
        if data is None:
            logger.error(
                f"Got an unreadable 200 body for {name}, requeueing",
                extra={"package": name, "body": resp.text[:200]},
            )
            self.queue.requeue_single(name)
            self._record_error()
            return

        self._record_count(name, data.get("downloads"))


async def fetch_download_counts(
    state,
    config: BuildConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> FetchSummary:
    """
    Advance a BuildState by one fetch run.

    The state's pending lists and blocked list are mutated in place.

    Raises:
        TooManyRequestErrorsError: Too many unexpected failures
    """
    queue = WorkQueue(state, demote_threshold=config.demote_threshold)
    async with create_http_client(config.max_workers, transport=transport) as client:
        run = FetchRun(queue, client, config, clock=clock, sleep=sleep)
        return await run.run()
