"""
Build and Release - Advance the current release by one step.

Triggered periodically (hourly cron / scheduled CI job / EventBridge rule).
A full build takes far longer than one invocation may run, so every
invocation loads the checkpoint for the current release cycle, performs
exactly ONE of the steps below, saves and exits:

    INIT        no checkpoint yet: fetch the package name list, queue the
                work, save the checkpoint. No API calls.
    DONE        already published: nothing to do.
    PUBLISHING  merged dataset written: publish it, mark published.
    MERGING     nothing left to fetch: merge the shards into the dataset.
    FETCHING    otherwise: query the downloads API for up to QUERY_BUDGET
                requests and write the results as a new shard.

Every step is safe to re-run after a crash; an interrupted FETCHING run
only loses its own unsaved shard.

Exit status is 1 when the run hit the request error ceiling, when
publishing failed, or when the API rate limited us (which the
self-imposed throttling should make impossible, so maintainers need to
know). In the last case the progress is still saved.
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import Optional

import httpx

from download_counts.collectors.npm_downloads_collector import fetch_download_counts
from download_counts.collectors.rate_gate import Clock, Sleep
from download_counts.collectors.work_queue import partition_names
from download_counts.release.name_source import NameSource, create_name_source
from download_counts.release.publisher import Publisher, create_publisher
from download_counts.release.shards import format_summary, merge_shards, summarize_counts
from download_counts.release.state import (
    BuildState,
    Phase,
    advance_after_fetch,
    advance_after_merge,
    advance_after_publish,
    determine_phase,
)
from download_counts.release.stores import BuildStore, create_store
from download_counts.release.versioning import get_version
from download_counts.shared.config import BuildConfig
from download_counts.shared.errors import BuildError, PublishError, TooManyRequestErrorsError
from download_counts.shared.logging_utils import configure_structured_logging, set_run_id

logger = logging.getLogger(__name__)


def initialize(store: BuildStore, name_source: NameSource, config: BuildConfig) -> dict:
    """Seed the queue for a new release cycle."""
    logger.info(f"No checkpoint for {store.version} yet. Creating it...")
    names = name_source.get_names()
    batches, singles, excluded = partition_names(names, config.bulk_batch_size)

    state = BuildState.new(store.version, batches, singles, excluded)
    store.save_checkpoint(state)

    logger.info(
        f"Queued {len(names)} names: {len(batches)} bulk batches, {len(singles)} single",
        extra={"excluded": len(excluded)},
    )
    return {
        "names": len(names),
        "bulk_batches": len(batches),
        "singles": len(singles),
        "excluded": len(excluded),
        "next_phase": state.phase.value,
    }


def publish(state: BuildState, store: BuildStore, publisher: Publisher) -> dict:
    """Publish the merged dataset and mark the cycle done."""
    counts = store.read_artifact()
    publisher.publish(counts, state.version)

    advance_after_publish(state)
    store.save_checkpoint(state)
    logger.info(f"Published version {state.version} successfully")
    return {"published": len(counts), "next_phase": state.phase.value}


def merge(state: BuildState, store: BuildStore) -> dict:
    """Merge every shard of this cycle into the dataset."""
    shards = (store.read_shard(i) for i in range(state.counts_files_so_far))
    counts = merge_shards(shards)
    store.write_artifact(counts)

    advance_after_merge(state)
    store.save_checkpoint(state)
    logger.info(
        f"Merged {state.counts_files_so_far} shards into {len(counts)} counts. "
        "Next run should publish it.",
        extra={"blocked": len(state.blocked_identifiers)},
    )
    logger.info("Download count distribution\n" + format_summary(summarize_counts(counts)))
    return {
        "shards": state.counts_files_so_far,
        "counted": len(counts),
        "blocked": len(state.blocked_identifiers),
        "next_phase": state.phase.value,
    }


async def fetch(
    state: BuildState,
    store: BuildStore,
    config: BuildConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """Fetch counts for up to config.query_budget queries and write a shard."""
    logger.info(
        f"{state.pending_count()} names left to query",
        extra={
            "pending_batches": len(state.pending_bulk_batches),
            "pending_singles": len(state.pending_singles),
        },
    )
    summary = await fetch_download_counts(state, config, transport=transport, clock=clock, sleep=sleep)

    # counts_files_so_far is the next unused index; a shard already there
    # was written by a run that crashed before its checkpoint was saved
    store.write_shard(state.counts_files_so_far, summary.counts, replace_orphan=True)
    advance_after_fetch(state)
    store.save_checkpoint(state)

    return {
        **summary.to_dict(),
        "shard": state.counts_files_so_far - 1,
        "remaining": state.pending_count(),
        "next_phase": state.phase.value,
    }


async def run_invocation(
    store: BuildStore,
    name_source: NameSource,
    publisher: Publisher,
    config: BuildConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """
    Run exactly one phase of the build for store.version.

    Returns:
        Summary dict with "version", "phase" (the phase that ran) and
        phase-specific fields

    Raises:
        TooManyRequestErrorsError: Fetch aborted; nothing saved
        PublishError: Publish failed; nothing saved
    """
    state = store.load_checkpoint()
    phase = determine_phase(state)
    logger.info(f"Proceeding with work on version {store.version}: {phase.value}")

    if phase == Phase.INIT:
        details = initialize(store, name_source, config)
    elif phase == Phase.DONE:
        logger.info(f"{store.version} was already published. Nothing left to do!")
        details = {"next_phase": Phase.DONE.value}
    elif phase == Phase.PUBLISHING:
        details = publish(state, store, publisher)
    elif phase == Phase.MERGING:
        details = merge(state, store)
    else:
        details = await fetch(state, store, config, transport=transport, clock=clock, sleep=sleep)

    return {"version": store.version, "phase": phase.value, **details}


def handler(event, context):
    """Scheduled Lambda entry point. Fatal errors propagate to fail the invocation."""
    configure_structured_logging()
    set_run_id(getattr(context, "aws_request_id", None))

    event = event or {}
    config = BuildConfig.from_env()
    version = event.get("version") or get_version()

    store = create_store(config, version)
    name_source = create_name_source(config.names_file)
    publisher = create_publisher(
        config.publisher, config.package_dir, config.publish_bucket, config.publish_key
    )
    return asyncio.run(run_invocation(store, name_source, publisher, config))


def _parse_args(argv):
    parser = argparse.ArgumentParser(
        description="Advance the download-counts release build by one step"
    )
    parser.add_argument("--store", choices=["local", "s3"], help="Checkpoint backend")
    parser.add_argument("--state-dir", help="Directory for the local store")
    parser.add_argument("--bucket", help="Bucket for the S3 store")
    parser.add_argument("--prefix", help="Key prefix for the S3 store")
    parser.add_argument("--publisher", choices=["npm", "s3", "none"], help="Publish target")
    parser.add_argument("--package-dir", help="npm package directory to publish")
    parser.add_argument("--names-file", help="JSON array of package names (skips the registry)")
    parser.add_argument("--version", help="Release version (default: current cycle)")
    parser.add_argument("--query-budget", type=int, help="API requests before saving")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    configure_structured_logging(getattr(logging, args.log_level.upper(), logging.INFO))
    set_run_id()

    config = BuildConfig.from_env().with_overrides(
        store=args.store,
        state_dir=args.state_dir,
        bucket=args.bucket,
        prefix=args.prefix,
        publisher=args.publisher,
        package_dir=args.package_dir,
        names_file=args.names_file,
        query_budget=args.query_budget,
    )
    version = args.version or get_version()

    try:
        store = create_store(config, version)
        publisher = create_publisher(
            config.publisher, config.package_dir, config.publish_bucket, config.publish_key
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    name_source = create_name_source(config.names_file)

    try:
        result = asyncio.run(run_invocation(store, name_source, publisher, config))
    except (TooManyRequestErrorsError, PublishError) as e:
        logger.error(
            f"Build step failed: {e.message}",
            extra={"error_code": e.code, "error_details": e.details},
        )
        return 1
    except BuildError as e:
        logger.exception(
            f"Build step failed: {e.message}",
            extra={"error_code": e.code, "error_details": e.details},
        )
        return 1

    if result.get("rate_limited") and config.fail_on_rate_limit:
        logger.error(
            "Ran to completion - but along the way we got rate limited with 429s. "
            "That should never happen!",
            extra={"rate_limit_count": result.get("rate_limit_count")},
        )
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
