"""
Durable storage for a release cycle.

Holds three kinds of objects, all namespaced by the cycle's version
(build-{version}/):

    state.json      the BuildState checkpoint, read once at the start and
                    written once at the end of every invocation
    counts{N}.json  result shards, append-only, N = 0..counts_files_so_far-1
    index.json      the merged artifact handed to the publisher

Two backends: local files (for a checkout that CI commits back, or a
persistent volume) and S3.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from botocore.exceptions import ClientError

from download_counts.release.state import BuildState
from download_counts.shared.aws_clients import get_s3
from download_counts.shared.config import BuildConfig
from download_counts.shared.errors import CheckpointCorruptError, ShardExistsError

logger = logging.getLogger(__name__)

STATE_NAME = "state.json"
ARTIFACT_NAME = "index.json"


def namespace_for(version: str) -> str:
    return f"build-{version}"


def shard_name(index: int) -> str:
    return f"counts{index}.json"


def _decode_checkpoint(raw: bytes, where: str) -> BuildState:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CheckpointCorruptError(f"Checkpoint at {where} is not valid JSON: {e}") from e
    return BuildState.from_dict(data)


class BuildStore(ABC):
    """Checkpoint, shard and artifact storage for one release cycle."""

    def __init__(self, version: str):
        self.version = version
        self.namespace = namespace_for(version)

    @abstractmethod
    def load_checkpoint(self) -> Optional[BuildState]:
        """Return the saved state, or None if this cycle has not started."""

    @abstractmethod
    def save_checkpoint(self, state: BuildState) -> None:
        ...

    @abstractmethod
    def shard_exists(self, index: int) -> bool:
        ...

    @abstractmethod
    def _put(self, name: str, body: bytes) -> None:
        ...

    @abstractmethod
    def _get(self, name: str) -> bytes:
        ...

    def write_shard(
        self, index: int, counts: dict[str, int], replace_orphan: bool = False
    ) -> None:
        """
        Write result shard {index}. Shards are never overwritten.

        The one exception is an orphan: a shard at the checkpoint's next
        index, written by a run that died before saving the checkpoint. Its
        names are still pending, so with replace_orphan=True it is replaced.

        Raises:
            ShardExistsError: The index was already written and
                replace_orphan is False
        """
        if self.shard_exists(index):
            if not replace_orphan:
                raise ShardExistsError(index)
            logger.warning(
                f"Replacing shard {index} left behind by an interrupted run",
                extra={"shard": index},
            )
        self._put(shard_name(index), json.dumps(counts).encode())
        logger.info(
            f"Wrote shard {index} with {len(counts)} counts",
            extra={"shard": index, "counted": len(counts)},
        )

    def read_shard(self, index: int) -> dict[str, int]:
        return json.loads(self._get(shard_name(index)))

    def write_artifact(self, counts: dict[str, int]) -> None:
        self._put(ARTIFACT_NAME, json.dumps(counts).encode())

    def read_artifact(self) -> dict[str, int]:
        return json.loads(self._get(ARTIFACT_NAME))


class LocalBuildStore(BuildStore):
    """Store backed by JSON files under {root}/build-{version}/."""

    def __init__(self, root: str, version: str):
        super().__init__(version)
        self.directory = Path(root) / self.namespace

    def _path(self, name: str) -> Path:
        return self.directory / name

    def _put(self, name: str, body: bytes) -> None:
        # Write-then-rename so a crash never leaves a truncated file behind
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(body)
            os.replace(tmp_path, self._path(name))
        except BaseException:
            os.unlink(tmp_path)
            raise

    def _get(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def load_checkpoint(self) -> Optional[BuildState]:
        path = self._path(STATE_NAME)
        if not path.exists():
            return None
        return _decode_checkpoint(path.read_bytes(), str(path))

    def save_checkpoint(self, state: BuildState) -> None:
        self._put(STATE_NAME, json.dumps(state.to_dict()).encode())
        logger.info(f"Saved checkpoint to {self._path(STATE_NAME)}", extra={"phase": state.phase.value})

    def shard_exists(self, index: int) -> bool:
        return self._path(shard_name(index)).exists()


class S3BuildStore(BuildStore):
    """Store backed by objects under s3://{bucket}/{prefix}build-{version}/."""

    def __init__(self, bucket: str, version: str, prefix: str = "", s3=None):
        super().__init__(version)
        self.bucket = bucket
        self.prefix = prefix
        self._s3 = s3

    @property
    def s3(self):
        return self._s3 or get_s3()

    def _key(self, name: str) -> str:
        return f"{self.prefix}{self.namespace}/{name}"

    def _put(self, name: str, body: bytes) -> None:
        self.s3.put_object(
            Bucket=self.bucket,
            Key=self._key(name),
            Body=body,
            ContentType="application/json",
        )

    def _get(self, name: str) -> bytes:
        response = self.s3.get_object(Bucket=self.bucket, Key=self._key(name))
        return response["Body"].read()

    def _exists(self, name: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=self._key(name))
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def load_checkpoint(self) -> Optional[BuildState]:
        try:
            raw = self._get(STATE_NAME)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            raise
        return _decode_checkpoint(raw, f"s3://{self.bucket}/{self._key(STATE_NAME)}")

    def save_checkpoint(self, state: BuildState) -> None:
        self._put(STATE_NAME, json.dumps(state.to_dict()).encode())
        logger.info(
            f"Saved checkpoint to s3://{self.bucket}/{self._key(STATE_NAME)}",
            extra={"phase": state.phase.value},
        )

    def shard_exists(self, index: int) -> bool:
        return self._exists(shard_name(index))


def create_store(config: BuildConfig, version: str) -> BuildStore:
    """Build the store selected by config.store."""
    if config.store == "local":
        return LocalBuildStore(config.state_dir, version)
    if config.store == "s3":
        if not config.bucket:
            raise ValueError("S3 store selected but no bucket configured")
        return S3BuildStore(config.bucket, version, prefix=config.prefix)
    raise ValueError(f"Unknown store: {config.store}")
