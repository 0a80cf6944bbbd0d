"""
Publishers for the finished dataset.

Called exactly once per release cycle, from the PUBLISHING phase. A
publisher either completes or raises PublishError; the build only marks
the cycle as published after a clean return.
"""

import json
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path

from botocore.exceptions import ClientError

from download_counts.release.shards import sort_by_count
from download_counts.shared.aws_clients import get_s3
from download_counts.shared.errors import PublishError
from download_counts.shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)


class Publisher(ABC):
    @abstractmethod
    def publish(self, counts: dict[str, int], version: str) -> None:
        """Publish the merged counts as release `version`."""


class NullPublisher(Publisher):
    """Publishes nothing. For dry runs."""

    def publish(self, counts: dict[str, int], version: str) -> None:
        logger.info(f"Dry run: would publish {len(counts)} counts as {version}")


class NpmPublisher(Publisher):
    """
    Publishes the npm package in package_dir.

    Writes the package's main file (index.json by default) with names
    ordered by count, descending, sets the version in package.json and
    runs `npm publish`. Authentication is left to the environment
    (NPM_TOKEN / .npmrc).
    """

    def __init__(self, package_dir: str = ".", npm: str = "npm"):
        self.package_dir = Path(package_dir)
        self.npm = npm

    def _update_package_json(self, version: str) -> str:
        path = self.package_dir / "package.json"
        try:
            pkg = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise PublishError(f"Could not read {path}: {e}") from e

        pkg["version"] = version
        path.write_text(json.dumps(pkg, indent=2) + "\n")
        return pkg.get("main", "index.json")

    def publish(self, counts: dict[str, int], version: str) -> None:
        main = self._update_package_json(version)
        (self.package_dir / main).write_text(json.dumps(sort_by_count(counts)))

        start = time.time()
        try:
            result = subprocess.run(
                [self.npm, "publish"],
                cwd=self.package_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            log_external_call(logger, "npm", "publish", False, (time.time() - start) * 1000, str(e))
            raise PublishError(f"Could not run {self.npm}: {e}") from e

        latency_ms = (time.time() - start) * 1000
        if result.returncode != 0:
            log_external_call(logger, "npm", "publish", False, latency_ms, result.stderr[-2000:])
            raise PublishError(
                f"npm publish exited with status {result.returncode}",
                details={"stderr": result.stderr[-2000:]},
            )
        log_external_call(logger, "npm", "publish", True, latency_ms)


class S3Publisher(Publisher):
    """Uploads the dataset as a public JSON document."""

    def __init__(self, bucket: str, key: str, s3=None):
        self.bucket = bucket
        self.key = key
        self._s3 = s3

    def publish(self, counts: dict[str, int], version: str) -> None:
        s3 = self._s3 or get_s3()
        body = {
            "version": version,
            "package_count": len(counts),
            "counts": sort_by_count(counts),
        }
        start = time.time()
        try:
            s3.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=json.dumps(body),
                ContentType="application/json",
                CacheControl="max-age=3600",  # 1 hour cache
            )
        except ClientError as e:
            log_external_call(logger, "s3", "put_object", False, (time.time() - start) * 1000, str(e))
            raise PublishError(f"Failed to upload to s3://{self.bucket}/{self.key}: {e}") from e
        log_external_call(logger, "s3", "put_object", True, (time.time() - start) * 1000)


def create_publisher(kind: str, package_dir: str = ".", bucket=None, key=None) -> Publisher:
    if kind == "npm":
        return NpmPublisher(package_dir)
    if kind == "s3":
        if not bucket:
            raise ValueError("S3 publisher selected but no publish bucket configured")
        return S3Publisher(bucket, key)
    if kind == "none":
        return NullPublisher()
    raise ValueError(f"Unknown publisher: {kind}")
