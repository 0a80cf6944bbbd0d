"""
Shared pytest fixtures for download-counts tests.
"""

import os
import sys
from typing import Callable

import boto3
import httpx
import pytest
from moto import mock_aws

# Add functions directory to Python path so tests run without installing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

from download_counts.shared.config import BuildConfig  # noqa: E402

TEST_BUCKET = "download-counts-state"


def pytest_configure(config):
    """Set AWS credentials before test collection."""
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from download_counts.shared.aws_clients import reset_clients

    reset_clients()


@pytest.fixture
def s3_bucket():
    """Mocked S3 with an empty bucket; yields the client."""
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket=TEST_BUCKET)
        yield s3


@pytest.fixture
def fast_config():
    """Config with no throttling delays and a small worker pool."""
    return BuildConfig(
        api_base="https://api.npmjs.org",
        max_workers=3,
        min_request_interval=0.0,
        fallback_retry_after=3600,
        max_request_errors=80,
        query_budget=1000,
        publisher="none",
    )


class FakeClock:
    """Manually advanced monotonic clock with a matching async sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)


@pytest.fixture
def fake_clock():
    return FakeClock()


def create_mock_transport(handler: Callable[[httpx.Request], httpx.Response]):
    """Create a mock transport for httpx that routes requests to handler."""

    async def mock_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    return httpx.MockTransport(mock_handler)


def requested_names(request: httpx.Request) -> list[str]:
    """Package names from a /downloads/point/{range}/{names} URL."""
    path = request.url.path
    names = path.split("/downloads/point/", 1)[1].split("/", 1)[1]
    return names.split(",")


class FakeDownloadsApi:
    """
    In-memory downloads API.

    Args:
        counts: Downloads per name; names missing here are unknown (null / 404)
        blocked: Names the WAF rejects; any request containing one gets a 403
        max_bulk: Bulk requests with more names get a 400
        failures: Status codes returned, in order, before normal answers
    """

    def __init__(self, counts, blocked=(), max_bulk=128, failures=()):
        self.counts = dict(counts)
        self.blocked = set(blocked)
        self.max_bulk = max_bulk
        self.failures = list(failures)
        self.requests: list[list[str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        names = requested_names(request)
        self.requests.append(names)

        if self.failures:
            return httpx.Response(self.failures.pop(0))

        if any(name in self.blocked for name in names):
            return httpx.Response(403, text="Sorry, you have been blocked")

        # A one-name query always gets the single-package answer
        if len(names) == 1:
            return self._single(names[0])

        if len(names) > self.max_bulk:
            return httpx.Response(400, text="Request Header Or Cookie Too Large")

        body = {
            name: ({"downloads": self.counts[name], "package": name} if name in self.counts else None)
            for name in names
        }
        return httpx.Response(200, json=body)

    def _single(self, name: str) -> httpx.Response:
        if name not in self.counts:
            return httpx.Response(404, json={"error": f"package {name} not found"})
        return httpx.Response(200, json={"downloads": self.counts[name], "package": name})

    def transport(self) -> httpx.MockTransport:
        return create_mock_transport(self)
