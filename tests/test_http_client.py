"""
Tests for the downloads API client factory.
"""

import httpx
import pytest

from download_counts import __version__
from download_counts.collectors.http_client import USER_AGENT, create_http_client


class TestCreateHttpClient:
    @pytest.mark.asyncio
    async def test_sends_user_agent(self):
        seen = []

        def handler(request):
            seen.append(request.headers["User-Agent"])
            return httpx.Response(200, json={})

        async with create_http_client(transport=httpx.MockTransport(handler)) as client:
            await client.get("https://api.npmjs.org/downloads/point/last-month/lodash")

        assert seen == [USER_AGENT]
        assert __version__ in USER_AGENT

    @pytest.mark.asyncio
    async def test_timeout_configured(self):
        async with create_http_client() as client:
            assert client.timeout.connect == 10.0
            assert client.timeout.read == 30.0

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        async with create_http_client() as client:
            assert client.follow_redirects is True
