"""
Tests for the rate-limited request gate.

Time is simulated with FakeClock (see conftest.py): sleeping advances the
clock instantly, so cooldowns of an hour cost nothing.
"""

import httpx
import pytest

from conftest import FakeClock, create_mock_transport
from download_counts.collectors.rate_gate import Cooldown, RequestGate, parse_retry_after

URL = "https://api.npmjs.org/downloads/point/last-month/lodash"


def scripted_client(responses, clock):
    """
    AsyncClient answering with the given responses in order (last one repeats).

    Returns the client and the list of clock readings at which each request
    reached the server.
    """
    remaining = list(responses)
    starts = []

    def handler(request: httpx.Request) -> httpx.Response:
        starts.append(clock())
        template = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    client = httpx.AsyncClient(transport=create_mock_transport(handler))
    return client, starts


def ok():
    return httpx.Response(200, json={"downloads": 1, "package": "lodash"})


def rate_limited(retry_after=None):
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    return httpx.Response(429, headers=headers)


def make_gate(client, clock, cooldown=None, min_interval=0.5, fallback=3600):
    cooldown = cooldown or Cooldown(clock=clock, sleep=clock.sleep)
    return RequestGate(
        client,
        cooldown,
        min_interval=min_interval,
        fallback_retry_after=fallback,
        clock=clock,
        sleep=clock.sleep,
    )


class TestParseRetryAfter:
    """Tests for Retry-After header parsing."""

    @pytest.mark.parametrize("value,expected", [("30", 30.0), ("1", 1.0), ("2.5", 2.5)])
    def test_numeric_seconds(self, value, expected):
        assert parse_retry_after(value) == expected

    @pytest.mark.parametrize(
        "value", [None, "", "soon", "Wed, 21 Oct 2015 07:28:00 GMT", "0", "-5", "nan"]
    )
    def test_missing_or_invalid(self, value):
        assert parse_retry_after(value) is None


class TestCooldown:
    """Tests for the shared cooldown deadline."""

    def test_extend_keeps_the_later_deadline(self):
        clock = FakeClock(start=100.0)
        cooldown = Cooldown(clock=clock, sleep=clock.sleep)

        cooldown.extend(10)
        cooldown.extend(5)

        assert cooldown.deadline == 110.0

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_without_deadline(self):
        clock = FakeClock()
        cooldown = Cooldown(clock=clock, sleep=clock.sleep)

        await cooldown.wait()

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_wait_rechecks_extended_deadline(self):
        """A deadline extended while sleeping is honoured after waking."""
        clock = FakeClock(start=0.0)
        extended = []

        async def sleep_and_extend(seconds):
            await clock.sleep(seconds)
            if not extended:
                extended.append(True)
                cooldown.extend(20)  # another worker hit a 429 meanwhile

        cooldown = Cooldown(clock=clock, sleep=sleep_and_extend)
        cooldown.extend(10)

        await cooldown.wait()

        assert clock.now >= 30.0
        assert clock.now >= cooldown.deadline


class TestRequestGateSpacing:
    """Consecutive request starts from one worker are spaced out."""

    @pytest.mark.asyncio
    async def test_min_interval_between_starts(self):
        clock = FakeClock()
        client, starts = scripted_client([ok()], clock)
        gate = make_gate(client, clock, min_interval=0.5)

        for _ in range(5):
            resp = await gate.get(URL)
            assert resp.status_code == 200

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert len(gaps) == 4
        assert all(gap >= 0.5 for gap in gaps)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_first_request_not_delayed(self):
        clock = FakeClock()
        client, _ = scripted_client([ok()], clock)
        gate = make_gate(client, clock)

        await gate.get(URL)

        assert clock.sleeps == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_no_wait_when_interval_already_elapsed(self):
        clock = FakeClock()
        client, _ = scripted_client([ok()], clock)
        gate = make_gate(client, clock, min_interval=0.5)

        await gate.get(URL)
        clock.now += 2.0
        await gate.get(URL)

        assert clock.sleeps == []
        await client.aclose()


class TestRequestGateRateLimiting:
    """429 responses pause every worker and are retried transparently."""

    @pytest.mark.asyncio
    async def test_retries_after_retry_after_seconds(self):
        clock = FakeClock(start=0.0)
        client, starts = scripted_client([rate_limited("30"), ok()], clock)
        gate = make_gate(client, clock)

        resp = await gate.get(URL)

        assert resp.status_code == 200
        assert len(starts) == 2
        first, second = starts
        assert second >= first + 30
        assert gate.cooldown.rate_limited is True
        assert gate.cooldown.rate_limit_count == 1
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "soon", "0"])
    async def test_fallback_delay_without_usable_header(self, header):
        clock = FakeClock(start=0.0)
        client, starts = scripted_client([rate_limited(header), ok()], clock)
        gate = make_gate(client, clock, fallback=3600)

        resp = await gate.get(URL)

        assert resp.status_code == 200
        assert starts[1] >= 3600
        await client.aclose()

    @pytest.mark.asyncio
    async def test_repeated_429s_still_resolve(self):
        clock = FakeClock(start=0.0)
        client, starts = scripted_client([rate_limited("5"), rate_limited("5"), rate_limited("5"), ok()], clock)
        gate = make_gate(client, clock)

        resp = await gate.get(URL)

        assert resp.status_code == 200
        assert len(starts) == 4
        assert gate.cooldown.rate_limit_count == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cooldown_shared_between_workers(self):
        """After one worker is rate limited, no worker starts before the deadline."""
        clock = FakeClock(start=0.0)
        cooldown = Cooldown(clock=clock, sleep=clock.sleep)
        limited_client, _ = scripted_client([rate_limited("60"), ok()], clock)
        other_client, other_starts = scripted_client([ok()], clock)
        gate_a = make_gate(limited_client, clock, cooldown=cooldown)
        gate_b = make_gate(other_client, clock, cooldown=cooldown)

        await gate_a.get(URL)
        await gate_b.get(URL)

        assert other_starts[0] >= 60
        await limited_client.aclose()
        await other_client.aclose()

    @pytest.mark.asyncio
    async def test_other_statuses_returned_to_caller(self):
        clock = FakeClock()
        client, starts = scripted_client([httpx.Response(503)], clock)
        gate = make_gate(client, clock)

        resp = await gate.get(URL)

        assert resp.status_code == 503
        assert len(starts) == 1
        assert gate.cooldown.rate_limited is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        clock = FakeClock()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=create_mock_transport(handler))
        gate = make_gate(client, clock)

        with pytest.raises(httpx.ConnectError):
            await gate.get(URL)
        await client.aclose()
