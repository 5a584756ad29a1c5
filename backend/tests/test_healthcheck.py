"""
Tests for the liveness ping.
"""

import asyncio
import httpx
import pytest

from api import healthcheck
from api.healthcheck import build_ping_url, ping_healthcheck


class FakeClient:
    """Stand-in for httpx.AsyncClient recording posted URLs."""

    posted = []
    error = None

    def __init__(self, timeout=None):
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, url):
        if FakeClient.error is not None:
            raise FakeClient.error
        FakeClient.posted.append(url)
        return httpx.Response(200, request=httpx.Request("POST", url))


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.posted = []
    FakeClient.error = None
    monkeypatch.setattr(healthcheck.httpx, "AsyncClient", FakeClient)
    return FakeClient


class TestPingUrl:

    def test_success_and_fail_urls(self):
        assert build_ping_url("https://hc-ping.com/abc/", "success") == "https://hc-ping.com/abc"
        assert build_ping_url("https://hc-ping.com/abc", "fail") == "https://hc-ping.com/abc/fail"


class TestPing:

    def test_no_url_is_noop(self, fake_client):
        assert asyncio.run(ping_healthcheck("success", ping_url="")) is False
        assert fake_client.posted == []

    def test_delivered(self, fake_client):
        assert asyncio.run(ping_healthcheck("fail", ping_url="https://hc-ping.com/abc")) is True
        assert fake_client.posted == ["https://hc-ping.com/abc/fail"]

    def test_transport_error_logged(self, fake_client):
        fake_client.error = httpx.ConnectError("connection refused")

        assert asyncio.run(ping_healthcheck("success", ping_url="https://hc-ping.com/abc")) is False

    def test_malformed_url_logged(self, fake_client):
        fake_client.error = httpx.InvalidURL("Invalid port: 'abc'")

        assert asyncio.run(ping_healthcheck("success", ping_url="https://hc-ping.com:abc/x")) is False
