"""
Pytest configuration and shared fixtures for brokerlink tests.
"""
import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import httpx
import pytest

from brokerlink.core.config import Settings
from brokerlink.services.broker.credentials import DirectAuthCredentials, OAuthCredentials
from brokerlink.services.broker.fyers import FyersAdapter
from brokerlink.services.broker.shoonya import ShoonyaAdapter

FIXED_NOW = datetime(2026, 10, 19, 9, 15, tzinfo=timezone.utc)


class BrokerStub:
    """
    Fake broker backend behind ``httpx.MockTransport``.

    Routes are keyed by (method, path). Every request is recorded so tests
    can assert on call counts and payloads.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], Any] = {}

    def route(
        self,
        method: str,
        path: str,
        body: Optional[Union[dict, list]] = None,
        status: int = 200,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> None:
        self._routes[(method.upper(), path)] = handler or (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        target = self._routes.get((request.method, request.url.path))
        if target is None:
            return httpx.Response(404, text="no route")
        if callable(target):
            return target(request)
        status, body = target
        return httpx.Response(status, json=body)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def last(self, path: Optional[str] = None) -> httpx.Request:
        matching = [r for r in self.requests if path is None or r.url.path == path]
        return matching[-1]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def parse_jdata(request: httpx.Request) -> tuple[dict, Optional[str]]:
    """Split a Noren form body into (jData dict, jKey)."""
    body = request.content.decode()
    assert body.startswith("jData=")
    body = body[len("jData="):]
    if "&jKey=" in body:
        data, key = body.rsplit("&jKey=", 1)
        return json.loads(data), key
    return json.loads(body), None


def json_body(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.fixture
def test_settings():
    """Settings pointing at fake hosts, isolated from any local .env."""
    return Settings(
        _env_file=None,
        SHOONYA_BASE_URL="https://shoonya.test/NorenWClientTP",
        FYERS_API_URL="https://fyers.test/api/v3",
        FYERS_DATA_URL="https://fyers.test/data",
        ENABLED_BROKERS=[],
    )


@pytest.fixture
def broker_stub():
    return BrokerStub()


@pytest.fixture
def shoonya_creds():
    return DirectAuthCredentials(
        user_id="FA12345",
        password="s3cret-pass",
        vendor_code="FA12345_U",
        api_secret="api-secret-key",
        imei="abc1234",
        totp_key="JBSWY3DPEHPK3PXP",
    )


@pytest.fixture
def fyers_creds():
    return OAuthCredentials(
        client_id="APPID-100",
        secret_key="fyers-secret",
        redirect_uri="https://app.test/callback",
        pin="1234",
    )


@pytest.fixture
async def shoonya(broker_stub, test_settings):
    adapter = ShoonyaAdapter(config=test_settings, client=broker_stub.client())
    yield adapter
    await adapter.aclose()


@pytest.fixture
async def fyers(broker_stub, test_settings):
    adapter = FyersAdapter(config=test_settings, client=broker_stub.client(), clock=lambda: FIXED_NOW)
    yield adapter
    await adapter.aclose()
