"""Shared fixtures: a deployment vault, one encrypted user key, a fake HTTP session."""

from typing import Any, List, Tuple

import pytest
from eth_account import Account

from tradedesk.key_manager import KeyVault, SigningIdentity

TEST_PASSPHRASE = "test-passphrase-that-is-long-enough-0123456789"

# Well-known throwaway key, never funded
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture(scope="session")
def vault():
    return KeyVault(TEST_PASSPHRASE)


@pytest.fixture(scope="session")
def test_account():
    return Account.from_key(TEST_PRIVATE_KEY)


@pytest.fixture(scope="session")
def identity(vault, test_account):
    return SigningIdentity(
        encrypted_key=vault.encrypt(TEST_PRIVATE_KEY),
        address=test_account.address,
    )


class FakeResponse:
    """Stands in for aiohttp's response context manager."""

    def __init__(self, status: int = 200, payload: Any = None, text: str = ""):
        self.status = status
        self._payload = payload
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def json(self):
        return self._payload

    async def text(self):
        return self._text


class FakeSession:
    """
    Replays queued responses in call order and records each request.

    A queued exception is raised from the request call itself, the way
    aiohttp raises ClientConnectorError.
    """

    def __init__(self, *responses):
        self._responses = list(responses)
        self.calls: List[Tuple[str, str, dict]] = []

    def _next(self, method: str, url: str, kwargs: dict):
        self.calls.append((method, url, kwargs))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    async def close(self):
        pass
