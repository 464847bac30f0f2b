import base64
import hashlib
import time
from unittest.mock import MagicMock

import pytest

from gtm_mcp import config
from gtm_mcp.models import Props, ToolContext
from gtm_mcp.oauth_provider import OAuthProvider


class FakeClock:
    def __init__(self, start=1_700_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def pkce_pair(verifier="v" * 64):
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return verifier, base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def mock_response(ok=True, body=None, text="", status_code=None):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code or (200 if ok else 400)
    resp.text = text
    resp.json.return_value = body if body is not None else {}
    return resp


@pytest.fixture
def props():
    return Props(
        access_token="ya29.google-token",
        client_id="client-1",
        user_id="1234567890",
        name="Ada Lovelace",
        email="ada@example.com",
        refresh_token="1//google-refresh",
        expires_at=int(time.time()) + 3600,
    )


@pytest.fixture
def ctx(props):
    return ToolContext(props=props, env=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    return OAuthProvider(revoke_upstream=MagicMock(return_value=True), clock=clock)


@pytest.fixture
def google_client(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "google-client-id")
    monkeypatch.setattr(config, "GOOGLE_CLIENT_SECRET", "google-client-secret")


@pytest.fixture(autouse=True)
def _clean_adc_env(monkeypatch):
    monkeypatch.delenv("CUSTOM_ADC_PATH", raising=False)
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
