import os

# Settings are read at import time, so the environment must be in place first
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["ONSHAPE_CLIENT_ID"] = "onshape-client"
os.environ["ONSHAPE_CLIENT_SECRET"] = "onshape-secret"
os.environ["ONSHAPE_REDIRECT_URI"] = "https://app.example.com/auth/onshape/callback"
os.environ["BASECAMP_CLIENT_ID"] = "basecamp-client"
os.environ["BASECAMP_CLIENT_SECRET"] = "basecamp-secret"
os.environ["BASECAMP_REDIRECT_URI"] = "https://app.example.com/auth/basecamp/callback"
os.environ["BASECAMP_USE_POPUP"] = "false"
os.environ.pop("ONSHAPE_SCOPE", None)
os.environ.pop("BASECAMP_SCOPE", None)
os.environ.pop("BASECAMP_ACCOUNT_ID", None)

import itertools
import typing
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from partsync_bff import main as main_mod
from partsync_bff.config import ProviderCredentials
from partsync_bff.errors import ProviderHTTPError
from partsync_bff.providers import BasecampClient, OAuthProviderClient, OnshapeClient, TokenResponse
from partsync_bff.session_data import Provider, SessionData


class FakeProviderBackend:
    """Stands in for both providers' token endpoints."""

    def __init__(self):
        self.exchanged: typing.List[typing.Tuple[str, str]] = []
        self.refreshed: typing.List[typing.Tuple[str, str]] = []
        self.fail_exchange: typing.Set[str] = set()
        self.fail_refresh: typing.Set[str] = set()
        self.expires_in = 3600
        self.account_id: typing.Optional[str] = "4242"
        self._counter = itertools.count(1)

    def token_response(self, provider: str, prefix: str) -> TokenResponse:
        n = next(self._counter)
        return TokenResponse(
            access_token=f"{provider}-{prefix}-at-{n}",
            refresh_token=f"{provider}-{prefix}-rt-{n}",
            expires_in=self.expires_in,
            token_type="Bearer",
        )

    def install(self, monkeypatch):
        backend = self

        async def exchange_code(client, code):
            provider = client.provider.value
            backend.exchanged.append((provider, code))
            if provider in backend.fail_exchange:
                raise ProviderHTTPError(400, body='{"error":"invalid_grant"}')
            return backend.token_response(provider, "code")

        async def refresh(client, refresh_token):
            provider = client.provider.value
            backend.refreshed.append((provider, refresh_token))
            if provider in backend.fail_refresh:
                raise ProviderHTTPError(401, body='{"error":"invalid_grant"}')
            return backend.token_response(provider, "refresh")

        async def resolve_account_id(client, access_token):
            return backend.account_id

        for cls in (OnshapeClient, BasecampClient):
            monkeypatch.setattr(cls, "exchange_code", exchange_code)
            monkeypatch.setattr(cls, "refresh", refresh)
        monkeypatch.setattr(BasecampClient, "resolve_account_id", resolve_account_id)


class StaticClient(OAuthProviderClient):
    """Provider client for unit tests that need no settings."""

    def __init__(self, provider: Provider, backend: typing.Optional[FakeProviderBackend] = None):
        super().__init__(
            ProviderCredentials(
                client_id=f"{provider.value}-client",
                client_secret="secret",
                redirect_uri=f"https://app.example.com/auth/{provider.value}/callback",
                scope=None,
            ),
            authorize_url=f"https://{provider.value}.example.com/oauth/authorize",
            token_url=f"https://{provider.value}.example.com/oauth/token",
        )
        self.provider = provider
        self.backend = backend or FakeProviderBackend()

    async def exchange_code(self, code: str) -> TokenResponse:
        self.backend.exchanged.append((self.provider.value, code))
        if self.provider.value in self.backend.fail_exchange:
            raise ProviderHTTPError(500, body="boom")
        return self.backend.token_response(self.provider.value, "code")

    async def refresh(self, refresh_token: str) -> TokenResponse:
        self.backend.refreshed.append((self.provider.value, refresh_token))
        if self.provider.value in self.backend.fail_refresh:
            raise ProviderHTTPError(401, body="expired")
        return self.backend.token_response(self.provider.value, "refresh")


@pytest.fixture
def backend(monkeypatch) -> FakeProviderBackend:
    fake = FakeProviderBackend()
    fake.install(monkeypatch)
    return fake


@pytest.fixture
def client_factory():
    fake = FakeProviderBackend()
    clients = {provider: StaticClient(provider, fake) for provider in Provider}

    def factory(provider: Provider) -> OAuthProviderClient:
        return clients[provider]

    factory.backend = fake
    return factory


@pytest.fixture
def client(backend):
    with TestClient(main_mod.app) as c:
        yield c


def session_of(client: TestClient) -> SessionData:
    return main_mod.session_store.load(client.cookies)


def query_of(url: str) -> typing.Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
