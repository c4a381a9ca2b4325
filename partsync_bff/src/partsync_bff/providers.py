# src/partsync_bff/providers.py

import logging
import typing
from urllib.parse import urlencode, urlsplit

import httpx
from pydantic import BaseModel, ValidationError

from .config import ProviderCredentials, settings
from .errors import ProviderHTTPError
from .session_data import Provider

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: typing.Optional[str] = None
    expires_in: int
    token_type: str = "Bearer"


class LaunchpadAccount(BaseModel):
    id: typing.Union[int, str]
    product: typing.Optional[str] = None


class LaunchpadIdentity(BaseModel):
    """The part of Launchpad's authorization.json that names reachable accounts."""
    accounts: typing.List[LaunchpadAccount] = []


def _retry_after(response: httpx.Response) -> typing.Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class OAuthProviderClient:
    """
    Authorization-code client for one provider: builds the authorize URL and talks to its token endpoint.
    Subclasses only describe how the provider wants its token requests shaped.
    """

    provider: Provider
    extra_authorize_params: typing.Dict[str, str] = {}

    def __init__(
        self,
        credentials: ProviderCredentials,
        authorize_url: str,
        token_url: str,
        timeout: float = 10.0,
        transport: typing.Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport

    # --- Authorization URL ---

    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.redirect_uri,
            "state": state,
        }
        params.update(self.extra_authorize_params)
        # Some providers derive scope from the app registration; only send it when configured
        if self.credentials.scope:
            params["scope"] = self.credentials.scope
        return f"{self.authorize_url}?{urlencode(params)}"

    def owns_authorization_url(self, url: str) -> bool:
        """True when `url` points at this provider's authorize endpoint."""
        target = urlsplit(url)
        expected = urlsplit(self.authorize_url)
        return (
            target.scheme == expected.scheme
            and target.netloc == expected.netloc
            and target.path == expected.path
        )

    # --- Token endpoint ---

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> typing.Dict[str, str]:
        return {"Accept": "application/json"}

    async def _post_token(self, **request_kwargs) -> TokenResponse:
        async with self._client() as client:
            try:
                response = await client.post(self.token_url, headers=self._headers(), **request_kwargs)
            except httpx.RequestError as e:
                logger.warning(
                    "Token endpoint unreachable",
                    extra={"provider": self.provider.value, "error": str(e)},
                )
                raise ProviderHTTPError(0, body=str(e)) from e
        if response.is_error:
            logger.warning(
                "Token endpoint returned an error",
                extra={"provider": self.provider.value, "status": response.status_code},
            )
            raise ProviderHTTPError(response.status_code, body=response.text, retry_after=_retry_after(response))
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProviderHTTPError(response.status_code, body="Malformed token response") from e

    async def exchange_code(self, code: str) -> TokenResponse:
        raise NotImplementedError

    async def refresh(self, refresh_token: str) -> TokenResponse:
        raise NotImplementedError


class OnshapeClient(OAuthProviderClient):
    provider = Provider.ONSHAPE

    async def exchange_code(self, code: str) -> TokenResponse:
        return await self._post_token(data={
            "grant_type": "authorization_code",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "redirect_uri": self.credentials.redirect_uri,
            "code": code,
        })

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._post_token(data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        })


class BasecampClient(OAuthProviderClient):
    """Launchpad flavoured OAuth2: JSON bodies with a `type` field instead of `grant_type`."""

    provider = Provider.BASECAMP
    extra_authorize_params = {"type": "web_server"}

    def __init__(self, *args, identity_url: str, user_agent: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.identity_url = identity_url
        self.user_agent = user_agent

    def _headers(self) -> typing.Dict[str, str]:
        # Basecamp rejects requests without an identifying User-Agent
        return {"Accept": "application/json", "User-Agent": self.user_agent}

    async def exchange_code(self, code: str) -> TokenResponse:
        return await self._post_token(json={
            "type": "web_server",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "redirect_uri": self.credentials.redirect_uri,
            "code": code,
        })

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._post_token(json={
            "type": "refresh",
            "refresh_token": refresh_token,
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        })

    async def resolve_account_id(self, access_token: str) -> typing.Optional[str]:
        """Returns the id of the first Basecamp account the token can reach, if any."""
        headers = self._headers()
        headers["Authorization"] = f"Bearer {access_token}"
        async with self._client() as client:
            try:
                response = await client.get(self.identity_url, headers=headers)
            except httpx.RequestError as e:
                raise ProviderHTTPError(0, body=str(e)) from e
        if response.is_error:
            raise ProviderHTTPError(response.status_code, body=response.text, retry_after=_retry_after(response))
        try:
            identity = LaunchpadIdentity.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProviderHTTPError(response.status_code, body="Malformed identity response") from e
        for account in identity.accounts:
            if account.product in ("bc3", "bc4"):
                return str(account.id)
        return None


def get_provider_client(
    provider: Provider,
    transport: typing.Optional[httpx.AsyncBaseTransport] = None,
) -> OAuthProviderClient:
    """Builds the client for `provider` from settings. Raises OAuthConfigError on missing credentials."""
    credentials = settings.provider_credentials(provider.value)
    if provider is Provider.ONSHAPE:
        return OnshapeClient(
            credentials,
            authorize_url=settings.ONSHAPE_AUTHORIZE_URL,
            token_url=settings.ONSHAPE_TOKEN_URL,
            timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
    return BasecampClient(
        credentials,
        authorize_url=settings.BASECAMP_AUTHORIZE_URL,
        token_url=settings.BASECAMP_TOKEN_URL,
        timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
        transport=transport,
        identity_url=settings.BASECAMP_IDENTITY_URL,
        user_agent=settings.BASECAMP_USER_AGENT,
    )
