# src/partsync_bff/token_vault.py

import logging
import time
import typing

from .config import settings
from .errors import ProviderHTTPError, TokenRefreshError
from .providers import OAuthProviderClient, TokenResponse
from .session_data import Provider, ProviderTokens, SessionData

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class TokenVault:
    """
    Owns the access/refresh/expiry triple of one provider inside a session.

    A failed refresh is never retried: the provider's tokens are dropped and the caller has to send
    the user back through that provider's sign-in.
    """

    def __init__(
        self,
        session: SessionData,
        provider: Provider,
        client_factory: typing.Callable[[Provider], OAuthProviderClient],
        refresh_skew_seconds: typing.Optional[int] = None,
    ):
        self.session = session
        self.provider = provider
        self._client_factory = client_factory
        if refresh_skew_seconds is None:
            refresh_skew_seconds = settings.TOKEN_REFRESH_SKEW_SECONDS
        self.refresh_skew_ms = refresh_skew_seconds * 1000

    def is_authenticated(self) -> bool:
        tokens = self.session.tokens_for(self.provider)
        return bool(tokens and tokens.access_token)

    def needs_refresh(self, tokens: ProviderTokens) -> bool:
        if not tokens.expires_at:
            return True
        return now_ms() >= tokens.expires_at - self.refresh_skew_ms

    def store_tokens(self, token_response: TokenResponse) -> ProviderTokens:
        tokens = ProviderTokens(
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            expires_at=now_ms() + token_response.expires_in * 1000,
        )
        self.session.set_tokens(self.provider, tokens)
        return tokens

    def clear(self) -> None:
        self.session.clear_tokens(self.provider)

    async def get_valid_token(self) -> typing.Optional[str]:
        tokens = self.session.tokens_for(self.provider)
        if not tokens or not tokens.access_token:
            return None
        if not self.needs_refresh(tokens):
            return tokens.access_token

        if not tokens.refresh_token:
            logger.info("Token expiring without refresh token", extra={"provider": self.provider.value})
            self.clear()
            raise TokenRefreshError(
                f"{self.provider.label} session expired. Please sign in again.",
                provider=self.provider.value,
            )

        logger.info("Refreshing access token", extra={"provider": self.provider.value})
        try:
            client = self._client_factory(self.provider)
            token_response = await client.refresh(tokens.refresh_token)
        except ProviderHTTPError as e:
            logger.warning(
                "Token refresh failed; clearing provider tokens",
                extra={"provider": self.provider.value, "status": e.status_code},
            )
            self.clear()
            raise TokenRefreshError(
                f"Could not refresh the {self.provider.label} session. Please sign in again.",
                provider=self.provider.value,
            ) from e

        if not token_response.refresh_token:
            # Some providers do not rotate refresh tokens
            token_response = token_response.model_copy(update={"refresh_token": tokens.refresh_token})
        return self.store_tokens(token_response).access_token
