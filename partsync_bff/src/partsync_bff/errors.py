# src/partsync_bff/errors.py

import typing

from fastapi import status


class ProviderHTTPError(Exception):
    """A non-2xx answer (or transport failure) from a provider endpoint."""

    def __init__(
        self,
        status_code: int,
        body: str = "",
        retry_after: typing.Optional[float] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after
        super().__init__(f"Provider returned HTTP {status_code}: {body[:200]}")

    @property
    def retryable(self) -> bool:
        # status 0 means the request never got an answer
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


class OAuthError(Exception):
    code = "oauth_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, provider: typing.Optional[str] = None):
        self.message = message
        self.provider = provider
        super().__init__(message)


class OAuthConfigError(OAuthError):
    code = "missing_configuration"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, provider: str, missing: typing.List[str]):
        self.missing = missing
        super().__init__(
            f"OAuth is not configured for {provider}: missing {', '.join(missing)}",
            provider=provider,
        )


class ProviderDeniedError(OAuthError):
    code = "provider_denied"


class MissingCodeError(OAuthError):
    code = "missing_code"

    def __init__(self, provider: typing.Optional[str] = None):
        super().__init__("No authorization code received", provider=provider)


class InvalidStateError(OAuthError):
    code = "invalid_state"

    def __init__(self, provider: typing.Optional[str] = None):
        super().__init__("Invalid state parameter", provider=provider)


class TokenExchangeError(OAuthError):
    code = "token_exchange_failed"
    http_status = status.HTTP_502_BAD_GATEWAY


class TokenRefreshError(OAuthError):
    code = "token_refresh_failed"
    http_status = status.HTTP_401_UNAUTHORIZED


class RedirectLoopError(OAuthError):
    code = "redirect_loop"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, provider: typing.Optional[str] = None):
        super().__init__(
            "We could not keep you signed in. Please refresh the page or open this app in a new "
            "browser window; third-party cookies may be blocked in this context.",
            provider=provider,
        )
