# src/partsync_bff/auth_flow.py

import enum
import hmac
import logging
import secrets
import typing
from urllib.parse import urlencode

from .config import settings
from .errors import (
    InvalidStateError,
    MissingCodeError,
    OAuthError,
    ProviderDeniedError,
    ProviderHTTPError,
    TokenExchangeError,
)
from .providers import BasecampClient, OAuthProviderClient, get_provider_client
from .session_data import PendingFlow, Provider, SessionData
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

ClientFactory = typing.Callable[[Provider], OAuthProviderClient]

SIGNIN_PATH = "/signin"


class FlowKind(str, enum.Enum):
    ALREADY_AUTHENTICATED = "already_authenticated"
    REDIRECT = "redirect"
    POPUP = "popup"


class FlowStart(typing.NamedTuple):
    kind: FlowKind
    # Where the browser goes next: resume target, provider authorize URL or bridge URL
    target: str
    state: typing.Optional[str] = None
    authorization_url: typing.Optional[str] = None


class ResultKind(str, enum.Enum):
    SUCCESS = "success"
    RESTART = "restart"


class FlowResult(typing.NamedTuple):
    kind: ResultKind
    target: str


def safe_redirect(url: typing.Optional[str], default: str = "/") -> str:
    """Only same-origin relative paths are accepted as resume targets."""
    if not url or not url.startswith("/") or url.startswith("//") or url.startswith("/\\"):
        return default
    return url


def generate_nonce() -> str:
    return secrets.token_hex(32)  # 256 bits


def bridge_url(provider: Provider, authorization_url: str, state: str) -> str:
    return f"/auth/{provider.value}/redirect?" + urlencode({"url": authorization_url, "state": state})


def initiator_url(provider: Provider, redirect_to: typing.Optional[str] = None, popup: bool = False) -> str:
    params = {}
    if redirect_to:
        params["redirect"] = redirect_to
    if popup:
        params["popup"] = "1"
    url = f"/auth/{provider.value}"
    return f"{url}?{urlencode(params)}" if params else url


def wants_popup(provider: Provider, popup_requested: bool = False, embedded: bool = False) -> bool:
    # Inside another site's iframe a full-page redirect to the provider cannot work
    return popup_requested or embedded or settings.prefers_popup(provider.value)


def start_flow(
    session: SessionData,
    provider: Provider,
    redirect_to: typing.Optional[str] = None,
    popup: bool = False,
    client_factory: ClientFactory = get_provider_client,
) -> FlowStart:
    """
    Begins (or rejoins) the authorization-code flow for `provider`.

    Only one nonce per provider is ever in flight: a second start while one is pending (another tab,
    a gate retry) rebuilds the same authorization URL instead of invalidating the first.
    """
    resume_to = safe_redirect(redirect_to) if redirect_to else None

    if session.tokens_for(provider):
        return FlowStart(FlowKind.ALREADY_AUTHENTICATED, resume_to or "/")

    client = client_factory(provider)

    pending = session.pending_for(provider)
    if pending is not None:
        logger.info("Reusing pending authorization state", extra={"provider": provider.value, "state": pending.nonce[:8]})
        # A popup flow in flight keeps relaying to its opener; a plain tab joining it never downgrades it
        pending.popup = pending.popup or popup
        if pending.resume_to is None:
            pending.resume_to = resume_to
    else:
        pending = PendingFlow(nonce=generate_nonce(), resume_to=resume_to, popup=popup)
        session.set_pending(provider, pending)
        logger.info("Started authorization flow", extra={"provider": provider.value, "state": pending.nonce[:8], "popup": popup})

    authorization_url = client.authorization_url(pending.nonce)
    if popup:
        # The popup first loads a same-origin page so its own cookie jar holds the session
        return FlowStart(
            FlowKind.POPUP,
            bridge_url(provider, authorization_url, pending.nonce),
            state=pending.nonce,
            authorization_url=authorization_url,
        )
    return FlowStart(FlowKind.REDIRECT, authorization_url, state=pending.nonce, authorization_url=authorization_url)


def _next_target(session: SessionData, resume_to: typing.Optional[str]) -> str:
    if resume_to:
        return resume_to
    if session.post_auth_redirect:
        return f"{SIGNIN_PATH}?" + urlencode({"redirect": session.post_auth_redirect})
    return "/"


async def _resolve_basecamp_account(session: SessionData, client: OAuthProviderClient, access_token: str) -> None:
    account_id = None
    if isinstance(client, BasecampClient):
        try:
            account_id = await client.resolve_account_id(access_token)
        except ProviderHTTPError as e:
            logger.warning("Basecamp account lookup failed", extra={"error": str(e)})
    session.basecamp_account_id = account_id or settings.BASECAMP_ACCOUNT_ID


async def complete_flow(
    session: SessionData,
    provider: Provider,
    code: typing.Optional[str],
    state: typing.Optional[str],
    error: typing.Optional[str] = None,
    popup: bool = False,
    client_factory: ClientFactory = get_provider_client,
) -> FlowResult:
    """
    Validates a provider callback against the session and exchanges the code for tokens.

    Raises ProviderDeniedError, MissingCodeError, InvalidStateError or TokenExchangeError for terminal
    outcomes. A callback arriving at a session that never saw the flow (cookie lost between windows)
    is not terminal: the session is reset and a fresh flow is returned as RESTART.

    Success and every terminal error end the gate's redirect run, so its attempt counter is cleared.
    """
    try:
        result = await _complete_flow(session, provider, code, state, error, popup, client_factory)
    except OAuthError:
        session.clear_redirect_attempts()
        raise
    if result.kind is ResultKind.SUCCESS:
        session.clear_redirect_attempts()
    return result


async def _complete_flow(
    session: SessionData,
    provider: Provider,
    code: typing.Optional[str],
    state: typing.Optional[str],
    error: typing.Optional[str],
    popup: bool,
    client_factory: ClientFactory,
) -> FlowResult:
    if error:
        session.clear_pending(provider)
        logger.info("Provider returned an error", extra={"provider": provider.value, "error": error})
        raise ProviderDeniedError(f"{provider.label} sign-in failed: {error}", provider=provider.value)

    if not code:
        raise MissingCodeError(provider=provider.value)

    pending = session.pending_for(provider)
    if pending is None:
        if session.tokens_for(provider):
            # Intact session whose nonce was already consumed: a replayed callback
            logger.warning("Callback replayed after state was consumed", extra={"provider": provider.value})
            raise InvalidStateError(provider=provider.value)
        logger.warning("No pending state in session; restarting flow", extra={"provider": provider.value})
        session.reset()
        restart = start_flow(session, provider, popup=popup, client_factory=client_factory)
        if popup:
            # The opener reopens the popup through the initiator, which reuses the new nonce
            return FlowResult(ResultKind.RESTART, initiator_url(provider, popup=True))
        return FlowResult(ResultKind.RESTART, restart.target)

    if not state or not hmac.compare_digest(state, pending.nonce):
        logger.warning("State mismatch", extra={"provider": provider.value})
        raise InvalidStateError(provider=provider.value)

    client = client_factory(provider)
    session.clear_pending(provider)

    try:
        token_response = await client.exchange_code(code)
    except ProviderHTTPError as e:
        logger.error(
            "Token exchange failed; destroying session",
            extra={"provider": provider.value, "status": e.status_code},
        )
        session.reset()
        raise TokenExchangeError(
            f"Failed to exchange the {provider.label} authorization code.",
            provider=provider.value,
        ) from e

    vault = TokenVault(session, provider, client_factory)
    vault.store_tokens(token_response)
    if provider is Provider.BASECAMP:
        await _resolve_basecamp_account(session, client, token_response.access_token)

    target = _next_target(session, pending.resume_to)
    logger.info("Authorization complete", extra={"provider": provider.value, "next": target})
    return FlowResult(ResultKind.SUCCESS, target)
