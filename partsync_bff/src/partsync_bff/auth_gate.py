# src/partsync_bff/auth_gate.py

import enum
import logging
import typing

from .auth_flow import ClientFactory, FlowStart, safe_redirect, start_flow
from .config import settings
from .errors import OAuthError, ProviderDeniedError, RedirectLoopError, TokenRefreshError
from .providers import get_provider_client
from .session_data import Provider, SessionData
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

# Order in which the gate walks the providers
GATE_ORDER = (Provider.ONSHAPE, Provider.BASECAMP)


class GateState(str, enum.Enum):
    NEED_ONSHAPE = "NEED_ONSHAPE"
    NEED_BASECAMP = "NEED_BASECAMP"
    BOTH_AUTHENTICATED = "BOTH_AUTHENTICATED"
    ERROR = "ERROR"

    @classmethod
    def need(cls, provider: Provider) -> "GateState":
        return cls[f"NEED_{provider.name}"]


class GateDecision(typing.NamedTuple):
    state: GateState
    provider: typing.Optional[Provider] = None
    flow: typing.Optional[FlowStart] = None
    error: typing.Optional[OAuthError] = None
    tokens: typing.Dict[Provider, str] = {}


def _need_provider(
    session: SessionData,
    provider: Provider,
    request_path: str,
    popup: bool,
    client_factory: ClientFactory,
    max_redirects: int,
) -> GateDecision:
    # One counter, tagged with the provider it is counting for; moving on to the next provider starts over
    if session.auth_redirect_provider == provider:
        attempts = (session.auth_redirect_attempts or 0) + 1
    else:
        attempts = 1

    if attempts > max_redirects:
        logger.warning(
            "Auth redirect loop guard tripped",
            extra={"provider": provider.value, "attempts": attempts - 1},
        )
        session.clear_redirect_attempts()
        return GateDecision(GateState.ERROR, provider, error=RedirectLoopError(provider=provider.value))

    session.auth_redirect_attempts = attempts
    session.auth_redirect_provider = provider
    if session.post_auth_redirect is None:
        session.post_auth_redirect = safe_redirect(request_path)

    flow = start_flow(session, provider, redirect_to=request_path, popup=popup, client_factory=client_factory)
    logger.info(
        "Auth gate redirecting to provider",
        extra={"provider": provider.value, "attempt": attempts, "flow": flow.kind.value},
    )
    return GateDecision(GateState.need(provider), provider, flow=flow)


async def evaluate_gate(
    session: SessionData,
    request_path: str,
    error: typing.Optional[str] = None,
    popup_for: typing.Callable[[Provider], bool] = lambda provider: False,
    client_factory: ClientFactory = get_provider_client,
    max_redirects: typing.Optional[int] = None,
) -> GateDecision:
    """
    Decides whether a protected page may render.

    Only the attempt counter, post-auth redirect and (through the initiator) the provider's pending
    nonce are written, so evaluating on every request from several tabs is safe.
    """
    if max_redirects is None:
        max_redirects = settings.MAX_AUTH_REDIRECTS

    if error:
        session.clear_redirect_attempts()
        return GateDecision(GateState.ERROR, error=ProviderDeniedError(error))

    for provider in GATE_ORDER:
        if not TokenVault(session, provider, client_factory).is_authenticated():
            return _need_provider(session, provider, request_path, popup_for(provider), client_factory, max_redirects)

    session.clear_redirect_attempts()
    tokens = {}
    for provider in GATE_ORDER:
        try:
            tokens[provider] = await TokenVault(session, provider, client_factory).get_valid_token()
        except TokenRefreshError:
            # The vault already dropped this provider's tokens; the other provider stays connected
            return _need_provider(session, provider, request_path, popup_for(provider), client_factory, max_redirects)

    session.post_auth_redirect = None
    return GateDecision(GateState.BOTH_AUTHENTICATED, tokens=tokens)
