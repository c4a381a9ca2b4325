import asyncio

from partsync_bff import token_vault
from partsync_bff.auth_flow import FlowKind
from partsync_bff.auth_gate import GateState, evaluate_gate
from partsync_bff.errors import ProviderDeniedError, RedirectLoopError
from partsync_bff.session_data import Provider, ProviderTokens, SessionData

FAR_FUTURE = 10 ** 15


def _evaluate(session, client_factory, path="/parts", error=None, popup_for=lambda p: False):
    return asyncio.run(
        evaluate_gate(session, path, error=error, popup_for=popup_for, client_factory=client_factory, max_redirects=2)
    )


def _connect(session, provider, expires_at=FAR_FUTURE):
    session.set_tokens(provider, ProviderTokens(access_token=f"{provider.value}-at", refresh_token="rt", expires_at=expires_at))


def test_fresh_session_needs_onshape_first(client_factory):
    session = SessionData()
    decision = _evaluate(session, client_factory)
    assert decision.state is GateState.NEED_ONSHAPE
    assert decision.flow.kind is FlowKind.REDIRECT
    assert session.auth_redirect_attempts == 1
    assert session.post_auth_redirect == "/parts"
    assert session.pending_for(Provider.ONSHAPE).resume_to == "/parts"


def test_onshape_connected_needs_basecamp(client_factory):
    session = SessionData()
    _connect(session, Provider.ONSHAPE)
    decision = _evaluate(session, client_factory)
    assert decision.state is GateState.NEED_BASECAMP
    assert decision.provider is Provider.BASECAMP


def test_popup_choice_is_per_provider(client_factory):
    session = SessionData()
    _connect(session, Provider.ONSHAPE)
    decision = _evaluate(session, client_factory, popup_for=lambda p: p is Provider.BASECAMP)
    assert decision.flow.kind is FlowKind.POPUP


def test_both_connected_grants_access_and_clears_counter(client_factory):
    session = SessionData()
    _connect(session, Provider.ONSHAPE)
    _connect(session, Provider.BASECAMP)
    session.auth_redirect_attempts = 1
    session.auth_redirect_provider = Provider.BASECAMP
    session.post_auth_redirect = "/parts"

    decision = _evaluate(session, client_factory)

    assert decision.state is GateState.BOTH_AUTHENTICATED
    assert decision.tokens == {Provider.ONSHAPE: "onshape-at", Provider.BASECAMP: "basecamp-at"}
    assert session.auth_redirect_attempts is None
    assert session.auth_redirect_provider is None
    assert session.post_auth_redirect is None


def test_loop_guard_stops_after_bound(client_factory):
    session = SessionData()
    states = [_evaluate(session, client_factory).state for _ in range(3)]
    assert states == [GateState.NEED_ONSHAPE, GateState.NEED_ONSHAPE, GateState.ERROR]
    assert session.auth_redirect_attempts is None


def test_loop_guard_never_exceeds_bound_for_any_sequence(client_factory):
    session = SessionData()
    redirects_since_error = 0
    for _ in range(25):
        decision = _evaluate(session, client_factory)
        if decision.state is GateState.ERROR:
            assert isinstance(decision.error, RedirectLoopError)
            redirects_since_error = 0
        else:
            redirects_since_error += 1
            assert redirects_since_error <= 2


def test_loop_guard_reuses_same_nonce(client_factory):
    session = SessionData()
    first = _evaluate(session, client_factory)
    second = _evaluate(session, client_factory)
    assert first.flow.state == second.flow.state


def test_switching_provider_resets_counter(client_factory):
    session = SessionData()
    _evaluate(session, client_factory)
    _evaluate(session, client_factory)
    assert session.auth_redirect_attempts == 2

    _connect(session, Provider.ONSHAPE)
    decision = _evaluate(session, client_factory)
    assert decision.state is GateState.NEED_BASECAMP
    assert session.auth_redirect_attempts == 1


def test_explicit_error_stops_redirects(client_factory):
    session = SessionData()
    _evaluate(session, client_factory)
    decision = _evaluate(session, client_factory, error="access_denied")
    assert decision.state is GateState.ERROR
    assert isinstance(decision.error, ProviderDeniedError)
    assert session.auth_redirect_attempts is None


def test_refresh_failure_falls_back_to_that_provider(client_factory, monkeypatch):
    monkeypatch.setattr(token_vault, "now_ms", lambda: 1_000_000)
    session = SessionData()
    _connect(session, Provider.ONSHAPE)
    _connect(session, Provider.BASECAMP, expires_at=1_000_000)
    client_factory.backend.fail_refresh.add("basecamp")

    decision = _evaluate(session, client_factory)

    assert decision.state is GateState.NEED_BASECAMP
    assert session.basecamp is None
    assert session.onshape.access_token == "onshape-at"


def test_expiring_tokens_are_refreshed_by_gate(client_factory, monkeypatch):
    monkeypatch.setattr(token_vault, "now_ms", lambda: 1_000_000)
    session = SessionData()
    _connect(session, Provider.ONSHAPE, expires_at=1_000_000 + 60_000)
    _connect(session, Provider.BASECAMP)

    decision = _evaluate(session, client_factory)

    assert decision.state is GateState.BOTH_AUTHENTICATED
    assert decision.tokens[Provider.ONSHAPE].startswith("onshape-refresh-at-")
    assert client_factory.backend.refreshed == [("onshape", "rt")]
