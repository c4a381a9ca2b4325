# src/partsync_bff/main.py

import logging
import os
import typing

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from .auth_flow import (
    FlowKind,
    FlowStart,
    ResultKind,
    complete_flow,
    initiator_url,
    safe_redirect,
    start_flow,
    wants_popup,
)
from .auth_gate import GateDecision, GateState, evaluate_gate
from .config import CONFIG_FILE_DIR, settings
from .errors import OAuthError, RedirectLoopError
from .logging_config import configure_logging
from .providers import get_provider_client
from .session_data import Provider
from .session_store import SessionMiddleware, SessionStore, force_commit, get_session, reset_session
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

PACKAGE_DIR = CONFIG_FILE_DIR

session_store = SessionStore(
    secret_key=settings.SESSION_SECRET_KEY,
    cookie_name=settings.SESSION_COOKIE_NAME,
    max_age=settings.SESSION_MAX_AGE_SECONDS,
    secure=settings.SESSION_COOKIE_SECURE,
)

# --- FastAPI App Setup ---
app = FastAPI(
    title="PartSync BFF",
    description="Backend-For-Frontend connecting Onshape parts with Basecamp card tables; owns both OAuth sessions.",
    version="0.1.0"
)

app.add_middleware(SessionMiddleware, store=session_store)

# --- Static Files and Templates ---
app.mount(
    "/static",
    StaticFiles(directory=PACKAGE_DIR / "static"),
    name="static"
)
templates = Jinja2Templates(directory=PACKAGE_DIR / "templates")


class GateInterrupt(Exception):
    """Raised by the dual-auth dependency when the protected page cannot render yet."""

    def __init__(self, decision: GateDecision):
        self.decision = decision
        super().__init__(decision.state.value)


class ExchangeRequest(BaseModel):
    code: typing.Optional[str] = None
    state: typing.Optional[str] = None
    error: typing.Optional[str] = None


def _is_embedded(request: Request) -> bool:
    return request.headers.get("sec-fetch-dest") == "iframe"


def _wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


def _render_error(request: Request, exc: OAuthError) -> Response:
    if _wants_json(request):
        return JSONResponse(
            {"success": False, "error": exc.message, "code": exc.code},
            status_code=exc.http_status,
        )
    retry_url = initiator_url(Provider(exc.provider)) if exc.provider else "/signin"
    return templates.TemplateResponse(
        request,
        "auth_error.html",
        {
            "message": exc.message,
            "code": exc.code,
            "retry_url": retry_url,
            "loop_guard": isinstance(exc, RedirectLoopError),
        },
        status_code=exc.http_status,
    )


def _flow_response(request: Request, provider: Provider, flow: FlowStart, fallback_url: str = "/") -> Response:
    if flow.kind is FlowKind.ALREADY_AUTHENTICATED:
        # Re-send the cookie so the browser that asked really holds it
        force_commit(request)
        return RedirectResponse(url=flow.target, status_code=status.HTTP_302_FOUND)
    if flow.kind is FlowKind.REDIRECT:
        return RedirectResponse(url=flow.target, status_code=status.HTTP_302_FOUND)
    return templates.TemplateResponse(
        request,
        "oauth_popup.html",
        {
            "provider": provider,
            "popup_url": flow.target,
            "exchange_url": f"/auth/{provider.value}/exchange",
            "fallback_url": fallback_url,
        },
    )


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    return _render_error(request, exc)


@app.exception_handler(GateInterrupt)
async def gate_interrupt_handler(request: Request, exc: GateInterrupt):
    decision = exc.decision
    if decision.state is GateState.ERROR:
        return _render_error(request, decision.error)
    return _flow_response(request, decision.provider, decision.flow, fallback_url=request.url.path)


# --- Favicon Route ---
@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    favicon_path = PACKAGE_DIR / "static" / "favicon.ico"
    if os.path.exists(favicon_path) and os.path.isfile(favicon_path):
        return FileResponse(favicon_path, media_type="image/x-icon")
    else:
        return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Dependency for checking authentication ---
async def require_dual_auth(request: Request) -> GateDecision:
    session = get_session(request)
    embedded = _is_embedded(request)
    request_path = request.url.path
    if request.url.query:
        request_path = f"{request_path}?{request.url.query}"

    decision = await evaluate_gate(
        session,
        request_path,
        error=request.query_params.get("error"),
        popup_for=lambda provider: wants_popup(provider, embedded=embedded),
    )
    if decision.state is not GateState.BOTH_AUTHENTICATED:
        raise GateInterrupt(decision)
    return decision


# --- Authentication Routes ---
# logout/status are declared before /auth/{provider} so they are not read as provider names
@app.get("/auth/logout")
async def logout(request: Request):
    reset_session(request)
    logger.info("Session destroyed by logout")
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


@app.get("/auth/status")
async def auth_status(request: Request):
    session = get_session(request)
    return {
        provider.value: {"authenticated": TokenVault(session, provider, get_provider_client).is_authenticated()}
        for provider in Provider
    }


@app.get("/auth/{provider}")
async def start_auth(
        request: Request,
        provider: Provider,
        redirect: typing.Optional[str] = None,
        popup: bool = False,
        embedded: bool = False,
):
    session = get_session(request)
    use_popup = wants_popup(provider, popup_requested=popup, embedded=embedded or _is_embedded(request))
    flow = start_flow(session, provider, redirect_to=redirect, popup=use_popup)
    return _flow_response(request, provider, flow, fallback_url=safe_redirect(redirect))


@app.get("/auth/{provider}/callback")
async def auth_callback(
        request: Request,
        provider: Provider,
        code: typing.Optional[str] = None,
        state: typing.Optional[str] = None,
        error: typing.Optional[str] = None,
        mode: typing.Optional[str] = None,
):
    session = get_session(request)
    pending = session.pending_for(provider)

    # Popup flows (and callbacks whose window lost the cookie) hand the code to the opener instead
    if mode != "redirect" and (pending is None or pending.popup):
        # Missing code or state is relayed as-is so /exchange reports it without consuming the nonce
        if error:
            payload = {"error": error}
        else:
            payload = {"code": code or "", "state": state or ""}
        return templates.TemplateResponse(
            request,
            "oauth_relay.html",
            {"provider": provider, "payload": payload},
        )

    result = await complete_flow(session, provider, code, state, error)
    if result.kind is ResultKind.RESTART:
        logger.info("Restarting sign-in after lost session", extra={"provider": provider.value})
    return RedirectResponse(url=result.target, status_code=status.HTTP_302_FOUND)


@app.post("/auth/{provider}/exchange")
async def auth_exchange(request: Request, provider: Provider, body: ExchangeRequest):
    session = get_session(request)
    try:
        result = await complete_flow(session, provider, body.code, body.state, body.error, popup=True)
    except OAuthError as e:
        return JSONResponse(
            {"success": False, "error": e.message, "code": e.code},
            status_code=e.http_status,
        )

    if result.kind is ResultKind.RESTART:
        return {
            "success": False,
            "error": "Your session was lost during sign-in. Starting again.",
            "code": "session_restarted",
            "redirectTo": result.target,
        }
    return {"success": True, "redirectTo": result.target}


@app.get("/auth/{provider}/redirect")
async def auth_redirect(
        request: Request,
        provider: Provider,
        url: typing.Optional[str] = None,
        state: typing.Optional[str] = None,
):
    if not url:
        raise OAuthError("Missing redirect URL", provider=provider.value)
    client = get_provider_client(provider)
    if not client.owns_authorization_url(url):
        logger.warning("Bridge asked to redirect off-provider", extra={"provider": provider.value})
        raise OAuthError("Redirect target is not a sign-in page", provider=provider.value)

    pending = get_session(request).pending_for(provider)
    if state and (pending is None or pending.nonce != state):
        logger.warning("Bridge state differs from session", extra={"provider": provider.value})

    force_commit(request)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


# --- Pages ---
@app.get("/signin", response_class=HTMLResponse)
async def signin(request: Request, redirect: typing.Optional[str] = None):
    session = get_session(request)
    target = safe_redirect(redirect)
    if target != "/":
        session.post_auth_redirect = target

    connected = {
        provider: TokenVault(session, provider, get_provider_client).is_authenticated()
        for provider in Provider
    }
    if all(connected.values()):
        return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

    embedded = _is_embedded(request)
    return templates.TemplateResponse(
        request,
        "signin.html",
        {
            "providers": [
                {
                    "provider": provider,
                    "connected": connected[provider],
                    "connect_url": initiator_url(
                        provider, redirect_to=target, popup=wants_popup(provider, embedded=embedded)
                    ),
                }
                for provider in Provider
            ],
        },
    )


@app.get("/", response_class=HTMLResponse)
async def read_root(request: Request, auth: GateDecision = Depends(require_dual_auth)):
    session = get_session(request)
    return templates.TemplateResponse(
        request,
        "index.html",
        {"basecamp_account_id": session.basecamp_account_id},
    )


# --- Startup Event ---
@app.on_event("startup")
async def startup_event():
    configure_logging(settings.LOG_LEVEL)
    for provider in Provider:
        try:
            settings.provider_credentials(provider.value)
            configured = True
        except OAuthError:
            configured = False
        logger.info("Provider configuration", extra={"provider": provider.value, "configured": configured})
    logger.info(
        "PartSync BFF started",
        extra={"environment": settings.ENVIRONMENT, "secure_cookies": settings.SESSION_COOKIE_SECURE},
    )
