# src/partsync_bff/session_store.py

import base64
import hashlib
import logging
import typing

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Request
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .session_data import SessionData

logger = logging.getLogger(__name__)


def _derive_fernet_key(secret: str) -> bytes:
    # Fernet wants 32 url-safe base64 bytes; derive them from the configured secret
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SessionStore:
    """
    Encrypted, authenticated cookie storage for SessionData.
    Fernet gives both confidentiality and integrity, so a tampered cookie fails to decrypt.
    """

    def __init__(self, secret_key: str, cookie_name: str, max_age: int, secure: bool):
        self._fernet = Fernet(_derive_fernet_key(secret_key))
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.secure = secure

    def load(self, cookies: typing.Mapping[str, str]) -> SessionData:
        raw = cookies.get(self.cookie_name)
        if not raw:
            return SessionData()
        try:
            payload = self._fernet.decrypt(raw.encode("utf-8"), ttl=self.max_age)
            return SessionData.model_validate_json(payload)
        except InvalidToken:
            logger.warning("Session cookie failed verification; starting an empty session")
        except ValidationError:
            logger.warning("Session cookie payload is malformed; starting an empty session")
        return SessionData()

    def serialize(self, session: SessionData) -> str:
        payload = session.model_dump_json(exclude_none=True)
        return self._fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def commit(self, response: StarletteResponse, session: SessionData) -> None:
        response.set_cookie(
            self.cookie_name,
            self.serialize(session),
            max_age=self.max_age,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )

    def destroy(self, response: StarletteResponse) -> None:
        response.delete_cookie(
            self.cookie_name,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )


class SessionMiddleware(BaseHTTPMiddleware):
    """
    Loads the session into request.state before the route runs and writes it back once afterwards.

    The cookie is only written when the session changed or a route asked for it via force_commit();
    a session emptied by reset_session() clears the cookie instead. Cookie writes are last-write-wins
    in the browser, so read-only requests must not echo a stale copy over a concurrent token write.
    """

    def __init__(self, app, store: SessionStore):
        super().__init__(app)
        self.store = store

    async def dispatch(self, request, call_next):
        session = self.store.load(request.cookies)
        had_cookie = self.store.cookie_name in request.cookies
        snapshot = session.model_dump_json()
        request.state.session = session
        request.state.session_force_commit = False

        response: StarletteResponse = await call_next(request)

        session = request.state.session
        if session.is_empty():
            if had_cookie:
                self.store.destroy(response)
        elif request.state.session_force_commit or session.model_dump_json() != snapshot:
            self.store.commit(response, session)
        return response


def get_session(request: Request) -> SessionData:
    return request.state.session


def reset_session(request: Request) -> SessionData:
    """Drops everything in the session; the middleware then clears the cookie."""
    session = request.state.session
    session.reset()
    return session


def force_commit(request: Request) -> None:
    request.state.session_force_commit = True
