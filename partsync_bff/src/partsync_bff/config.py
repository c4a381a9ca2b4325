# src/partsync_bff/config.py

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import OAuthConfigError

logger = logging.getLogger(__name__)

# .env is at the service root, two levels up from src/partsync_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
    logger.info("Loaded .env file", extra={"path": str(ENV_FILE_PATH)})


class ProviderCredentials:
    """Resolved OAuth client settings for one provider."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, scope: Optional[str]):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope


class Settings(BaseSettings):
    # === Session Management ===
    SESSION_SECRET_KEY: str
    SESSION_COOKIE_NAME: str = "partsync_session"
    SESSION_MAX_AGE_SECONDS: int = 60 * 60 * 24 * 30  # 30 days
    ENVIRONMENT: str = "development"

    # === Onshape (provider A) ===
    ONSHAPE_CLIENT_ID: Optional[str] = None
    ONSHAPE_CLIENT_SECRET: Optional[str] = None
    ONSHAPE_REDIRECT_URI: Optional[AnyHttpUrl] = None
    ONSHAPE_SCOPE: Optional[str] = None
    ONSHAPE_AUTHORIZE_URL: str = "https://oauth.onshape.com/oauth/authorize"
    ONSHAPE_TOKEN_URL: str = "https://oauth.onshape.com/oauth/token"

    # === Basecamp (provider B) ===
    BASECAMP_CLIENT_ID: Optional[str] = None
    BASECAMP_CLIENT_SECRET: Optional[str] = None
    BASECAMP_REDIRECT_URI: Optional[AnyHttpUrl] = None
    BASECAMP_SCOPE: Optional[str] = None
    BASECAMP_AUTHORIZE_URL: str = "https://launchpad.37signals.com/authorization/new"
    BASECAMP_TOKEN_URL: str = "https://launchpad.37signals.com/authorization/token"
    BASECAMP_IDENTITY_URL: str = "https://launchpad.37signals.com/authorization.json"
    BASECAMP_ACCOUNT_ID: Optional[str] = None
    BASECAMP_USER_AGENT: str = "PartSync BFF (ops@example.com)"
    BASECAMP_USE_POPUP: bool = False

    # === Token lifecycle ===
    TOKEN_REFRESH_SKEW_SECONDS: int = 5 * 60
    MAX_AUTH_REDIRECTS: int = 2
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 10.0

    LOG_LEVEL: str = "INFO"

    # === Server ===
    BFF_HOST: str = "127.0.0.1"
    BFF_PORT: int = 8000

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator(
        "ONSHAPE_CLIENT_ID", "ONSHAPE_CLIENT_SECRET", "ONSHAPE_REDIRECT_URI", "ONSHAPE_SCOPE",
        "BASECAMP_CLIENT_ID", "BASECAMP_CLIENT_SECRET", "BASECAMP_REDIRECT_URI", "BASECAMP_SCOPE",
        "BASECAMP_ACCOUNT_ID",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v):
        # An empty env var means "not configured", e.g. scope derived from the app registration
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("SESSION_SECRET_KEY")
    @classmethod
    def secret_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("SESSION_SECRET_KEY must not be blank.")
        return v

    @property
    def SESSION_COOKIE_SECURE(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def prefers_popup(self, provider: str) -> bool:
        return provider == "basecamp" and self.BASECAMP_USE_POPUP

    def provider_credentials(self, provider: str) -> ProviderCredentials:
        """
        Returns the OAuth client settings for `provider`.
        Raises OAuthConfigError when the client id, secret or redirect URI is missing,
        so a request never proceeds with a partial OAuth configuration.
        """
        prefix = provider.upper()
        client_id = getattr(self, f"{prefix}_CLIENT_ID")
        client_secret = getattr(self, f"{prefix}_CLIENT_SECRET")
        redirect_uri = getattr(self, f"{prefix}_REDIRECT_URI")
        missing = [
            name for name, value in (
                (f"{prefix}_CLIENT_ID", client_id),
                (f"{prefix}_CLIENT_SECRET", client_secret),
                (f"{prefix}_REDIRECT_URI", redirect_uri),
            ) if not value
        ]
        if missing:
            logger.error("OAuth configuration incomplete", extra={"provider": provider, "missing": missing})
            raise OAuthConfigError(provider, missing)
        return ProviderCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=str(redirect_uri),
            scope=getattr(self, f"{prefix}_SCOPE"),
        )


settings = Settings()
