# src/partsync_bff/session_data.py

import enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class Provider(str, enum.Enum):
    ONSHAPE = "onshape"
    BASECAMP = "basecamp"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ProviderTokens(BaseModel):
    """Access/refresh/expiry triple for one provider. Always written as a whole."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch milliseconds


class PendingFlow(BaseModel):
    """An authorization request that has been started but not yet called back."""
    nonce: str
    resume_to: Optional[str] = None
    popup: bool = False


class SessionData(BaseModel):
    """
    Represents the data stored for a browser session.
    The whole model travels in the encrypted session cookie; nothing is kept server-side.
    """
    onshape: Optional[ProviderTokens] = None
    basecamp: Optional[ProviderTokens] = None
    basecamp_account_id: Optional[str] = None
    pending: Dict[Provider, PendingFlow] = Field(default_factory=dict)
    # Page to resume once both providers are connected
    post_auth_redirect: Optional[str] = None
    # Dual-auth gate loop guard; only present while auto-redirects are in progress
    auth_redirect_attempts: Optional[int] = None
    auth_redirect_provider: Optional[Provider] = None

    def tokens_for(self, provider: Provider) -> Optional[ProviderTokens]:
        return getattr(self, provider.value)

    def set_tokens(self, provider: Provider, tokens: ProviderTokens) -> None:
        setattr(self, provider.value, tokens)

    def clear_tokens(self, provider: Provider) -> None:
        setattr(self, provider.value, None)
        if provider is Provider.BASECAMP:
            self.basecamp_account_id = None

    def pending_for(self, provider: Provider) -> Optional[PendingFlow]:
        return self.pending.get(provider)

    def set_pending(self, provider: Provider, flow: PendingFlow) -> None:
        self.pending[provider] = flow

    def clear_pending(self, provider: Provider) -> Optional[PendingFlow]:
        return self.pending.pop(provider, None)

    def clear_redirect_attempts(self) -> None:
        self.auth_redirect_attempts = None
        self.auth_redirect_provider = None

    def reset(self) -> None:
        """Drops every field in place, leaving an empty session."""
        for name, field in type(self).model_fields.items():
            setattr(self, name, field.get_default(call_default_factory=True))

    def is_empty(self) -> bool:
        return self == SessionData()
