"""Records owned by the credential store: stored tokens and OAuth session states."""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict


def token_key(provider: str, service: str) -> str:
    """Credential key under which a provider/service token is stored."""
    return f"{provider}_{service}_token"


def client_id_key(provider: str) -> str:
    return f"{provider}_client_id"


def client_secret_key(provider: str) -> str:
    return f"{provider}_client_secret"


class StoredToken(BaseModel):
    """OAuth token persisted as a JSON credential value.

    ``expires_at`` is a Unix timestamp in seconds; None means the provider did
    not report an expiry and the token is treated as non-expiring.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def expires_within(self, margin: float, now: float | None = None) -> bool:
        """Check if the token expires within ``margin`` seconds."""
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.expires_at - now < margin

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_within(0.0, now)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class OAuthSessionState(BaseModel):
    """Bookkeeping for one in-flight authorization attempt.

    Stored in the OAuth-states document keyed by its state token.
    """

    model_config = ConfigDict(extra="ignore")

    provider: str
    service: str
    redirect_uri: str
    timestamp: float
    code_verifier: str | None = None

    def age(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return now - self.timestamp
