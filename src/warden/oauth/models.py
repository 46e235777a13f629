"""Authorization request, token response, and flow status models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict

from warden.credentials.models import StoredToken


class FlowStatus(str, Enum):
    """Progress of a single authorization attempt."""

    NONE = "none"
    URL_GENERATED = "url_generated"
    CALLBACK_SERVER_LISTENING = "callback_server_listening"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    STATE_EXPIRED = "state_expired"
    EXCHANGE_FAILED = "exchange_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            FlowStatus.TOKEN_EXCHANGED,
            FlowStatus.STATE_EXPIRED,
            FlowStatus.EXCHANGE_FAILED,
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the code flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    state: str
    scopes: tuple[str, ...] = ()
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": self.state,
            "response_type": "code",
        }

        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
            params["code_challenge_method"] = self.code_challenge_method or "S256"

        # Provider extras never override the core parameters
        for key, value in self.extra_params.items():
            params.setdefault(key, value)

        return f"{self.authorization_endpoint}?{urlencode(params)}"


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error responses
    (Section 5.2).
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    def calculate_expires_at(self, now: float | None = None) -> float | None:
        """Absolute expiry timestamp from ``expires_in``, or None if not reported."""
        if self.expires_in is None:
            return None
        now = time.time() if now is None else now
        return now + self.expires_in

    def to_stored_token(
        self, previous: StoredToken | None = None, now: float | None = None
    ) -> StoredToken:
        """Convert a successful response into the persisted token record.

        Fields the provider omitted (refresh token, scope) are carried over
        from ``previous``, since providers are not required to rotate them.

        Raises:
            ValueError: If the response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to StoredToken")

        return StoredToken(
            access_token=self.access_token,
            refresh_token=self.refresh_token
            or (previous.refresh_token if previous else None),
            expires_at=self.calculate_expires_at(now),
            scope=self.scope or (previous.scope if previous else None),
            token_type=self.token_type,
        )


@dataclass(frozen=True)
class TokenStatus:
    """Authentication summary for one provider/service pair."""

    provider: str
    service: str
    authenticated: bool
    expires_at: float | None = None
    expired: bool = False
    can_refresh: bool = False
