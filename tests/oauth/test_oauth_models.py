from urllib.parse import parse_qs, urlparse

import pytest

from warden.credentials.models import StoredToken
from warden.oauth.models import AuthorizationRequest, FlowStatus, TokenResponse


class TestAuthorizationRequest:
    def test_builds_url_with_core_parameters(self):
        # Arrange
        request = AuthorizationRequest(
            authorization_endpoint="https://auth.acme.test/oauth/authorize",
            client_id="abc123",
            redirect_uri="http://localhost:3000/callback",
            state="f" * 64,
            scopes=("read", "profile"),
        )

        # Act
        url = urlparse(request.build_authorization_url())
        query = parse_qs(url.query)

        # Assert
        assert url.netloc == "auth.acme.test"
        assert query["client_id"] == ["abc123"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["read profile"]
        assert query["redirect_uri"] == ["http://localhost:3000/callback"]
        assert "code_challenge" not in query

    def test_includes_pkce_and_extra_params_without_overriding_core(self):
        # Arrange
        request = AuthorizationRequest(
            authorization_endpoint="https://auth.acme.test/oauth/authorize",
            client_id="abc123",
            redirect_uri="warden://oauth/callback",
            state="s" * 64,
            code_challenge="challenge",
            code_challenge_method="S256",
            extra_params={"owner": "user", "client_id": "hijack"},
        )

        # Act
        query = parse_qs(urlparse(request.build_authorization_url()).query)

        # Assert
        assert query["code_challenge"] == ["challenge"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["owner"] == ["user"]
        assert query["client_id"] == ["abc123"]


class TestTokenResponse:
    def test_success_and_error_detection(self):
        assert TokenResponse(access_token="at").is_success()
        assert TokenResponse(error="invalid_grant").is_error()
        assert not TokenResponse(error="invalid_grant", access_token="at").is_success()
        assert not TokenResponse().is_success()

    def test_expires_at_from_expires_in(self):
        # Act & Assert
        assert TokenResponse(access_token="at", expires_in=3600).calculate_expires_at(
            now=1000.0
        ) == 4600.0
        assert TokenResponse(access_token="at").calculate_expires_at(now=1000.0) is None

    def test_stored_token_carries_over_missing_refresh_token(self):
        # Arrange
        previous = StoredToken(access_token="old", refresh_token="keep-me", scope="read")
        response = TokenResponse(access_token="new", expires_in=60)

        # Act
        token = response.to_stored_token(previous=previous, now=100.0)

        # Assert
        assert token.access_token == "new"
        assert token.refresh_token == "keep-me"
        assert token.scope == "read"
        assert token.expires_at == 160.0

    def test_rotated_refresh_token_replaces_previous(self):
        # Arrange
        previous = StoredToken(access_token="old", refresh_token="old-rt")

        # Act
        token = TokenResponse(access_token="new", refresh_token="new-rt").to_stored_token(
            previous=previous
        )

        # Assert
        assert token.refresh_token == "new-rt"

    def test_error_response_cannot_become_stored_token(self):
        with pytest.raises(ValueError):
            TokenResponse(error="access_denied").to_stored_token()

    def test_ignores_unknown_provider_fields(self):
        # Act
        response = TokenResponse.model_validate(
            {"access_token": "xoxb", "ok": True, "team": {"id": "T1"}}
        )

        # Assert
        assert response.access_token == "xoxb"


class TestFlowStatus:
    def test_terminal_states(self):
        assert FlowStatus.TOKEN_EXCHANGED.is_terminal
        assert FlowStatus.STATE_EXPIRED.is_terminal
        assert FlowStatus.EXCHANGE_FAILED.is_terminal
        assert not FlowStatus.CODE_RECEIVED.is_terminal
        assert not FlowStatus.NONE.is_terminal
