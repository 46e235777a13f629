"""Token endpoint client for code exchange and refresh.

Implements RFC 6749 Section 4.1.3 (authorization code) and Section 6
(refresh) requests. Client credentials go either in an HTTP Basic header or
in the form body, depending on what the provider requires.
"""

import logging

import httpx
from pydantic import ValidationError

from warden.catalog import ClientAuthMethod, ProviderConfig
from warden.errors import TokenExchangeError
from warden.oauth.models import TokenResponse

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class TokenClient:
    """Talks to provider token endpoints.

    Uses application/x-www-form-urlencoded encoding as required by RFC 6749.
    """

    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code(
        self,
        provider: ProviderConfig,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str | None,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: On transport failure, non-2xx status, or error body
        """
        form_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            form_data["code_verifier"] = code_verifier

        logger.debug(f"Exchanging authorization code at {provider.token_url}")
        return await self._request(provider, form_data, client_id, client_secret)

    async def refresh(
        self,
        provider: ProviderConfig,
        refresh_token: str,
        client_id: str,
        client_secret: str | None,
    ) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenExchangeError: On transport failure, non-2xx status, or error body
        """
        form_data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }

        logger.debug(f"Refreshing access token at {provider.token_url}")
        return await self._request(provider, form_data, client_id, client_secret)

    async def _request(
        self,
        provider: ProviderConfig,
        form_data: dict[str, str],
        client_id: str,
        client_secret: str | None,
    ) -> TokenResponse:
        auth: httpx.BasicAuth | None = None
        if provider.client_auth is ClientAuthMethod.BASIC:
            auth = httpx.BasicAuth(client_id, client_secret or "")
        else:
            form_data = {**form_data, "client_id": client_id}
            if client_secret:
                form_data["client_secret"] = client_secret

        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={client_id[:8]}..., client_auth={provider.client_auth.value}"
        )

        try:
            if auth is not None:
                response = await self._http_client.post(
                    provider.token_url, data=form_data, headers=FORM_HEADERS, auth=auth
                )
            else:
                response = await self._http_client.post(
                    provider.token_url, data=form_data, headers=FORM_HEADERS
                )
        except httpx.HTTPError as e:
            raise TokenExchangeError(
                f"HTTP error calling {provider.name} token endpoint: {e}"
            ) from e

        return self._parse_token_response(provider, response)

    def _parse_token_response(
        self, provider: ProviderConfig, response: httpx.Response
    ) -> TokenResponse:
        try:
            token_response = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenExchangeError(
                f"Invalid token response from {provider.name} "
                f"(HTTP {response.status_code}): {e}"
            ) from e

        if not 200 <= response.status_code < 300 or token_response.is_error():
            error_code = token_response.error or "unknown_error"
            description = token_response.error_description or "No description provided"
            logger.warning(
                f"Token request to {provider.name} failed with "
                f"{response.status_code}: {error_code} - {description}"
            )
            raise TokenExchangeError(
                f"{provider.name} token endpoint returned {error_code}: {description}"
            )

        if not token_response.is_success():
            raise TokenExchangeError(
                f"{provider.name} token response missing required access_token"
            )

        logger.info(f"Token request to {provider.name} successful")
        return token_response

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
