"""End-to-end OAuth authorization-code flow and proactive token refresh.

Coordinates authorization URL generation, the local callback listener, code
exchange, and refresh, persisting everything through the CredentialStore.

Each authorization attempt moves through:
NONE -> URL_GENERATED -> CALLBACK_SERVER_LISTENING -> CODE_RECEIVED ->
TOKEN_EXCHANGED | STATE_EXPIRED | EXCHANGE_FAILED
"""

from __future__ import annotations

import asyncio
import logging
import time
import webbrowser
from collections.abc import Callable, Iterable

from warden.catalog import ProviderConfig, RedirectFallback, ServiceCatalog
from warden.config import Settings
from warden.credentials.models import OAuthSessionState, StoredToken
from warden.credentials.store import CredentialStore
from warden.errors import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    ConfigurationError,
    MissingRefreshTokenError,
    OAuthError,
    OAuthStateError,
    TokenExchangeError,
    WardenError,
)
from warden.notifications import EventBus, EventKind
from warden.oauth.callback_server import CallbackServer
from warden.oauth.models import AuthorizationRequest, FlowStatus, TokenStatus
from warden.oauth.pkce import generate_pkce_parameters, generate_state
from warden.oauth.tokens import TokenClient

logger = logging.getLogger(__name__)

UrlOpener = Callable[[str], object]


class OAuthOrchestrator:
    """Runs OAuth flows for catalog providers and keeps their tokens fresh."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        catalog: ServiceCatalog,
        events: EventBus | None = None,
        token_client: TokenClient | None = None,
        opener: UrlOpener = webbrowser.open,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._store = store
        self._catalog = catalog
        self._events = events or store.events
        self._token_client = token_client or TokenClient(timeout=settings.http_timeout)
        self._opener = opener
        self._clock = clock

        self._callback_server = CallbackServer(
            handler=self._on_callback,
            host=settings.callback_host,
            preferred_ports=settings.preferred_callback_ports,
        )
        self._pending: dict[str, asyncio.Future[StoredToken]] = {}
        self._flow_status: dict[str, FlowStatus] = {}

    @property
    def catalog(self) -> ServiceCatalog:
        return self._catalog

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def callback_url(self) -> str | None:
        return self._callback_server.callback_url

    # Authorization URL

    async def generate_authorization_url(
        self,
        provider: str,
        service: str,
        scopes: Iterable[str] | None = None,
        redirect_uri: str | None = None,
    ) -> str:
        """Build the authorization URL and record the attempt's session state.

        No network I/O is performed. The state is persisted so a callback can
        be matched even if this process is recycled before it arrives.

        Raises:
            ConfigurationError: If the provider is unknown or has no client id
        """
        request = await self._prepare_authorization(provider, service, scopes, redirect_uri)
        return request.build_authorization_url()

    async def _prepare_authorization(
        self,
        provider: str,
        service: str,
        scopes: Iterable[str] | None,
        redirect_uri: str | None,
    ) -> AuthorizationRequest:
        config = self._catalog.provider(provider)
        client_id = self._store.client_id(provider)
        if not client_id:
            raise ConfigurationError(
                f"No OAuth client id configured for {provider}. "
                f"Set {provider.upper()}_CLIENT_ID or store {provider}_client_id."
            )

        resolved_redirect = redirect_uri or self._resolve_redirect_uri(config)
        state = generate_state()
        pkce = generate_pkce_parameters() if config.pkce else None
        resolved_scopes = (
            tuple(scopes) if scopes is not None else tuple(config.scopes_for(service))
        )

        self._store.put_state(
            state,
            OAuthSessionState(
                provider=provider,
                service=service,
                redirect_uri=resolved_redirect,
                timestamp=self._clock(),
                code_verifier=pkce.code_verifier if pkce else None,
            ),
        )
        await self._store.save()

        listening = resolved_redirect == self._callback_server.callback_url
        self._flow_status[state] = (
            FlowStatus.CALLBACK_SERVER_LISTENING if listening else FlowStatus.URL_GENERATED
        )

        logger.info(
            f"Generated authorization URL for {provider}:{service} "
            f"(redirect {resolved_redirect}, pkce={config.pkce})"
        )
        return AuthorizationRequest(
            authorization_endpoint=config.auth_url,
            client_id=client_id,
            redirect_uri=resolved_redirect,
            state=state,
            scopes=resolved_scopes,
            code_challenge=pkce.code_challenge if pkce else None,
            code_challenge_method=pkce.code_challenge_method if pkce else None,
            extra_params=dict(config.extra_params),
        )

    def _resolve_redirect_uri(self, config: ProviderConfig) -> str:
        listener_url = self._callback_server.callback_url
        if listener_url is not None:
            return listener_url
        if config.redirect_fallback is RedirectFallback.HTTPS:
            return self._settings.https_redirect_uri
        return self._settings.custom_scheme_redirect_uri

    # Callback listener

    async def start_callback_server(self) -> str:
        """Start (or reuse) the local callback listener and return its URL.

        Raises:
            CallbackServerError: If no port can be bound
        """
        return await self._callback_server.start()

    async def stop_callback_server(self) -> None:
        await self._callback_server.stop()

    async def _on_callback(
        self, code: str | None, state: str | None, error: str | None
    ) -> StoredToken:
        return await self.handle_callback(code or "", state or "", error=error)

    # Callback handling

    async def handle_callback(
        self,
        code: str,
        state: str,
        error: str | None = None,
        provider: str | None = None,
    ) -> StoredToken:
        """Complete an authorization attempt from its redirect parameters.

        If ``state`` is unknown, the most recent state created within
        ``stale_state_window`` is used instead (restricted to ``provider``
        when given). This recovers callbacks whose original state was lost,
        at the cost of weaker CSRF protection.

        Raises:
            AuthorizationDeniedError: If the provider returned an error
            OAuthStateError: If no usable state exists or it has expired
            ConfigurationError: If the provider has no client credentials
            TokenExchangeError: If the code exchange fails
        """
        if error:
            denied = self._store.pop_state(state)
            if denied is not None:
                await self._store.save()
            raise self._record_failure(
                state,
                FlowStatus.EXCHANGE_FAILED,
                AuthorizationDeniedError(f"Authorization denied by provider: {error}"),
                provider=denied.provider if denied else provider,
            )

        session = self._store.get_state(state)
        if session is None:
            fallback = self._find_recent_state(provider)
            if fallback is None:
                self._events.publish(
                    EventKind.OAUTH_FAILED, provider=provider, error="invalid state"
                )
                raise OAuthStateError("Invalid or expired OAuth state")
            logger.warning(
                f"OAuth state {state[:8]} not found, falling back to recent "
                f"{fallback[1].provider} state {fallback[0][:8]}"
            )
            state, session = fallback

        if session.age(self._clock()) > self._settings.state_ttl:
            self._store.pop_state(state)
            await self._store.save()
            raise self._record_failure(
                state,
                FlowStatus.STATE_EXPIRED,
                OAuthStateError(f"OAuth state for {session.provider} has expired"),
                provider=session.provider,
            )

        self._flow_status[state] = FlowStatus.CODE_RECEIVED
        try:
            config = self._catalog.provider(session.provider)
            client_id, client_secret = self._client_credentials(config)
        except ConfigurationError as e:
            self._store.pop_state(state)
            await self._store.save()
            self._record_failure(
                state, FlowStatus.EXCHANGE_FAILED, e, provider=session.provider
            )
            raise

        try:
            response = await self._token_client.exchange_code(
                config,
                code=code,
                redirect_uri=session.redirect_uri,
                client_id=client_id,
                client_secret=client_secret,
                code_verifier=session.code_verifier,
            )
        except TokenExchangeError as e:
            self._store.pop_state(state)
            await self._store.save()
            self._record_failure(
                state, FlowStatus.EXCHANGE_FAILED, e, provider=session.provider
            )
            raise

        token = response.to_stored_token(now=self._clock())
        self._store.pop_state(state)
        self._store.save_token(session.provider, session.service, token)
        await self._store.save()

        self._flow_status[state] = FlowStatus.TOKEN_EXCHANGED
        self._events.publish(
            EventKind.OAUTH_SUCCESS, provider=session.provider, service=session.service
        )
        logger.info(f"OAuth flow completed for {session.provider}:{session.service}")

        future = self._pending.get(state)
        if future is not None and not future.done():
            future.set_result(token)
        return token

    def _find_recent_state(
        self, provider: str | None
    ) -> tuple[str, OAuthSessionState] | None:
        now = self._clock()
        candidates = [
            (state, session)
            for state, session in self._store.states().items()
            if session.age(now) < self._settings.stale_state_window
            and (provider is None or session.provider == provider)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item[1].timestamp)

    def _record_failure(
        self,
        state: str,
        status: FlowStatus,
        error: WardenError,
        provider: str | None = None,
    ) -> WardenError:
        """Record a terminal failure and wake any waiter. Returns ``error``."""
        self._flow_status[state] = status
        self._events.publish(EventKind.OAUTH_FAILED, provider=provider, error=str(error))
        logger.warning(f"OAuth flow failed: {error}")

        future = self._pending.get(state)
        if future is not None and not future.done():
            future.set_exception(error)
        return error

    def _client_credentials(self, config: ProviderConfig) -> tuple[str, str | None]:
        client_id = self._store.client_id(config.name)
        client_secret = self._store.client_secret(config.name)
        if not client_id:
            raise ConfigurationError(f"No OAuth client id configured for {config.name}")
        # PKCE providers may be registered as public clients without a secret
        if not client_secret and not config.pkce:
            raise ConfigurationError(
                f"No OAuth client secret configured for {config.name}"
            )
        return client_id, client_secret

    # End-to-end flow

    async def start_flow(self, provider: str, service: str | None = None) -> StoredToken:
        """Run a full authorization flow through the local listener.

        Opens the authorization URL with the configured opener and waits for
        the callback to resolve the attempt, up to ``flow_timeout`` seconds.

        Raises:
            ConfigurationError: If the provider is unknown or lacks client credentials
            AuthorizationTimeoutError: If no callback arrives in time
            AuthorizationCancelledError: If the attempt is cancelled
            OAuthError: If the callback reports a failure
        """
        config = self._catalog.provider(provider)
        self._client_credentials(config)
        service = service or config.default_service

        await self.start_callback_server()
        try:
            request = await self._prepare_authorization(provider, service, None, None)
        except (Exception, asyncio.CancelledError):
            if not self._pending:
                await self.stop_callback_server()
            raise
        state = request.state
        future: asyncio.Future[StoredToken] = asyncio.get_running_loop().create_future()
        self._pending[state] = future

        try:
            url = request.build_authorization_url()
            if not await asyncio.to_thread(self._opener, url):
                logger.warning(f"Could not open a browser, visit this URL to continue: {url}")

            try:
                return await asyncio.wait_for(future, self._settings.flow_timeout)
            except asyncio.TimeoutError:
                self._store.pop_state(state)
                await self._store.save()
                self._flow_status[state] = FlowStatus.STATE_EXPIRED
                self._events.publish(
                    EventKind.OAUTH_FAILED, provider=provider, error="timeout"
                )
                raise AuthorizationTimeoutError(
                    f"Authorization for {provider} was not completed within "
                    f"{self._settings.flow_timeout:.0f} seconds"
                ) from None
        finally:
            self._pending.pop(state, None)
            if not self._pending:
                await self.stop_callback_server()

    async def cancel_flow(self, state: str) -> bool:
        """Cancel an in-flight attempt by deleting its session state.

        Returns:
            True if there was anything to cancel
        """
        session = self._store.pop_state(state)
        if session is not None:
            await self._store.save()

        future = self._pending.get(state)
        if future is not None and not future.done():
            future.set_exception(
                AuthorizationCancelledError("Authorization was cancelled")
            )

        cancelled = session is not None or future is not None
        if cancelled:
            self._flow_status[state] = FlowStatus.STATE_EXPIRED
            logger.info(f"Cancelled OAuth flow {state[:8]}")
        return cancelled

    def flow_status(self, state: str) -> FlowStatus:
        return self._flow_status.get(state, FlowStatus.NONE)

    # Tokens

    async def refresh_token(self, provider: str, service: str) -> StoredToken:
        """Refresh a stored token, keeping the old refresh token if none is returned.

        Raises:
            MissingRefreshTokenError: If no refresh token is stored
            ConfigurationError: If the provider has no client credentials
            TokenExchangeError: If the provider rejects the refresh
        """
        current = self._store.get_token(provider, service)
        if current is None or not current.can_refresh():
            raise MissingRefreshTokenError(
                f"No refresh token stored for {provider}:{service}"
            )

        config = self._catalog.provider(provider)
        client_id, client_secret = self._client_credentials(config)

        response = await self._token_client.refresh(
            config,
            refresh_token=current.refresh_token,
            client_id=client_id,
            client_secret=client_secret,
        )

        token = response.to_stored_token(previous=current, now=self._clock())
        self._store.save_token(provider, service, token)
        await self._store.save()

        self._events.publish(EventKind.TOKEN_REFRESHED, provider=provider, service=service)
        logger.info(f"Refreshed access token for {provider}:{service}")
        return token

    async def get_valid_access_token(self, provider: str, service: str) -> str | None:
        """Return a usable access token, refreshing it if it expires soon.

        Returns None when no token exists or the refresh fails.
        """
        token = self._store.get_token(provider, service)
        if token is None:
            return None

        if token.access_token and not token.expires_within(
            self._settings.refresh_margin, self._clock()
        ):
            return token.access_token

        logger.debug(f"Access token for {provider}:{service} needs refreshing")
        try:
            token = await self.refresh_token(provider, service)
        except (OAuthError, ConfigurationError) as e:
            logger.warning(f"Token refresh failed for {provider}:{service}: {e}")
            return None
        return token.access_token

    async def get_valid_token(self, provider: str) -> str | None:
        """Valid access token for the provider's default catalog service."""
        if not self._catalog.has_provider(provider):
            logger.warning(f"Unknown OAuth provider {provider}")
            return None
        service = self._catalog.default_service(provider)
        return await self.get_valid_access_token(provider, service)

    def get_stored_token(self, provider: str, service: str) -> StoredToken | None:
        return self._store.get_token(provider, service)

    def get_client_credentials(self, provider: str) -> tuple[str | None, str | None]:
        """Stored (client id, client secret) for a provider; either may be None."""
        return self._store.client_id(provider), self._store.client_secret(provider)

    async def revoke_token(self, provider: str, service: str) -> bool:
        """Forget a stored token. Returns False if none was stored."""
        if not self._store.remove_token(provider, service):
            return False
        await self._store.save()
        self._events.publish(EventKind.TOKEN_REVOKED, provider=provider, service=service)
        logger.info(f"Revoked token for {provider}:{service}")
        return True

    # Status and maintenance

    def authentication_status(self) -> list[TokenStatus]:
        now = self._clock()
        statuses = []
        for provider in self._catalog.providers():
            for service in self._catalog.provider(provider).scopes:
                token = self._store.get_token(provider, service)
                if token is None:
                    statuses.append(
                        TokenStatus(provider=provider, service=service, authenticated=False)
                    )
                    continue
                statuses.append(
                    TokenStatus(
                        provider=provider,
                        service=service,
                        authenticated=True,
                        expires_at=token.expires_at,
                        expired=token.is_expired(now),
                        can_refresh=token.can_refresh(),
                    )
                )
        return statuses

    def validate_configuration(self) -> list[str]:
        """Describe problems that would prevent authenticated servers from starting."""
        issues = []
        providers: set[str] = set()
        for name in self._catalog.server_names():
            definition = self._catalog.server_definition(name)
            if definition and definition.requires_auth and definition.auth_provider:
                providers.add(definition.auth_provider)

        for provider in sorted(providers):
            if not self._catalog.has_provider(provider):
                issues.append(f"{provider}: provider is not defined in the service catalog")
                continue
            if not self._store.client_id(provider):
                issues.append(f"{provider}: missing client id")
            if not self._store.client_secret(provider) and not self._catalog.provider(
                provider
            ).pkce:
                issues.append(f"{provider}: missing client secret")

        for status in self.authentication_status():
            if status.expired and not status.can_refresh:
                issues.append(
                    f"{status.provider}:{status.service}: token expired and cannot be refreshed"
                )
        return issues

    async def cleanup(self) -> int:
        """Garbage-collect old OAuth states. Returns the number removed."""
        removed = self._store.cleanup_expired_states()
        if removed:
            await self._store.save()
        return removed

    async def close(self) -> None:
        for state, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(
                    AuthorizationCancelledError("OAuth orchestrator is shutting down")
                )
        await self.stop_callback_server()
        await self._token_client.close()
