"""Lifecycle management for locally spawned integration servers.

Each registered server runs through STOPPED -> STARTING -> RUNNING ->
STOPPING -> STOPPED, with ERROR reachable on failure. Starts are gated on a
valid OAuth token when the server requires authentication. start() and stop()
for the same server are serialized by a per-server lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from warden.catalog import ServerDefinition, ServiceCatalog
from warden.config import Settings
from warden.errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    ServerRegistrationError,
    WardenError,
)
from warden.lifecycle.adapter import (
    AdapterFactory,
    IntegrationAdapter,
    stdio_adapter_factory,
)
from warden.lifecycle.auxiliary import AuxiliaryProcess
from warden.lifecycle.environment import build_server_environment
from warden.lifecycle.models import ServerState, ServerStatus, ServerStatusSnapshot
from warden.notifications import EventBus, EventKind
from warden.oauth.orchestrator import OAuthOrchestrator

logger = logging.getLogger(__name__)


class ServerLifecycleManager:
    """Starts, stops, and reports on registered integration servers."""

    def __init__(
        self,
        settings: Settings,
        oauth: OAuthOrchestrator,
        catalog: ServiceCatalog | None = None,
        events: EventBus | None = None,
        adapter_factory: AdapterFactory | None = None,
        base_environment: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._oauth = oauth
        self._catalog = catalog or oauth.catalog
        self._events = events or oauth.events
        self._adapter_factory = adapter_factory or stdio_adapter_factory(
            request_timeout=settings.http_timeout,
            grace_period=settings.stop_grace_period,
        )
        self._base_environment = base_environment
        self._clock = clock

        self._servers: dict[str, ServerState] = {}
        self._overrides: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._adapters: dict[str, IntegrationAdapter] = {}
        self._auxiliary: dict[str, AuxiliaryProcess] = {}

    # Registration

    def register(
        self, name: str, overrides: Mapping[str, Any] | None = None
    ) -> ServerStatusSnapshot:
        """Register a server, merging ``overrides`` onto its catalog definition.

        A server missing from the catalog can still be registered when the
        overrides provide at least a ``command``.

        Raises:
            ServerRegistrationError: If the name is already registered or
                cannot be resolved to a definition
        """
        if name in self._servers:
            raise ServerRegistrationError(f"Server '{name}' is already registered")

        overrides = dict(overrides or {})
        definition = self._resolve_definition(name, overrides)
        if definition is None:
            raise ServerRegistrationError(
                f"No definition for server '{name}' and no command override given"
            )

        self._servers[name] = ServerState(definition=definition)
        self._overrides[name] = overrides
        self._locks[name] = asyncio.Lock()

        self._events.publish(EventKind.SERVER_REGISTERED, name=name)
        logger.info(f"Registered server '{name}': {definition.command} {definition.args}")
        return self._servers[name].snapshot(self._clock())

    def _resolve_definition(
        self, name: str, overrides: Mapping[str, Any]
    ) -> ServerDefinition | None:
        base = self._catalog.server_definition(name)
        try:
            if base is not None:
                return base.merged(overrides) if overrides else base
            if "command" in overrides:
                return ServerDefinition.model_validate({**overrides, "name": name})
        except ValueError as e:
            raise ServerRegistrationError(
                f"Invalid configuration for server '{name}': {e}"
            ) from e
        return None

    async def unregister(self, name: str) -> bool:
        """Stop (if needed) and forget a server. Returns False if not registered."""
        state = self._servers.get(name)
        if state is None:
            return False

        if state.status is not ServerStatus.STOPPED:
            await self.stop(name)

        del self._servers[name]
        self._overrides.pop(name, None)
        self._locks.pop(name, None)
        self._events.publish(EventKind.SERVER_UNREGISTERED, name=name)
        logger.info(f"Unregistered server '{name}'")
        return True

    def reload_catalog(self, catalog: ServiceCatalog) -> None:
        """Swap in a new catalog and re-resolve definitions of idle servers.

        Running or transitioning servers keep their current definition until
        they are stopped and the catalog is reloaded again.
        """
        self._catalog = catalog
        for name, state in self._servers.items():
            if state.status not in (ServerStatus.STOPPED, ServerStatus.ERROR):
                logger.debug(f"Keeping current definition for active server '{name}'")
                continue
            try:
                definition = self._resolve_definition(name, self._overrides.get(name, {}))
            except ServerRegistrationError as e:
                logger.warning(f"Keeping previous definition for '{name}': {e}")
                continue
            if definition is None:
                logger.warning(f"Server '{name}' is no longer in the catalog")
                continue
            state.definition = definition

        logger.info(f"Service catalog reloaded for {len(self._servers)} servers")

    # Transitions

    async def start(self, name: str) -> ServerStatusSnapshot:
        """Start a registered server.

        Authentication and spawn failures leave the server in ERROR with
        ``last_error`` set; they are reported through events, not raised.

        Raises:
            ServerRegistrationError: If the server is not registered
        """
        state = self._require(name)

        async with self._locks[name]:
            if state.status in (ServerStatus.RUNNING, ServerStatus.STARTING):
                logger.warning(f"Server '{name}' is already {state.status.value}")
                return state.snapshot(self._clock())

            state.status = ServerStatus.STARTING
            state.last_error = None
            self._events.publish(EventKind.SERVER_STARTING, name=name)
            logger.info(f"Starting server '{name}'")

            try:
                await self._start_server(state)
            except (WardenError, OSError) as e:
                await self._teardown(name)
                self._fail(state, e)
                return state.snapshot(self._clock())
            except Exception as e:
                await self._teardown(name)
                self._fail(state, e)
                raise

            state.status = ServerStatus.RUNNING
            state.started_at = self._clock()
            self._events.publish(
                EventKind.SERVER_STARTED,
                name=name,
                tools=len(state.tools),
                resources=len(state.resources),
                prompts=len(state.prompts),
            )
            logger.info(
                f"Server '{name}' is running ({len(state.tools)} tools, "
                f"{len(state.resources)} resources, {len(state.prompts)} prompts)"
            )
            return state.snapshot(self._clock())

    async def _start_server(self, state: ServerState) -> None:
        definition = state.definition
        env = await self._prepare_environment(definition)

        if definition.auxiliary is not None:
            auxiliary = AuxiliaryProcess(
                definition.name,
                definition.auxiliary,
                startup_timeout=self._settings.auxiliary_startup_timeout,
                grace_period=self._settings.stop_grace_period,
            )
            self._auxiliary[definition.name] = auxiliary
            await auxiliary.start(env, cwd=definition.cwd)

        adapter = self._adapter_factory(definition)
        self._adapters[definition.name] = adapter
        await adapter.connect(env)

        state.tools = await adapter.list_tools()
        state.resources = await adapter.list_resources()
        state.prompts = await adapter.list_prompts()

    async def _prepare_environment(self, definition: ServerDefinition) -> dict[str, str]:
        if not definition.requires_auth:
            return build_server_environment(definition, base=self._base_environment)

        provider = definition.auth_provider
        if not provider:
            raise ConfigurationError(
                f"Server '{definition.name}' requires auth but has no auth provider"
            )

        service = definition.auth_service or self._catalog.default_service(provider)
        access_token = await self._oauth.get_valid_access_token(provider, service)
        if access_token is None:
            raise AuthenticationRequiredError(
                f"Server '{definition.name}' requires {provider} authentication"
            )

        client_id, client_secret = self._oauth.get_client_credentials(provider)
        return build_server_environment(
            definition,
            access_token=access_token,
            token=self._oauth.get_stored_token(provider, service),
            client_id=client_id,
            client_secret=client_secret,
            base=self._base_environment,
        )

    async def stop(self, name: str) -> ServerStatusSnapshot:
        """Stop a server. Waits for an in-flight start to finish first.

        Raises:
            ServerRegistrationError: If the server is not registered
            Exception: Unexpected teardown errors, after the server is marked ERROR
        """
        state = self._require(name)

        async with self._locks[name]:
            if state.status in (ServerStatus.STOPPED, ServerStatus.STOPPING):
                logger.warning(f"Server '{name}' is already {state.status.value}")
                return state.snapshot(self._clock())

            state.status = ServerStatus.STOPPING
            self._events.publish(EventKind.SERVER_STOPPING, name=name)
            logger.info(f"Stopping server '{name}'")

            try:
                await self._teardown(name, raise_errors=True)
            except (WardenError, OSError) as e:
                self._fail(state, e)
                return state.snapshot(self._clock())
            except Exception as e:
                self._fail(state, e)
                raise

            state.status = ServerStatus.STOPPED
            state.started_at = None
            state.clear_capabilities()
            self._events.publish(EventKind.SERVER_STOPPED, name=name)
            logger.info(f"Server '{name}' stopped")
            return state.snapshot(self._clock())

    async def _teardown(self, name: str, raise_errors: bool = False) -> None:
        """Disconnect the adapter, then stop any auxiliary process."""
        adapter = self._adapters.pop(name, None)
        auxiliary = self._auxiliary.pop(name, None)

        try:
            if adapter is not None:
                await adapter.disconnect()
        except (WardenError, OSError) as e:
            if raise_errors:
                raise
            logger.warning(f"Error disconnecting server '{name}': {e}")
        finally:
            if auxiliary is not None:
                await auxiliary.stop()

    def _fail(self, state: ServerState, error: BaseException) -> None:
        state.status = ServerStatus.ERROR
        state.last_error = str(error)
        state.started_at = None
        state.clear_capabilities()
        self._events.publish(EventKind.SERVER_ERROR, name=state.name, error=str(error))
        logger.error(f"Server '{state.name}' failed: {error}")

    async def shutdown(self) -> None:
        """Stop every running server. One failure does not block the others."""
        running = self.get_active_servers()
        if running:
            logger.info(f"Shutting down {len(running)} servers")

        for name in running:
            try:
                await self.stop(name)
            except Exception as e:
                logger.error(f"Failed to stop server '{name}' during shutdown: {e}")

    # Queries

    def _require(self, name: str) -> ServerState:
        try:
            return self._servers[name]
        except KeyError:
            raise ServerRegistrationError(f"Server '{name}' is not registered") from None

    def get_status(self, name: str) -> ServerStatusSnapshot | None:
        state = self._servers.get(name)
        return state.snapshot(self._clock()) if state else None

    def get_all_statuses(self) -> dict[str, ServerStatusSnapshot]:
        now = self._clock()
        return {name: state.snapshot(now) for name, state in self._servers.items()}

    def get_active_servers(self) -> list[str]:
        return [
            name
            for name, state in self._servers.items()
            if state.status is ServerStatus.RUNNING
        ]

    def get_capabilities(self, name: str) -> dict[str, list[dict[str, Any]]]:
        state = self._require(name)
        return {
            "tools": list(state.tools),
            "resources": list(state.resources),
            "prompts": list(state.prompts),
        }
