"""Wires the credential store, OAuth orchestrator, and lifecycle manager together."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from warden.catalog import ServiceCatalog
from warden.config import Settings
from warden.credentials.store import CredentialStore
from warden.lifecycle.adapter import AdapterFactory
from warden.lifecycle.manager import ServerLifecycleManager
from warden.notifications import EventBus
from warden.oauth.orchestrator import OAuthOrchestrator, UrlOpener
from warden.oauth.tokens import TokenClient

logger = logging.getLogger(__name__)


@dataclass
class Warden:
    """The three core components sharing one settings object and event bus."""

    settings: Settings
    events: EventBus
    catalog: ServiceCatalog
    store: CredentialStore
    oauth: OAuthOrchestrator
    servers: ServerLifecycleManager

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        environ: Mapping[str, str] | None = None,
        token_client: TokenClient | None = None,
        adapter_factory: AdapterFactory | None = None,
        opener: UrlOpener | None = None,
    ) -> Warden:
        """Build and initialize all components.

        Raises:
            OSError: If the config directory or master key cannot be created
        """
        settings = settings or Settings.from_env(environ)
        events = EventBus()
        catalog = ServiceCatalog.load(settings.catalog_path)

        store = CredentialStore(settings, events=events, catalog=catalog, environ=environ)
        await store.initialize()

        oauth_kwargs = {"opener": opener} if opener is not None else {}
        oauth = OAuthOrchestrator(
            settings,
            store,
            catalog,
            events=events,
            token_client=token_client,
            **oauth_kwargs,
        )
        servers = ServerLifecycleManager(
            settings,
            oauth,
            catalog=catalog,
            events=events,
            adapter_factory=adapter_factory,
            base_environment=environ,
        )

        removed = await oauth.cleanup()
        if removed:
            logger.info(f"Removed {removed} stale OAuth states at startup")

        return cls(
            settings=settings,
            events=events,
            catalog=catalog,
            store=store,
            oauth=oauth,
            servers=servers,
        )

    async def close(self) -> None:
        """Stop all servers, then release OAuth resources and flush the store."""
        await self.servers.shutdown()
        await self.oauth.close()
        await self.store.save()
