from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from warden.catalog import ServiceCatalog
from warden.config import Settings
from warden.credentials.store import CredentialStore
from warden.notifications import Event, EventBus
from warden.oauth.orchestrator import OAuthOrchestrator
from warden.oauth.tokens import TokenClient

T0 = 1_700_000_000.0

ACME_CATALOG = {
    "services": {
        "read": {
            "name": "Acme Read",
            "description": "Read-only Acme workspace access",
            "priority": 10,
            "oauth": {
                "provider": "acme",
                "authUrl": "https://auth.acme.test/oauth/authorize",
                "tokenUrl": "https://auth.acme.test/oauth/token",
                "scopes": {"default": ["read", "profile"]},
            },
        },
        "acme-server": {
            "name": "Acme Server",
            "description": "Acme integration server",
            "oauth": {
                "provider": "acme",
                "authUrl": "https://auth.acme.test/oauth/authorize",
                "tokenUrl": "https://auth.acme.test/oauth/token",
                "scopes": ["read", "write"],
            },
            "serverConfig": {
                "command": "acme-mcp",
                "args": ["--stdio"],
                "envMapping": {"token": "ACME_TOKEN"},
            },
        },
    }
}


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def token_http_response(status_code: int = 200, body: Any = None) -> MagicMock:
    """Mock httpx.Response carrying a JSON token endpoint body."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    return response


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # No preferred ports: tests that start the listener get an ephemeral port
    return Settings(config_dir=tmp_path / "warden", preferred_callback_ports=[])


@pytest.fixture
def catalog() -> ServiceCatalog:
    return ServiceCatalog.from_document(ACME_CATALOG)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def received(events) -> list[Event]:
    """Every event published on the shared bus, in order."""
    collected: list[Event] = []
    events.subscribe(collected.append)
    return collected


@pytest.fixture
async def store(settings, events, catalog, clock) -> CredentialStore:
    credential_store = CredentialStore(
        settings, events=events, catalog=catalog, environ={}, clock=clock
    )
    await credential_store.initialize()
    return credential_store


@pytest.fixture
def http_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def orchestrator(settings, store, catalog, events, http_client, clock):
    opener = MagicMock(return_value=True)
    oauth = OAuthOrchestrator(
        settings,
        store,
        catalog,
        events=events,
        token_client=TokenClient(http_client=http_client),
        opener=opener,
        clock=clock,
    )
    yield oauth
    await oauth.close()


@pytest.fixture
def make_token_response():
    return token_http_response
