"""Read-only service catalog consumed by the OAuth engine and lifecycle manager.

The catalog document describes which integrations exist, how to authorize
against their providers, and how to launch their servers. A small built-in set
of legacy providers and server definitions is always available, so a missing
or malformed document degrades to that set instead of failing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from warden.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ClientAuthMethod(str, Enum):
    """Where client credentials go on token endpoint requests."""

    BASIC = "basic"
    BODY = "body"


class RedirectFallback(str, Enum):
    """Redirect URI used when no local callback listener is running."""

    HTTPS = "https"
    CUSTOM_SCHEME = "custom_scheme"


class ProviderConfig(BaseModel):
    """Authorization parameters for one OAuth provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    auth_url: str
    token_url: str
    scopes: dict[str, list[str]] = Field(default_factory=dict)
    pkce: bool = False
    extra_params: dict[str, str] = Field(default_factory=dict)
    client_auth: ClientAuthMethod = ClientAuthMethod.BODY
    redirect_fallback: RedirectFallback = RedirectFallback.CUSTOM_SCHEME

    def scopes_for(self, service: str) -> list[str]:
        return list(self.scopes.get(service, []))

    @property
    def default_service(self) -> str:
        """First service declared for the provider, or the provider name."""
        return next(iter(self.scopes), self.name)


class AuxiliaryConfig(BaseModel):
    """An out-of-process helper (e.g. an HTTP bridge) started before the server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    ready_patterns: list[str] | None = Field(default=None, alias="readyPatterns")
    startup_timeout: float | None = Field(default=None, alias="startupTimeout")


class ServerDefinition(BaseModel):
    """Static descriptor for a managed integration server."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    description: str = ""
    requires_auth: bool = False
    auth_provider: str | None = None
    auth_service: str | None = None
    token_env_var: str | None = None
    env_mapping: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    capabilities: list[str] = Field(default_factory=list)
    auxiliary: AuxiliaryConfig | None = None
    cwd: str | None = None

    def merged(self, overrides: Mapping[str, Any]) -> ServerDefinition:
        """Return a copy with ``overrides`` applied on top. The name is kept."""
        data = self.model_dump()
        data.update(overrides)
        data["name"] = self.name
        return ServerDefinition.model_validate(data)


# Catalog document schema


class _ScopeSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default: list[str] | None = None
    required: list[str] | None = None

    def resolve(self) -> list[str]:
        return list(self.default or self.required or [])


class _OAuthSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: str
    auth_url: str = Field(alias="authUrl")
    token_url: str = Field(alias="tokenUrl")
    scopes: _ScopeSpec | list[str] = Field(default_factory=_ScopeSpec)
    pkce: bool = False
    custom_params: dict[str, str] = Field(default_factory=dict, alias="customParams")
    token_auth: ClientAuthMethod | None = Field(default=None, alias="tokenAuth")
    redirect_fallback: RedirectFallback | None = Field(
        default=None, alias="redirectFallback"
    )

    def resolved_scopes(self) -> list[str]:
        if isinstance(self.scopes, list):
            return list(self.scopes)
        return self.scopes.resolve()


class _ServerConfigSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    env_mapping: dict[str, str] = Field(default_factory=dict, alias="envMapping")
    requires_auth: bool | None = Field(default=None, alias="requiresAuth")
    token_env_var: str | None = Field(default=None, alias="tokenEnvVar")
    capabilities: list[str] = Field(default_factory=list)
    auxiliary: AuxiliaryConfig | None = None
    cwd: str | None = None


class _ServiceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    description: str = ""
    enabled: bool = True
    priority: int = 100
    oauth: _OAuthSpec | None = None
    server_config: _ServerConfigSpec | None = Field(default=None, alias="serverConfig")


class _CatalogDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    services: dict[str, _ServiceEntry] = Field(default_factory=dict)


class ServiceSummary(BaseModel):
    key: str
    name: str
    description: str
    provider: str
    priority: int


LEGACY_PROVIDERS: dict[str, ProviderConfig] = {
    "google": ProviderConfig(
        name="google",
        auth_url="https://accounts.google.com/o/oauth2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes={
            "drive": ["https://www.googleapis.com/auth/drive.readonly"],
            "calendar": ["https://www.googleapis.com/auth/calendar.readonly"],
            "gmail": ["https://www.googleapis.com/auth/gmail.readonly"],
        },
        pkce=True,
        extra_params={"access_type": "offline", "prompt": "consent"},
    ),
    "github": ProviderConfig(
        name="github",
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes={
            "repo": ["repo"],
            "user": ["user:email"],
            "public_repo": ["public_repo"],
        },
        pkce=True,
    ),
    "notion": ProviderConfig(
        name="notion",
        auth_url="https://api.notion.com/v1/oauth/authorize",
        token_url="https://api.notion.com/v1/oauth/token",
        # Notion grants capabilities configured on the integration, not scopes
        scopes={"read": [], "write": []},
        extra_params={"owner": "user"},
        client_auth=ClientAuthMethod.BASIC,
        redirect_fallback=RedirectFallback.HTTPS,
    ),
    "slack": ProviderConfig(
        name="slack",
        auth_url="https://slack.com/oauth/v2/authorize",
        token_url="https://slack.com/api/oauth.v2.access",
        scopes={
            "channels": [
                "channels:read",
                "channels:history",
                "groups:read",
                "groups:history",
                "im:read",
                "im:history",
                "mpim:read",
                "mpim:history",
            ],
            "messaging": ["chat:write"],
        },
        redirect_fallback=RedirectFallback.HTTPS,
    ),
}

LEGACY_SERVERS: dict[str, ServerDefinition] = {
    "everything": ServerDefinition(
        name="everything",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-everything"],
        description="Reference test server with multiple tools and features",
        capabilities=["echo", "add", "get_tiny_image", "print_env"],
    ),
    "filesystem": ServerDefinition(
        name="filesystem",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
        description="Secure file operations with configurable access controls",
        capabilities=["read_file", "write_file", "list_directory", "search_files"],
    ),
    "github": ServerDefinition(
        name="github",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-github"],
        description="Repository management and GitHub API integration",
        capabilities=["create_repository", "search_repositories", "create_issue"],
        requires_auth=True,
        auth_provider="github",
        auth_service="repo",
    ),
    "notion": ServerDefinition(
        name="notion",
        command="npx",
        args=["-y", "@suekou/mcp-notion-server"],
        description="Notion workspace search and page retrieval",
        capabilities=["notion_search", "notion_retrieve_page", "notion_query_database"],
        requires_auth=True,
        auth_provider="notion",
        auth_service="read",
    ),
    "slack": ServerDefinition(
        name="slack",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-slack"],
        description="Slack workspace integration",
        capabilities=["slack_list_channels", "slack_post_message"],
        requires_auth=True,
        auth_provider="slack",
        auth_service="channels",
    ),
    "google": ServerDefinition(
        name="google",
        command="uvx",
        args=["workspace-mcp", "--tools", "gmail", "drive", "calendar"],
        description="Google Workspace integration for Gmail, Drive, and Calendar",
        capabilities=["search_gmail_messages", "list_drive_files", "list_calendar_events"],
        requires_auth=True,
        auth_provider="google",
        auth_service="drive",
    ),
}


class ServiceCatalog:
    """Provider configs and server definitions built from a catalog document."""

    def __init__(
        self,
        providers: Mapping[str, ProviderConfig],
        servers: Mapping[str, ServerDefinition],
        services: list[ServiceSummary] | None = None,
    ):
        self._providers = dict(providers)
        self._servers = dict(servers)
        self._services = list(services or [])

    @classmethod
    def legacy(cls) -> ServiceCatalog:
        return cls(LEGACY_PROVIDERS, LEGACY_SERVERS)

    @classmethod
    def load(cls, path: str | Path | None) -> ServiceCatalog:
        """Load a catalog document, falling back to the legacy set on any failure."""
        if path is None:
            return cls.legacy()

        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read service catalog {path}: {e}")
            return cls.legacy()

        try:
            return cls.from_document(data)
        except ConfigurationError as e:
            logger.error(f"Malformed service catalog {path}: {e}")
            return cls.legacy()

    @classmethod
    def from_document(cls, data: Any) -> ServiceCatalog:
        """Build a catalog from a parsed document, merged over the legacy set.

        Raises:
            ConfigurationError: If the document does not match the catalog schema
        """
        try:
            document = _CatalogDocument.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid service catalog: {e}") from e

        providers: dict[str, dict[str, Any]] = {}
        servers: dict[str, ServerDefinition] = {}
        services: list[ServiceSummary] = []

        for key, entry in document.services.items():
            if not entry.enabled:
                continue

            if entry.oauth is not None:
                oauth = entry.oauth
                _merge_provider(providers, key, oauth)
                services.append(
                    ServiceSummary(
                        key=key,
                        name=entry.name or key,
                        description=entry.description,
                        provider=oauth.provider,
                        priority=entry.priority,
                    )
                )

            if entry.server_config is not None:
                server_config = entry.server_config
                requires_auth = (
                    server_config.requires_auth
                    if server_config.requires_auth is not None
                    else entry.oauth is not None
                )
                servers[key] = ServerDefinition(
                    name=key,
                    command=server_config.command,
                    args=server_config.args,
                    description=entry.description,
                    requires_auth=requires_auth,
                    auth_provider=entry.oauth.provider if entry.oauth else None,
                    auth_service=key if entry.oauth else None,
                    token_env_var=server_config.token_env_var,
                    env_mapping=server_config.env_mapping,
                    env=server_config.env,
                    capabilities=server_config.capabilities,
                    auxiliary=server_config.auxiliary,
                    cwd=server_config.cwd,
                )

        merged_providers = {
            name: ProviderConfig(**fields) for name, fields in providers.items()
        }
        for name, legacy in LEGACY_PROVIDERS.items():
            merged_providers.setdefault(name, legacy)

        merged_servers = {**LEGACY_SERVERS, **servers}
        services.sort(key=lambda summary: summary.priority)

        logger.info(
            f"Service catalog loaded: {len(merged_providers)} providers, "
            f"{len(merged_servers)} server definitions"
        )
        return cls(merged_providers, merged_servers, services)

    def provider(self, name: str) -> ProviderConfig:
        """Get a provider config.

        Raises:
            ConfigurationError: If the provider is unknown
        """
        try:
            return self._providers[name]
        except KeyError:
            raise ConfigurationError(f"Unsupported OAuth provider: {name}") from None

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    def providers(self) -> list[str]:
        return list(self._providers)

    def default_service(self, provider: str) -> str:
        return self.provider(provider).default_service

    def server_definition(self, name: str) -> ServerDefinition | None:
        return self._servers.get(name)

    def server_names(self) -> list[str]:
        return list(self._servers)

    def available_services(self) -> list[ServiceSummary]:
        """Enabled services with OAuth, sorted by priority."""
        return list(self._services)


def _merge_provider(
    providers: dict[str, dict[str, Any]], service_key: str, oauth: _OAuthSpec
) -> None:
    """Fold one catalog service into its provider's accumulated fields."""
    fields = providers.get(oauth.provider)
    if fields is None:
        legacy = LEGACY_PROVIDERS.get(oauth.provider)
        # Built-in providers keep their quirks unless the document overrides them
        if legacy is not None:
            fields = legacy.model_dump()
        else:
            fields = {
                "name": oauth.provider,
                "auth_url": oauth.auth_url,
                "token_url": oauth.token_url,
                "scopes": {},
                "pkce": False,
                "extra_params": {},
            }
        providers[oauth.provider] = fields
    fields["scopes"][service_key] = oauth.resolved_scopes()

    # Templated URLs (e.g. per-tenant hosts) never replace concrete ones
    if oauth.auth_url and "{" not in oauth.auth_url:
        fields["auth_url"] = oauth.auth_url
    if oauth.token_url and "{" not in oauth.token_url:
        fields["token_url"] = oauth.token_url

    fields["pkce"] = fields["pkce"] or oauth.pkce
    fields["extra_params"].update(oauth.custom_params)
    if oauth.token_auth is not None:
        fields["client_auth"] = oauth.token_auth
    if oauth.redirect_fallback is not None:
        fields["redirect_fallback"] = oauth.redirect_fallback
