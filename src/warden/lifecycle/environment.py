"""Maps resolved credentials onto the environment of a spawned server.

Each provider's servers expect their credentials under different variable
names. The mapping is a lookup table keyed by provider; a definition's
``token_env_var`` and catalog ``env_mapping`` take precedence over it.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass

from warden.catalog import ServerDefinition
from warden.credentials.models import StoredToken

DEFAULT_TOKEN_ENV_VAR = "OAUTH_TOKEN"


@dataclass(frozen=True)
class ProviderEnvironment:
    """Environment variable names for one provider. None means not exported."""

    access_token: str
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


PROVIDER_ENVIRONMENTS: dict[str, ProviderEnvironment] = {
    "notion": ProviderEnvironment(access_token="NOTION_API_TOKEN"),
    "github": ProviderEnvironment(access_token="GITHUB_PERSONAL_ACCESS_TOKEN"),
    "slack": ProviderEnvironment(access_token="SLACK_BOT_TOKEN"),
    "google": ProviderEnvironment(
        access_token="GOOGLE_ACCESS_TOKEN",
        refresh_token="GOOGLE_REFRESH_TOKEN",
        client_id="GOOGLE_OAUTH_CLIENT_ID",
        client_secret="GOOGLE_OAUTH_CLIENT_SECRET",
    ),
}

# Keys usable in a catalog envMapping, e.g. {"token": "MY_TOKEN"}
MAPPING_FIELDS = {
    "token": "access_token",
    "access_token": "access_token",
    "refresh_token": "refresh_token",
    "client_id": "client_id",
    "client_secret": "client_secret",
}


def provider_environment(provider: str | None) -> ProviderEnvironment:
    if provider is None:
        return ProviderEnvironment(access_token=DEFAULT_TOKEN_ENV_VAR)
    return PROVIDER_ENVIRONMENTS.get(
        provider, ProviderEnvironment(access_token=DEFAULT_TOKEN_ENV_VAR)
    )


def build_server_environment(
    definition: ServerDefinition,
    access_token: str | None = None,
    token: StoredToken | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Compose the full environment for a server process.

    Starts from ``base`` (default: ``os.environ``), applies the definition's
    static ``env``, then the credential variables.
    """
    env = dict(os.environ if base is None else base)
    env.update(definition.env)

    if access_token is None:
        return env

    names = provider_environment(definition.auth_provider)
    values = {
        "access_token": access_token,
        "refresh_token": token.refresh_token if token else None,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    targets = {
        "access_token": definition.token_env_var or names.access_token,
        "refresh_token": names.refresh_token,
        "client_id": names.client_id,
        "client_secret": names.client_secret,
    }
    for key, variable in definition.env_mapping.items():
        field_name = MAPPING_FIELDS.get(key)
        if field_name is not None:
            targets[field_name] = variable

    for field_name, variable in targets.items():
        value = values[field_name]
        if variable and value:
            env[variable] = value
    return env
