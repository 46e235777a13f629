"""Runtime settings shared by the credential store, OAuth engine, and lifecycle manager.

Settings are built once at startup and passed into each component instead of
living in module-level registries.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError

from warden.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "WARDEN_"


class Settings(BaseModel):
    """Paths, ports, and timeouts used across warden.

    All durations are in seconds.
    """

    config_dir: Path = Field(default_factory=lambda: Path.home() / ".warden")
    catalog_path: Path | None = None

    servers_file: str = "servers.json"
    credentials_file: str = "credentials.json"
    oauth_states_file: str = "oauth-states.json"
    key_file: str = ".key"

    callback_host: str = "127.0.0.1"
    preferred_callback_ports: list[int] = Field(
        default_factory=lambda: [3000, 3001, 3002, 3003, 3004]
    )
    https_redirect_uri: str = "https://warden.invalid/api/oauth/callback"
    custom_scheme_redirect_uri: str = "warden://oauth/callback"

    state_ttl: float = 30 * 60
    state_gc_age: float = 60 * 60
    stale_state_window: float = 60 * 60
    refresh_margin: float = 5 * 60
    flow_timeout: float = 5 * 60
    http_timeout: float = 30.0

    auxiliary_startup_timeout: float = 10.0
    stop_grace_period: float = 3.0

    @property
    def servers_path(self) -> Path:
        return self.config_dir / self.servers_file

    @property
    def credentials_path(self) -> Path:
        return self.config_dir / self.credentials_file

    @property
    def oauth_states_path(self) -> Path:
        return self.config_dir / self.oauth_states_file

    @property
    def key_path(self) -> Path:
        return self.config_dir / self.key_file

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: str | os.PathLike[str] | None = None,
    ) -> Settings:
        """Build settings from ``WARDEN_*`` variables.

        Values in ``environ`` (default: ``os.environ``) win over values read
        from ``env_file``. Unknown variables are ignored.

        Raises:
            ConfigurationError: If a variable cannot be coerced to its field type
        """
        merged: dict[str, str | None] = {}
        if env_file is not None:
            merged.update(dotenv_values(env_file))
        merged.update(os.environ if environ is None else environ)

        overrides: dict[str, object] = {}
        for key, value in merged.items():
            if not key.startswith(ENV_PREFIX) or value is None:
                continue
            field_name = key[len(ENV_PREFIX) :].lower()
            if field_name not in cls.model_fields:
                continue
            if field_name == "preferred_callback_ports":
                overrides[field_name] = [
                    port.strip() for port in value.split(",") if port.strip()
                ]
            else:
                overrides[field_name] = value

        try:
            settings = cls(**overrides)
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid warden settings: {e}") from e

        if overrides:
            logger.debug(f"Settings overridden from environment: {sorted(overrides)}")
        return settings
