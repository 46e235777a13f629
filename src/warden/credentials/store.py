"""Encrypted credential storage and OAuth session-state bookkeeping.

The store is the only component that touches durable storage. It keeps three
JSON documents in the config directory:

- ``servers.json``: server name to arbitrary configuration, stored verbatim
- ``credentials.json``: credential key to ``iv:cipher`` encrypted value
- ``oauth-states.json``: state token to OAuth session state

Mutations only change the in-memory maps. ``save()`` is the single point where
the documents are flushed, so callers can batch several mutations into one
write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import tempfile
import time
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from warden.catalog import ServiceCatalog
from warden.config import Settings
from warden.credentials.cipher import CredentialCipher
from warden.credentials.models import (
    OAuthSessionState,
    StoredToken,
    client_id_key,
    client_secret_key,
    token_key,
)
from warden.errors import DecryptionError
from warden.notifications import EventBus, EventKind

logger = logging.getLogger(__name__)


def env_prefix(provider: str) -> str:
    """Environment variable prefix for a provider, e.g. ``google-drive`` -> ``GOOGLE_DRIVE``."""
    return provider.upper().replace("-", "_")


class CredentialStore:
    """Durable, encrypted key-value storage for secrets and OAuth states."""

    def __init__(
        self,
        settings: Settings,
        events: EventBus | None = None,
        catalog: ServiceCatalog | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._events = events or EventBus()
        self._catalog = catalog or ServiceCatalog.legacy()
        self._environ = environ
        self._clock = clock

        self._cipher: CredentialCipher | None = None
        self._servers: dict[str, dict[str, Any]] = {}
        self._credentials: dict[str, str] = {}
        self._states: dict[str, OAuthSessionState] = {}

        self._save_lock = asyncio.Lock()
        self._revision = 0
        self._saved_revision = -1
        self._initialized = False

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Prepare the config directory, master key, and in-memory documents.

        Directory and key file failures are fatal. Unreadable documents are
        replaced with empty ones.

        Raises:
            OSError: If the config directory or master key cannot be created
        """
        config_dir = self._settings.config_dir
        config_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        master_key = self._load_or_create_master_key()
        self._cipher = await asyncio.to_thread(
            CredentialCipher.from_master_key, master_key
        )

        self._load_documents()
        self._initialized = True

        discovered = self._bootstrap_environment_credentials()
        if discovered:
            await self.save()
            logger.info(f"Stored {discovered} credentials from environment")

        logger.info(
            f"Credential store initialized at {config_dir} "
            f"({len(self._credentials)} credentials, {len(self._states)} OAuth states)"
        )

    def _load_or_create_master_key(self) -> str:
        key_path = self._settings.key_path
        try:
            master_key = key_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            master_key = ""

        if master_key:
            return master_key

        master_key = secrets.token_hex(32)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as key_file:
            key_file.write(master_key)
        os.chmod(key_path, 0o600)

        logger.info(f"Created new master key at {key_path}")
        return master_key

    def _load_documents(self) -> None:
        servers = _read_json_document(self._settings.servers_path)
        self._servers = {
            name: config for name, config in servers.items() if isinstance(config, dict)
        }

        self._credentials = {}
        for key, encrypted in _read_json_document(
            self._settings.credentials_path
        ).items():
            if not isinstance(encrypted, str):
                continue
            value = self.decrypt(encrypted)
            if value:
                self._credentials[key] = value
            else:
                logger.warning(f"Credential {key} is unreadable and needs to be re-set")

        self._states = {}
        for state, data in _read_json_document(self._settings.oauth_states_path).items():
            try:
                self._states[state] = OAuthSessionState.model_validate(data)
            except ValidationError:
                logger.warning(f"Dropping malformed OAuth state {state[:8]}")

    def _bootstrap_environment_credentials(self) -> int:
        environ = os.environ if self._environ is None else self._environ
        discovered = 0

        for provider in self._catalog.providers():
            prefix = env_prefix(provider)
            pairs = (
                (client_id_key(provider), environ.get(f"{prefix}_CLIENT_ID")),
                (client_secret_key(provider), environ.get(f"{prefix}_CLIENT_SECRET")),
            )
            for key, value in pairs:
                if not value or not value.strip():
                    continue
                value = value.strip()
                if self._credentials.get(key) != value:
                    self.set(key, value)
                    discovered += 1

        if not discovered:
            logger.debug("No new OAuth client credentials found in environment")
        return discovered

    # Encryption

    def encrypt(self, plaintext: str) -> str:
        return self._require_cipher().encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored value.

        Returns an empty string instead of raising when the value is in the
        legacy format or cannot be decrypted. Callers treat that as "absent".
        """
        try:
            return self._require_cipher().decrypt(ciphertext)
        except DecryptionError as e:
            logger.warning(f"Failed to decrypt credential, it will be regenerated: {e}")
            return ""

    def _require_cipher(self) -> CredentialCipher:
        if self._cipher is None:
            raise RuntimeError("CredentialStore.initialize() has not been called")
        return self._cipher

    # Credentials

    def get(self, key: str) -> str | None:
        return self._credentials.get(key)

    def set(self, key: str, value: str) -> None:
        self._credentials[key] = value
        self._touch()
        self._events.publish(EventKind.CREDENTIAL_UPDATED, key=key)

    def remove(self, key: str) -> bool:
        if key not in self._credentials:
            return False
        del self._credentials[key]
        self._touch()
        self._events.publish(EventKind.CREDENTIAL_REMOVED, key=key)
        return True

    def keys(self) -> list[str]:
        return list(self._credentials)

    def client_id(self, provider: str) -> str | None:
        return self.get(client_id_key(provider))

    def client_secret(self, provider: str) -> str | None:
        return self.get(client_secret_key(provider))

    def has_client_credentials(self, provider: str) -> bool:
        return bool(self.client_id(provider) and self.client_secret(provider))

    def get_token(self, provider: str, service: str) -> StoredToken | None:
        raw = self.get(token_key(provider, service))
        if not raw:
            return None
        try:
            return StoredToken.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Stored token for {provider}:{service} is unreadable: {e}")
            return None

    def save_token(self, provider: str, service: str, token: StoredToken) -> None:
        self.set(token_key(provider, service), token.model_dump_json())

    def remove_token(self, provider: str, service: str) -> bool:
        return self.remove(token_key(provider, service))

    # OAuth session states

    def put_state(self, state: str, session: OAuthSessionState) -> None:
        self._states[state] = session
        self._touch()

    def get_state(self, state: str) -> OAuthSessionState | None:
        return self._states.get(state)

    def pop_state(self, state: str) -> OAuthSessionState | None:
        session = self._states.pop(state, None)
        if session is not None:
            self._touch()
        return session

    def states(self) -> dict[str, OAuthSessionState]:
        return dict(self._states)

    def cleanup_expired_states(self, max_age: float | None = None) -> int:
        """Drop OAuth states older than ``max_age`` (default: settings.state_gc_age).

        Returns:
            Number of states removed
        """
        max_age = self._settings.state_gc_age if max_age is None else max_age
        now = self._clock()
        expired = [
            state for state, session in self._states.items() if session.age(now) > max_age
        ]
        for state in expired:
            del self._states[state]

        if expired:
            self._touch()
            logger.info(f"Cleaned up {len(expired)} expired OAuth states")
        return len(expired)

    # Server definitions

    def add_server(self, name: str, config: Mapping[str, Any]) -> dict[str, Any]:
        entry = {
            **config,
            "id": str(uuid.uuid4()),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "enabled": True,
        }
        self._servers[name] = entry
        self._touch()
        self._events.publish(EventKind.SERVER_DEFINITION_ADDED, name=name)
        return dict(entry)

    def update_server(self, name: str, updates: Mapping[str, Any]) -> bool:
        if name not in self._servers:
            return False
        self._servers[name] = {**self._servers[name], **updates}
        self._touch()
        self._events.publish(EventKind.SERVER_DEFINITION_UPDATED, name=name)
        return True

    def remove_server(self, name: str) -> bool:
        if self._servers.pop(name, None) is None:
            return False
        self._touch()
        self._events.publish(EventKind.SERVER_DEFINITION_REMOVED, name=name)
        return True

    def get_server(self, name: str) -> dict[str, Any] | None:
        config = self._servers.get(name)
        return dict(config) if config is not None else None

    def all_servers(self) -> dict[str, dict[str, Any]]:
        return {name: dict(config) for name, config in self._servers.items()}

    # Persistence

    def _touch(self) -> None:
        self._revision += 1

    async def save(self) -> None:
        """Flush all three documents to disk.

        Concurrent saves are coalesced: a save whose mutations were already
        written by another save returns without writing again.
        """
        requested = self._revision
        async with self._save_lock:
            if self._saved_revision >= requested:
                logger.debug("Skipping save, changes already flushed")
                return

            revision = self._revision
            documents = {
                self._settings.servers_path: self.all_servers(),
                self._settings.credentials_path: {
                    key: self.encrypt(value)
                    for key, value in self._credentials.items()
                    if isinstance(value, str)
                },
                self._settings.oauth_states_path: {
                    state: session.model_dump(exclude_none=True)
                    for state, session in self._states.items()
                },
            }
            await asyncio.to_thread(_write_documents, documents)
            self._saved_revision = revision

        self._events.publish(EventKind.CONFIG_SAVED)


def _read_json_document(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable document {path.name}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring document {path.name}: expected a JSON object")
        return {}
    return data


def _write_documents(documents: Mapping[Path, Any]) -> None:
    for path, document in documents.items():
        _atomic_write_json(path, document)


def _atomic_write_json(path: Path, document: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
            json.dump(document, tmp_file, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
