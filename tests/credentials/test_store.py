"""Tests for encrypted credential storage and OAuth state bookkeeping."""

import asyncio
import json
import stat

import pytest

import warden.credentials.store as store_module
from warden.config import Settings
from warden.credentials.models import OAuthSessionState, StoredToken
from warden.credentials.store import CredentialStore, env_prefix
from warden.notifications import EventKind


async def reopen(settings, catalog, environ=None) -> CredentialStore:
    reopened = CredentialStore(settings, catalog=catalog, environ=environ or {})
    await reopened.initialize()
    return reopened


class TestInitialize:
    async def test_creates_directory_and_restricted_master_key(self, store, settings):
        # Assert
        assert settings.config_dir.is_dir()
        assert settings.key_path.exists()
        assert stat.S_IMODE(settings.key_path.stat().st_mode) == 0o600
        assert len(settings.key_path.read_text().strip()) == 64

    async def test_reuses_existing_master_key(self, store, settings, catalog):
        # Arrange
        key_before = settings.key_path.read_text()

        # Act
        await reopen(settings, catalog)

        # Assert
        assert settings.key_path.read_text() == key_before

    async def test_corrupt_documents_fall_back_to_empty(self, settings, catalog):
        # Arrange
        settings.config_dir.mkdir(parents=True)
        settings.servers_path.write_text("{not json")
        settings.credentials_path.write_text("[1, 2, 3]")
        settings.oauth_states_path.write_text('{"abc": {"provider": 1}}')

        # Act
        credential_store = await reopen(settings, catalog)

        # Assert
        assert credential_store.all_servers() == {}
        assert credential_store.keys() == []
        assert credential_store.states() == {}

    async def test_fails_when_directory_cannot_be_created(self, tmp_path, catalog):
        # Arrange
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        credential_store = CredentialStore(
            Settings(config_dir=blocker / "warden"), catalog=catalog, environ={}
        )

        # Act & Assert
        with pytest.raises(OSError):
            await credential_store.initialize()


class TestEnvironmentBootstrap:
    async def test_stores_client_credentials_from_environment(self, settings, catalog):
        # Arrange
        environ = {
            "ACME_CLIENT_ID": "abc123",
            "ACME_CLIENT_SECRET": " s3cret ",
            "GITHUB_CLIENT_ID": "gh-client",
            "UNRELATED": "ignored",
        }

        # Act
        credential_store = await reopen(settings, catalog, environ=environ)

        # Assert
        assert credential_store.client_id("acme") == "abc123"
        assert credential_store.client_secret("acme") == "s3cret"
        assert credential_store.client_id("github") == "gh-client"
        assert credential_store.has_client_credentials("acme")
        assert not credential_store.has_client_credentials("github")

    async def test_bootstrapped_values_are_persisted(self, settings, catalog):
        # Arrange
        await reopen(settings, catalog, environ={"ACME_CLIENT_ID": "abc123"})

        # Act
        credential_store = await reopen(settings, catalog)

        # Assert
        assert credential_store.client_id("acme") == "abc123"

    async def test_unchanged_values_do_not_trigger_save(self, settings, catalog):
        # Arrange
        environ = {"ACME_CLIENT_ID": "abc123"}
        await reopen(settings, catalog, environ=environ)
        mtime = settings.credentials_path.stat().st_mtime_ns

        # Act
        credential_store = await reopen(settings, catalog, environ=environ)

        # Assert
        assert credential_store.client_id("acme") == "abc123"
        assert settings.credentials_path.stat().st_mtime_ns == mtime

    def test_env_prefix_uppercases_and_replaces_dashes(self):
        assert env_prefix("google-drive") == "GOOGLE_DRIVE"


class TestCredentials:
    async def test_set_and_remove_emit_notifications_without_saving(
        self, store, settings, received
    ):
        # Act
        store.set("acme_client_id", "abc123")
        removed = store.remove("acme_client_id")

        # Assert
        assert removed is True
        assert [event.kind for event in received] == [
            EventKind.CREDENTIAL_UPDATED,
            EventKind.CREDENTIAL_REMOVED,
        ]
        assert received[0].payload == {"key": "acme_client_id"}
        assert not settings.credentials_path.exists()

    async def test_remove_missing_key_returns_false(self, store, received):
        assert store.remove("missing") is False
        assert received == []

    async def test_values_are_encrypted_on_disk(self, store, settings, catalog):
        # Arrange
        store.set("acme_client_secret", "top-secret-value")

        # Act
        await store.save()

        # Assert
        document = json.loads(settings.credentials_path.read_text())
        assert "top-secret-value" not in settings.credentials_path.read_text()
        assert ":" in document["acme_client_secret"]
        assert stat.S_IMODE(settings.credentials_path.stat().st_mode) == 0o600

        reopened = await reopen(settings, catalog)
        assert reopened.get("acme_client_secret") == "top-secret-value"

    async def test_undecryptable_values_read_as_absent(self, store, settings, catalog):
        # Arrange
        store.set("good", "value")
        await store.save()
        document = json.loads(settings.credentials_path.read_text())
        document["legacy"] = "plain-legacy-format"
        document["garbled"] = "00" * 8 + ":" + "ff" * 16
        settings.credentials_path.write_text(json.dumps(document))

        # Act
        reopened = await reopen(settings, catalog)

        # Assert
        assert reopened.get("good") == "value"
        assert reopened.get("legacy") is None
        assert reopened.get("garbled") is None

    async def test_decrypt_returns_empty_string_for_malformed_input(self, store):
        assert store.decrypt("not-the-right-format") == ""
        assert store.decrypt("zz:zz") == ""

    async def test_token_round_trip(self, store):
        # Arrange
        token = StoredToken(
            access_token="at", refresh_token="rt", expires_at=1700003600.0, scope="read"
        )

        # Act
        store.save_token("acme", "read", token)

        # Assert
        assert store.get("acme_read_token") is not None
        assert store.get_token("acme", "read") == token
        assert store.remove_token("acme", "read") is True
        assert store.get_token("acme", "read") is None

    async def test_unreadable_token_json_reads_as_absent(self, store):
        store.set("acme_read_token", "not json")
        assert store.get_token("acme", "read") is None


class TestOAuthStates:
    async def test_put_get_pop(self, store, clock):
        # Arrange
        session = OAuthSessionState(
            provider="acme",
            service="read",
            redirect_uri="http://localhost:3000/callback",
            timestamp=clock(),
        )

        # Act
        store.put_state("s1", session)

        # Assert
        assert store.get_state("s1") == session
        assert store.pop_state("s1") == session
        assert store.get_state("s1") is None
        assert store.pop_state("s1") is None

    async def test_cleanup_removes_states_older_than_an_hour(self, store, clock):
        # Arrange
        for name, age in [("old", 3601), ("recent", 3599), ("new", 0)]:
            store.put_state(
                name,
                OAuthSessionState(
                    provider="acme",
                    service="read",
                    redirect_uri="warden://oauth/callback",
                    timestamp=clock() - age,
                ),
            )

        # Act
        removed = store.cleanup_expired_states()

        # Assert
        assert removed == 1
        assert set(store.states()) == {"recent", "new"}

    async def test_states_persist_across_instances(self, store, settings, catalog, clock):
        # Arrange
        store.put_state(
            "s1",
            OAuthSessionState(
                provider="acme",
                service="read",
                redirect_uri="warden://oauth/callback",
                timestamp=clock(),
                code_verifier="v" * 43,
            ),
        )
        await store.save()

        # Act
        reopened = await reopen(settings, catalog)

        # Assert
        assert reopened.get_state("s1").code_verifier == "v" * 43
        document = json.loads(settings.oauth_states_path.read_text())
        assert set(document["s1"]) == {
            "provider",
            "service",
            "redirect_uri",
            "timestamp",
            "code_verifier",
        }


class TestServerDefinitions:
    async def test_add_update_remove(self, store, received):
        # Act
        entry = store.add_server("custom", {"command": "node", "args": ["server.js"]})
        updated = store.update_server("custom", {"enabled": False})

        # Assert
        assert entry["command"] == "node"
        assert entry["enabled"] is True
        assert entry["id"]
        assert entry["created_at"]
        assert updated is True
        assert store.get_server("custom")["enabled"] is False
        assert store.remove_server("custom") is True
        assert store.get_server("custom") is None
        assert [event.kind for event in received] == [
            EventKind.SERVER_DEFINITION_ADDED,
            EventKind.SERVER_DEFINITION_UPDATED,
            EventKind.SERVER_DEFINITION_REMOVED,
        ]

    async def test_update_and_remove_unknown_server(self, store):
        assert store.update_server("missing", {"enabled": False}) is False
        assert store.remove_server("missing") is False

    async def test_servers_are_stored_verbatim(self, store, settings):
        # Arrange
        store.add_server("custom", {"command": "node", "extra": {"nested": [1, 2]}})

        # Act
        await store.save()

        # Assert
        document = json.loads(settings.servers_path.read_text())
        assert document["custom"]["extra"] == {"nested": [1, 2]}


class TestSave:
    async def test_save_emits_config_saved(self, store, received):
        # Arrange
        store.set("key", "value")

        # Act
        await store.save()

        # Assert
        assert received[-1].kind == EventKind.CONFIG_SAVED

    async def test_concurrent_saves_are_coalesced(self, store, settings, monkeypatch):
        # Arrange
        writes = []
        original = store_module._write_documents

        def counting_write(documents):
            writes.append(documents)
            original(documents)

        monkeypatch.setattr(store_module, "_write_documents", counting_write)
        store.set("a", "1")
        store.set("b", "2")

        # Act
        await asyncio.gather(store.save(), store.save(), store.save())

        # Assert
        assert len(writes) == 1
        assert json.loads(settings.credentials_path.read_text()).keys() == {"a", "b"}

    async def test_save_leaves_no_temp_files(self, store, settings):
        # Arrange
        store.set("a", "1")

        # Act
        await store.save()

        # Assert
        leftovers = [path.name for path in settings.config_dir.iterdir() if path.suffix == ".tmp"]
        assert leftovers == []
