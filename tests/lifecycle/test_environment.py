from warden.catalog import ServerDefinition
from warden.credentials.models import StoredToken
from warden.lifecycle.environment import (
    DEFAULT_TOKEN_ENV_VAR,
    build_server_environment,
    provider_environment,
)


def definition(**overrides) -> ServerDefinition:
    fields = {"name": "srv", "command": "srv-mcp", "requires_auth": True}
    fields.update(overrides)
    return ServerDefinition(**fields)


class TestProviderEnvironment:
    def test_known_providers_have_their_own_variables(self):
        assert provider_environment("notion").access_token == "NOTION_API_TOKEN"
        assert provider_environment("github").access_token == "GITHUB_PERSONAL_ACCESS_TOKEN"
        assert provider_environment("slack").access_token == "SLACK_BOT_TOKEN"

    def test_unknown_provider_uses_default_variable(self):
        assert provider_environment("acme").access_token == DEFAULT_TOKEN_ENV_VAR
        assert provider_environment(None).refresh_token is None


class TestBuildServerEnvironment:
    def test_without_token_only_base_and_static_env(self):
        # Act
        env = build_server_environment(
            definition(requires_auth=False, env={"LOG_LEVEL": "debug"}),
            base={"PATH": "/usr/bin"},
        )

        # Assert
        assert env == {"PATH": "/usr/bin", "LOG_LEVEL": "debug"}

    def test_notion_token_is_exported_under_provider_name(self):
        # Act
        env = build_server_environment(
            definition(auth_provider="notion"), access_token="secret_abc", base={}
        )

        # Assert
        assert env == {"NOTION_API_TOKEN": "secret_abc"}

    def test_google_exports_refresh_token_and_client_credentials(self):
        # Act
        env = build_server_environment(
            definition(auth_provider="google"),
            access_token="ya29",
            token=StoredToken(access_token="ya29", refresh_token="1//rt"),
            client_id="cid",
            client_secret="csecret",
            base={},
        )

        # Assert
        assert env == {
            "GOOGLE_ACCESS_TOKEN": "ya29",
            "GOOGLE_REFRESH_TOKEN": "1//rt",
            "GOOGLE_OAUTH_CLIENT_ID": "cid",
            "GOOGLE_OAUTH_CLIENT_SECRET": "csecret",
        }

    def test_missing_values_are_not_exported(self):
        # Act
        env = build_server_environment(
            definition(auth_provider="google"), access_token="ya29", base={}
        )

        # Assert
        assert env == {"GOOGLE_ACCESS_TOKEN": "ya29"}

    def test_token_env_var_overrides_provider_default(self):
        # Act
        env = build_server_environment(
            definition(auth_provider="github", token_env_var="GH_TOKEN"),
            access_token="gho",
            base={},
        )

        # Assert
        assert env == {"GH_TOKEN": "gho"}

    def test_env_mapping_takes_precedence(self):
        # Act
        env = build_server_environment(
            definition(
                auth_provider="acme",
                token_env_var="IGNORED",
                env_mapping={"token": "ACME_TOKEN", "client_id": "ACME_ID", "bogus": "X"},
            ),
            access_token="at",
            client_id="cid",
            base={},
        )

        # Assert
        assert env == {"ACME_TOKEN": "at", "ACME_ID": "cid"}

    def test_credentials_override_inherited_values(self):
        # Act
        env = build_server_environment(
            definition(auth_provider="slack"),
            access_token="xoxb-new",
            base={"SLACK_BOT_TOKEN": "xoxb-stale", "HOME": "/home/me"},
        )

        # Assert
        assert env["SLACK_BOT_TOKEN"] == "xoxb-new"
        assert env["HOME"] == "/home/me"
