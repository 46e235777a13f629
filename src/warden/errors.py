"""Exception hierarchy for credential, OAuth, and server lifecycle failures.

Provides specific exception types for different failure modes so callers can
tell configuration problems apart from flow failures and process failures.
"""


class WardenError(Exception):
    """Base exception for all warden errors."""

    pass


class ConfigurationError(WardenError):
    """Raised when required configuration is missing or invalid.

    Covers missing client ids or secrets and unknown providers.
    """

    pass


class ServerRegistrationError(ConfigurationError):
    """Raised when a server name is registered twice or is not registered."""

    pass


class OAuthError(WardenError):
    """Base exception for OAuth authorization flow failures."""

    pass


class OAuthStateError(OAuthError):
    """Raised when an OAuth state parameter is unknown or expired."""

    pass


class AuthorizationTimeoutError(OAuthStateError):
    """Raised when an authorization flow is not completed in time."""

    pass


class AuthorizationCancelledError(OAuthStateError):
    """Raised when an in-flight authorization is cancelled."""

    pass


class AuthorizationDeniedError(OAuthError):
    """Raised when the provider redirects back with an error parameter."""

    pass


class TokenExchangeError(OAuthError):
    """Raised when a code exchange or token refresh is rejected.

    Covers non-2xx responses, error bodies, and transport failures.
    """

    pass


class MissingRefreshTokenError(TokenExchangeError):
    """Raised when a token must be refreshed but no refresh token is stored."""

    pass


class CallbackServerError(WardenError):
    """Raised when the local OAuth callback listener cannot be started."""

    pass


class AuthenticationRequiredError(WardenError):
    """Raised when a server that requires auth has no usable token."""

    pass


class ProcessStartError(WardenError):
    """Raised when a server process fails to spawn or become ready."""

    pass


class DecryptionError(WardenError):
    """Raised by the cipher when a stored value cannot be decrypted.

    Never escapes CredentialStore: a failed decrypt reads as "absent".
    """

    pass
