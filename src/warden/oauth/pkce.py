"""PKCE (Proof Key for Code Exchange) and state parameter generation.

Implements RFC 7636 S256 code challenges and the random state tokens that
bind an authorization callback to the attempt that started it.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field

STATE_BYTES = 32
VERIFIER_BYTES = 32


@dataclass(frozen=True)
class PKCEParameters:
    """Verifier/challenge pair for one authorization attempt."""

    code_verifier: str = field()
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


def generate_pkce_parameters() -> PKCEParameters:
    """Generate a fresh verifier and its S256 challenge.

    The verifier is 32 random bytes, base64url encoded without padding
    (43 characters, inside the RFC 7636 43-128 range).
    """
    code_verifier = _base64url(secrets.token_bytes(VERIFIER_BYTES))
    return PKCEParameters(
        code_verifier=code_verifier,
        code_challenge=code_challenge_for(code_verifier),
    )


def code_challenge_for(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _base64url(digest)


def generate_state() -> str:
    """Generate a cryptographically random state token (64 hex characters)."""
    return secrets.token_hex(STATE_BYTES)


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")
