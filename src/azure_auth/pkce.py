"""PKCE (Proof Key for Code Exchange) and CSRF state generation."""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field

from .exceptions import PkceGenerationError

VERIFIER_BYTES = 32
STATE_BYTES = 16


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def compute_challenge(verifier: str) -> str:
    """
    Compute the S256 code challenge for a verifier.

    Args:
        verifier: Encoded code verifier string

    Returns:
        BASE64URL(SHA256(verifier)) without padding
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def _random_bytes(count: int) -> bytes:
    try:
        return secrets.token_bytes(count)
    except (OSError, NotImplementedError) as e:
        raise PkceGenerationError() from e


@dataclass(frozen=True)
class PkceChallenge:
    """
    PKCE code verifier and challenge pair.

    Created fresh for every sign-in attempt and never persisted.

    Attributes:
        verifier: Random URL-safe string sent in the token exchange
        challenge: SHA-256 of the verifier, sent in the authorization request
    """

    verifier: str = field(repr=False)
    challenge: str

    @classmethod
    def generate(cls) -> "PkceChallenge":
        """
        Generate a new PKCE challenge pair.

        Returns:
            PkceChallenge with a 43-character verifier (32 random bytes)

        Raises:
            PkceGenerationError: If the system CSPRNG is unavailable
        """
        verifier = _b64url(_random_bytes(VERIFIER_BYTES))
        return cls(verifier=verifier, challenge=compute_challenge(verifier))


def generate_state() -> str:
    """Generate an unpredictable CSRF state token (16 random bytes, base64url)."""
    return _b64url(_random_bytes(STATE_BYTES))
