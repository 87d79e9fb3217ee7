"""PKCE and state token helpers (RFC 7636, S256 only)."""

import base64
import hashlib
import secrets
from typing import Tuple

STATE_BYTES = 32
VERIFIER_BYTES = 64


def base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def random_base64url(n_bytes: int = 32) -> str:
    return base64url(secrets.token_bytes(n_bytes))


def sha256_base64url(value: str) -> str:
    return base64url(hashlib.sha256(value.encode("ascii")).digest())


def generate_state() -> str:
    """Unguessable CSRF / correlation token for one authorization attempt."""
    return random_base64url(STATE_BYTES)


def generate_pkce() -> Tuple[str, str]:
    """Return (code_verifier, code_challenge).

    64 random bytes encode to 86 characters, inside the 43..128 range
    the RFC allows for a verifier.
    """
    code_verifier = random_base64url(VERIFIER_BYTES)
    return code_verifier, sha256_base64url(code_verifier)
