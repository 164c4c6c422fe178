"""PKCE (Proof Key for Code Exchange) parameter generation for OAuth 2.1.

Implements RFC 7636 with the S256 method. Plain challenges are never produced.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from mcpeek.auth.client.models.security import PKCEParameters

VERIFIER_LENGTH = 128
STATE_LENGTH = 32

# RFC 7636 Section 4.1 unreserved characters
_UNRESERVED = string.ascii_letters + string.digits + "-._~"
_STATE_ALPHABET = string.ascii_letters + string.digits + "-_"


class PKCEManager:
    """Generates the proof key and anti-forgery nonce for one authorization."""

    def generate_parameters(self) -> PKCEParameters:
        """Generate a fresh verifier, its S256 challenge and a state nonce."""
        code_verifier = generate_code_verifier()
        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=compute_code_challenge(code_verifier),
            state=generate_state(),
        )


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a verifier over the unreserved alphabet (43-128 characters)."""
    if not 43 <= length <= 128:
        raise ValueError("code_verifier length must be 43-128")
    return "".join(secrets.choice(_UNRESERVED) for _ in range(length))


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state(length: int = STATE_LENGTH) -> str:
    return "".join(secrets.choice(_STATE_ALPHABET) for _ in range(length))
