"""Security checks for OAuth 2.1 callbacks."""

from __future__ import annotations

import secrets
from urllib.parse import urlparse

from mcpeek.auth.client.models.errors import StateMismatch


def validate_state(expected: str, actual: str | None) -> None:
    """Validate the callback state matches the one sent, in constant time.

    Raises:
        StateMismatch: If the state is missing or different
    """
    if actual is None:
        raise StateMismatch("Authorization callback is missing the state parameter")
    if not secrets.compare_digest(expected.encode(), actual.encode()):
        raise StateMismatch("State parameter mismatch - possible forged callback")


def validate_redirect_uri(uri: str) -> bool:
    """Check a redirect URI is HTTPS or an HTTP loopback address."""
    parsed = urlparse(uri)
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in (
        "localhost",
        "127.0.0.1",
        "::1",
    )


def is_trusted_callback(
    redirect_uri: str, host: str | None, port: int | None, path: str
) -> bool:
    """Whether a request hit exactly the registered redirect URI.

    Compares host, port and path. Any other origin or path is untrusted.
    """
    expected = urlparse(redirect_uri)
    expected_port = expected.port or (443 if expected.scheme == "https" else 80)
    expected_path = expected.path or "/"

    if host is None or host.lower() != (expected.hostname or "").lower():
        return False
    if (port or expected_port) != expected_port:
        return False
    return path == expected_path
