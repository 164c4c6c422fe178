"""Exception hierarchy for the session and transport layers.

Authorization failures live in ``mcpeek.auth.client.models.errors`` and share
the same ``MCPeekError`` root so callers can catch everything in one place.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcpeek.auth.client.primitives.challenge import AccessChallenge


class MCPeekError(Exception):
    """Root of every error raised by mcpeek."""

    pass


class TransportError(MCPeekError):
    """Raised when the network or HTTP exchange fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RequestTimeout(TransportError):
    """Raised when a bounded wait for a reply runs out."""

    pass


class AccessChallengeError(TransportError):
    """Raised when the server answers 401 or 403 with an access challenge.

    Carries the parsed ``WWW-Authenticate`` parameters so the authorization
    layer can decide between a fresh authorization and a scope step-up.
    """

    def __init__(self, status_code: int, challenge: AccessChallenge):
        self.challenge = challenge
        super().__init__(
            f"Server requires authorization (HTTP {status_code})",
            status_code=status_code,
        )


class ProtocolErrorKind(str, Enum):
    MALFORMED = "malformed"
    NOT_ENVELOPE = "not-envelope"
    OUT_OF_CONTRACT = "out-of-contract"


class ProtocolError(MCPeekError):
    """Raised when a message is malformed or breaks the JSON-RPC contract."""

    def __init__(self, kind: ProtocolErrorKind, message: str):
        self.kind = kind
        super().__init__(f"{kind.value}: {message}")


class RemoteError(MCPeekError):
    """Raised when the server answers a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"Server error {code}: {message}")


class Cancelled(MCPeekError):
    """Raised for pending calls when their session is torn down."""

    pass


class SessionStateError(MCPeekError):
    """Raised when an operation is not valid in the session's current state."""

    pass
