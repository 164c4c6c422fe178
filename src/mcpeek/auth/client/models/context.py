"""Per-server authorization state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from mcpeek.auth.client.models.discovery import DiscoveryResult
from mcpeek.auth.client.models.tokens import TokenState


class AuthState(str, Enum):
    UNAUTHORIZED = "unauthorized"
    DISCOVERING_RESOURCE = "discovering-resource"
    DISCOVERING_AUTH_SERVER = "discovering-auth-server"
    REGISTERING = "registering"
    PREPARING_PROOF = "preparing-proof"
    AWAITING_CONSENT = "awaiting-consent"
    EXCHANGING_CODE = "exchanging-code"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    STEPPING_UP = "stepping-up"
    FAILED = "failed"


@dataclass
class AuthorizationContext:
    """Everything known about authorizing against one server identity.

    ``resource`` is the canonical resource URI and doubles as the key for
    both credential stores.
    """

    resource: str
    state: AuthState = AuthState.UNAUTHORIZED
    discovery: DiscoveryResult | None = None
    client_id: str | None = None
    tokens: TokenState = field(default_factory=TokenState)
    step_up_attempts: int = 0
    loaded: bool = False

    def reset_credentials(self) -> None:
        self.tokens = TokenState()
        self.client_id = None
        self.step_up_attempts = 0
