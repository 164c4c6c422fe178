"""Token state and lifecycle models for OAuth 2.1.

Contains mutable token state management and token endpoint request/response
models. Timestamps are wall-clock seconds supplied by the caller so the
lifecycle can be driven by an injected clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict

# Refresh this many seconds before the access token expires
REFRESH_MARGIN_SECONDS = 60.0


@dataclass
class TokenState:
    """Mutable token state for one server identity."""

    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None
    scope: str | None = None

    @property
    def granted_scopes(self) -> set[str]:
        return set(self.scope.split()) if self.scope else set()

    def is_valid(self, now: float, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        """Check the access token is present and not within ``margin`` of expiry."""
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return now < self.expires_at - margin

    def needs_refresh(self, now: float, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        """A refresh is due when a refresh token exists and the access token
        is absent or about to expire."""
        return bool(self.refresh_token) and not self.is_valid(now, margin)

    def apply(self, response: TokenResponse, now: float) -> None:
        """Update from a successful token response.

        The refresh token and scope are kept when the response omits them.
        """
        self.access_token = response.access_token
        self.token_type = response.token_type or "Bearer"
        if response.refresh_token:
            self.refresh_token = response.refresh_token
        if response.scope is not None:
            self.scope = response.scope
        self.expires_at = (
            now + response.expires_in if response.expires_in is not None else None
        )

    # ================================
    # Store records
    # ================================

    def access_record(self) -> dict[str, Any]:
        return {
            "token": self.access_token,
            "type": self.token_type,
            "expires_at": self.expires_at,
        }

    def refresh_record(self) -> dict[str, Any]:
        return {"refresh_token": self.refresh_token, "scope": self.scope}

    @classmethod
    def from_records(
        cls, access: dict[str, Any] | None, refresh: dict[str, Any] | None
    ) -> TokenState:
        state = cls()
        if access:
            state.access_token = access.get("token")
            state.token_type = access.get("type") or "Bearer"
            state.expires_at = access.get("expires_at")
        if refresh:
            state.refresh_token = refresh.get("refresh_token")
            state.scope = refresh.get("scope")
        return state


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3)."""

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str
    resource: str
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Form fields for an application/x-www-form-urlencoded request."""
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "resource": self.resource,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token request parameters (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str
    resource: str
    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        return {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "resource": self.resource,
        }


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5), success or error."""

    model_config = ConfigDict(extra="allow")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None
