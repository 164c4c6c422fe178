"""Authorization flow models for OAuth 2.1.

Contains models for authorization requests and consent callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlparse


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for OAuth 2.1 flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    state: str
    resource: str
    code_challenge_method: str = "S256"
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "resource": self.resource,
        }
        if self.scope:
            params["scope"] = self.scope

        separator = "&" if urlparse(self.authorization_endpoint).query else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class ConsentResult:
    """Parameters the authorization server sent back to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_query(cls, query: str) -> ConsentResult:
        params = parse_qs(query)

        def single(key: str) -> str | None:
            values = params.get(key, [])
            return values[0] if values else None

        return cls(
            code=single("code"),
            state=single("state"),
            error=single("error"),
            error_description=single("error_description"),
        )

    @classmethod
    def from_callback_url(cls, callback_url: str) -> ConsentResult:
        return cls.from_query(urlparse(callback_url).query)

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None
