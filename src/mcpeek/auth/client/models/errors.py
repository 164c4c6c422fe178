"""Exception hierarchy for the OAuth 2.1 authorization lifecycle.

Fatal conditions (``PKCERejected``, ``StateMismatch``) are never retried.
Refresh and step-up are the only operations that retry, within their bounds.
"""

from __future__ import annotations

from mcpeek.protocol.errors import MCPeekError


class OAuth2Error(MCPeekError):
    """Base exception for all OAuth 2.1 related errors."""

    pass


class AuthDiscoveryError(OAuth2Error):
    """Raised when no usable metadata document could be found."""

    pass


class ProtectedResourceMetadataError(AuthDiscoveryError):
    """Raised when Protected Resource Metadata discovery fails."""

    pass


class AuthorizationServerMetadataError(AuthDiscoveryError):
    """Raised when Authorization Server Metadata discovery fails."""

    pass


class PKCERejected(OAuth2Error):
    """Raised when the authorization server does not advertise S256 PKCE."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when no client identifier can be obtained."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class ConsentDenied(AuthorizationError):
    """Raised when the authorization server returns an error callback."""

    def __init__(self, error: str, description: str | None = None):
        self.error = error
        self.description = description
        detail = f" ({description})" if description else ""
        super().__init__(f"Authorization denied: {error}{detail}")


class ConsentCancelled(AuthorizationError):
    """Raised when the user abandons consent or it times out."""

    pass


class StateMismatch(AuthorizationError):
    """Raised when the callback state does not match the request.

    This indicates either a forged callback or an authorization server bug.
    """

    pass


class StepUpExceeded(AuthorizationError):
    """Raised when scope step-up has been attempted too many times."""

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    pass


class TokenExchangeError(TokenError):
    """Raised when authorization code to token exchange fails."""

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails."""

    pass


class RefreshInvalid(TokenRefreshError):
    """Raised when the refresh token was rejected with ``invalid_grant``.

    Stored credentials for the server have been cleared by the time this is
    raised. The next authorized request starts a fresh authorization.
    """

    pass
