"""Discovery-related models for OAuth 2.1 server metadata.

Contains models for Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414) discovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


def canonical_resource_uri(server_url: str) -> str:
    """Canonical form of a server URL, used as resource indicator and identity.

    ``scheme://host[:port][/path]`` with scheme and host lower-cased, no
    trailing slash, no query or fragment (RFC 8707).
    """
    parsed = urlparse(server_url)
    canonical = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    if parsed.path and parsed.path != "/":
        canonical += parsed.path.rstrip("/")
    return canonical


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728).

    Only documents listing at least one authorization server are usable.
    """

    model_config = ConfigDict(extra="allow")

    resource: str | None = None
    authorization_servers: list[str] = Field(min_length=1)
    scopes_supported: list[str] | None = None

    bearer_methods_supported: list[str] | None = None
    resource_documentation: str | None = None


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    ``code_challenge_methods_supported`` defaults to empty: a server that does
    not list its PKCE methods is treated as not supporting S256.
    """

    model_config = ConfigDict(extra="allow")

    issuer: str | None = None
    authorization_endpoint: str
    token_endpoint: str

    code_challenge_methods_supported: list[str] = Field(default_factory=list)
    registration_endpoint: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: list[str] = Field(
        default_factory=lambda: ["authorization_code"]
    )

    @property
    def supports_s256(self) -> bool:
        return "S256" in self.code_challenge_methods_supported


@dataclass(frozen=True)
class DiscoveryResult:
    """Complete discovery results for an MCP server."""

    server_url: str
    protected_resource_metadata: ProtectedResourceMetadata
    authorization_server_metadata: AuthorizationServerMetadata
    auth_server_url: str

    def get_resource_url(self) -> str:
        """Resource indicator sent on authorization, exchange and refresh."""
        return canonical_resource_uri(self.server_url)

    def default_scope(self) -> str | None:
        """Scope to request when neither the challenge nor settings name one."""
        supported = self.protected_resource_metadata.scopes_supported
        if supported:
            return " ".join(supported)
        return None
