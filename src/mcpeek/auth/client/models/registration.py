"""Client registration models for OAuth 2.0 Dynamic Client Registration (RFC 7591)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClientMetadata(BaseModel):
    """Metadata sent when registering mcpeek as a public client."""

    client_name: str
    redirect_uris: list[str] = Field(min_length=1)
    scope: str | None = None
    client_uri: str | None = None

    # Public client, no secret
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: list[str] = Field(default_factory=lambda: ["code"])


class ClientCredentials(BaseModel):
    """Client identity returned by the registration endpoint."""

    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int | None = None
