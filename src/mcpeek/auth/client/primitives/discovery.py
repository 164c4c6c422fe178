"""OAuth 2.1 server discovery primitive.

Implements RFC 9728 (Protected Resource Metadata) and RFC 8414
(Authorization Server Metadata) discovery as ordered candidate lists: the first
URL that yields a usable document wins.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from mcpeek.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
    ProtectedResourceMetadata,
)
from mcpeek.auth.client.models.errors import (
    AuthorizationServerMetadataError,
    PKCERejected,
    ProtectedResourceMetadataError,
)

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
OAUTH_SERVER_PATH = "/.well-known/oauth-authorization-server"
OIDC_CONFIGURATION_PATH = "/.well-known/openid-configuration"


class OAuth2Discovery:
    """Handles OAuth 2.1 server discovery for MCP authorization.

    Implements the two-step discovery process:
    1. Protected Resource Metadata (RFC 9728) - find authorization servers
    2. Authorization Server Metadata (RFC 8414) - find OAuth endpoints

    The authorization server must advertise S256 PKCE. A server that does
    not is rejected outright rather than skipped in favour of the next URL.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """Initialize OAuth discovery.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Shared client. A private one is created when omitted.
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def discover(
        self, server_url: str, resource_metadata_url: str | None = None
    ) -> DiscoveryResult:
        """Discover the complete OAuth configuration for an MCP server.

        Args:
            server_url: MCP server URL
            resource_metadata_url: ``resource_metadata`` from a challenge, tried
                before the well-known locations

        Raises:
            ProtectedResourceMetadataError: If no resource document is usable
            AuthorizationServerMetadataError: If no server document is usable
            PKCERejected: If the authorization server lacks S256 support
        """
        prm = await self.discover_protected_resource(server_url, resource_metadata_url)

        auth_server_url = str(prm.authorization_servers[0])
        asm = await self.discover_authorization_server(auth_server_url)

        return DiscoveryResult(
            server_url=server_url,
            protected_resource_metadata=prm,
            authorization_server_metadata=asm,
            auth_server_url=auth_server_url,
        )

    async def discover_protected_resource(
        self, server_url: str, resource_metadata_url: str | None = None
    ) -> ProtectedResourceMetadata:
        urls = build_resource_metadata_urls(server_url, resource_metadata_url)

        for url in urls:
            try:
                logger.debug(f"Trying protected resource metadata: {url}")
                response = await self._http_client.get(url, timeout=self.timeout)
                if response.status_code != 200:
                    continue
                metadata = ProtectedResourceMetadata.model_validate_json(
                    response.content
                )
                logger.debug(
                    f"Discovered protected resource metadata at {url}: "
                    f"{len(metadata.authorization_servers)} auth servers"
                )
                return metadata

            except ValidationError:
                # Unparseable or no authorization servers - try next URL
                continue
            except httpx.HTTPError as e:
                logger.debug(f"Protected resource lookup at {url} failed: {e}")
                continue

        raise ProtectedResourceMetadataError(
            f"Failed to discover protected resource metadata for {server_url}. "
            f"Tried URLs: {urls}"
        )

    async def discover_authorization_server(
        self, auth_server_url: str
    ) -> AuthorizationServerMetadata:
        urls = build_authorization_server_urls(auth_server_url)

        for url in urls:
            try:
                logger.debug(f"Trying authorization server metadata: {url}")
                response = await self._http_client.get(url, timeout=self.timeout)

                if response.status_code == 200:
                    metadata = AuthorizationServerMetadata.model_validate_json(
                        response.content
                    )
                elif response.status_code >= 500:
                    # Server error - don't try other URLs
                    break
                else:
                    continue

            except ValidationError:
                continue
            except httpx.HTTPError as e:
                logger.debug(f"Authorization server lookup at {url} failed: {e}")
                continue

            if not metadata.supports_s256:
                raise PKCERejected(
                    f"Authorization server {auth_server_url} does not support S256 "
                    f"PKCE (advertised: {metadata.code_challenge_methods_supported})"
                )

            logger.debug(f"Discovered authorization server metadata at {url}")
            return metadata

        raise AuthorizationServerMetadataError(
            f"Failed to discover authorization server metadata for {auth_server_url}. "
            f"Tried URLs: {urls}"
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


def build_resource_metadata_urls(
    server_url: str, resource_metadata_url: str | None = None
) -> list[str]:
    """Ordered RFC 9728 candidate list: challenge URL, path-aware, root."""
    parsed = urlparse(server_url)
    base_url = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")

    urls = []
    if resource_metadata_url:
        urls.append(resource_metadata_url)
    if path:
        urls.append(urljoin(base_url, f"{PROTECTED_RESOURCE_PATH}{path}"))
    urls.append(urljoin(base_url, PROTECTED_RESOURCE_PATH))

    return list(dict.fromkeys(urls))


def build_authorization_server_urls(auth_server_url: str) -> list[str]:
    """Ordered RFC 8414 / OIDC candidate list.

    With an issuer path ``p``: oauth-authorization-server{p},
    openid-configuration{p}, {p}/openid-configuration, then the two root
    forms. Without a path only the two root forms are tried.
    """
    parsed = urlparse(auth_server_url)
    base_url = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")

    urls = []
    if path:
        urls.append(urljoin(base_url, f"{OAUTH_SERVER_PATH}{path}"))
        urls.append(urljoin(base_url, f"{OIDC_CONFIGURATION_PATH}{path}"))
        urls.append(urljoin(base_url, f"{path}{OIDC_CONFIGURATION_PATH}"))
    urls.append(urljoin(base_url, OAUTH_SERVER_PATH))
    urls.append(urljoin(base_url, OIDC_CONFIGURATION_PATH))

    return urls
