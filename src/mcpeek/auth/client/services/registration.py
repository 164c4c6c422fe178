"""OAuth 2.1 dynamic client registration service.

Implements RFC 7591 (OAuth 2.0 Dynamic Client Registration Protocol)
to register mcpeek as a public client with authorization servers.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from mcpeek.auth.client.models.errors import RegistrationError
from mcpeek.auth.client.models.registration import ClientCredentials, ClientMetadata

logger = logging.getLogger(__name__)


class OAuth2Registration:
    """Registers public clients at an authorization server's registration endpoint."""

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def register_client(
        self, registration_endpoint: str, client_metadata: ClientMetadata
    ) -> ClientCredentials:
        """Register a new OAuth client with the authorization server.

        Args:
            registration_endpoint: Client registration endpoint URL
            client_metadata: Client metadata to register

        Returns:
            Credentials carrying the issued client id

        Raises:
            RegistrationError: If registration fails
        """
        logger.debug(f"Registering client at {registration_endpoint}")

        try:
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise RegistrationError(f"HTTP error during registration: {e}") from e

        if response.status_code in (200, 201):
            return self._parse_registration(response, registration_endpoint)

        self._raise_registration_error(response)

    def _parse_registration(
        self, response: httpx.Response, registration_endpoint: str
    ) -> ClientCredentials:
        try:
            credentials = ClientCredentials.model_validate_json(response.content)
        except ValidationError as e:
            raise RegistrationError(f"Invalid registration response format: {e}") from e

        logger.info(
            f"Registered client {credentials.client_id} at {registration_endpoint}"
        )
        return credentials

    def _raise_registration_error(self, response: httpx.Response) -> None:
        """Raise a RegistrationError describing a failed registration response."""
        try:
            error_data = response.json()
        except ValueError:
            raise RegistrationError(
                f"Registration failed with HTTP {response.status_code}: {response.text}"
            )

        error_code = error_data.get("error", "unknown_error")
        error_description = error_data.get(
            "error_description", "No description provided"
        )
        logger.warning(
            f"Client registration failed with {response.status_code}: "
            f"{error_code} - {error_description}"
        )

        if error_code == "invalid_redirect_uri":
            raise RegistrationError(f"Invalid redirect URI: {error_description}")
        if error_code == "invalid_client_metadata":
            raise RegistrationError(f"Invalid client metadata: {error_description}")
        raise RegistrationError(
            f"Registration failed ({response.status_code}): {error_code} - "
            f"{error_description}"
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
