"""OAuth 2.1 token exchange and refresh service.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636)
and Resource Indicators (RFC 8707).
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from mcpeek.auth.client.models.errors import TokenError
from mcpeek.auth.client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Talks to the token endpoint and the optional revocation endpoint.

    Requests are form-encoded. Error responses in RFC 6749 Section 5.2 form
    are returned as ``TokenResponse`` objects for the caller to classify;
    only network failures and unparseable bodies raise ``TokenError``.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(self, token_request: TokenRequest) -> TokenResponse:
        """Exchange an authorization code for tokens (RFC 6749 Section 4.1.3)."""
        form_data = token_request.to_form_data()
        logger.debug(
            f"Exchanging authorization code at {token_request.token_endpoint}: "
            f"client_id={form_data['client_id']}, resource={form_data['resource']}"
        )
        return await self._post(token_request.token_endpoint, form_data, "exchange")

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh an access token (RFC 6749 Section 6)."""
        form_data = refresh_request.to_form_data()
        logger.debug(
            f"Refreshing access token at {refresh_request.token_endpoint}: "
            f"client_id={form_data['client_id']}, resource={form_data['resource']}"
        )
        return await self._post(refresh_request.token_endpoint, form_data, "refresh")

    async def revoke_token(
        self,
        revocation_endpoint: str,
        token: str,
        client_id: str,
        token_type_hint: str = "refresh_token",
    ) -> bool:
        """Revoke a token (RFC 7009). Best effort.

        Returns:
            True if the server acknowledged the revocation
        """
        try:
            response = await self._http_client.post(
                revocation_endpoint,
                data={
                    "token": token,
                    "token_type_hint": token_type_hint,
                    "client_id": client_id,
                },
                headers=_FORM_HEADERS,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation at {revocation_endpoint} failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"Token revocation at {revocation_endpoint} returned "
                f"{response.status_code}"
            )
            return False
        return True

    async def _post(
        self, endpoint: str, form_data: dict[str, str], operation: str
    ) -> TokenResponse:
        try:
            response = await self._http_client.post(
                endpoint, data=form_data, headers=_FORM_HEADERS, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token {operation}: {e}") from e

        return self._parse_token_response(response, operation)

    def _parse_token_response(
        self, response: httpx.Response, operation: str
    ) -> TokenResponse:
        """Parse a token endpoint response, success (200) or error (400+).

        Raises:
            TokenError: If the body is not a token response
        """
        try:
            token_response = TokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise TokenError(
                f"Invalid token {operation} response (HTTP {response.status_code}): {e}"
            ) from e

        if response.status_code == 200:
            if token_response.access_token is None:
                raise TokenError("Token response missing required access_token")
            logger.debug(f"Token {operation} successful")
            return token_response

        if token_response.error is None:
            token_response.error = f"http_{response.status_code}"
        logger.warning(
            f"Token {operation} failed with {response.status_code}: "
            f"{token_response.error} - "
            f"{token_response.error_description or 'No description provided'}"
        )
        return token_response

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
