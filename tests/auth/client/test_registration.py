"""Tests for OAuth 2.1 dynamic client registration.

High-impact tests covering the core registration flow for public clients:
- Successful registration with proper request/response handling
- Error response parsing and appropriate exception raising
- Request body validation and header construction
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from mcpeek.auth.client.models.errors import RegistrationError
from mcpeek.auth.client.models.registration import ClientMetadata
from mcpeek.auth.client.services.registration import OAuth2Registration


class TestSuccessfulRegistration:
    """Test successful registration flow for public clients."""

    def setup_method(self):
        # Arrange
        self.registration_service = OAuth2Registration()
        self.registration_service._http_client = AsyncMock()
        self.client_metadata = ClientMetadata(
            client_name="MCPeek",
            redirect_uris=["http://localhost:8765/oauth/callback"],
            scope="mcp:read mcp:write",
        )

    async def test_successful_public_client_registration(self):
        """Test successful registration of public client."""
        # Arrange
        self.registration_service._http_client.post.return_value = httpx.Response(
            201,
            json={
                "client_id": "generated-client-id-123",
                "client_name": "MCPeek",
                "redirect_uris": ["http://localhost:8765/oauth/callback"],
                "token_endpoint_auth_method": "none",
                "client_id_issued_at": 1640995200,
            },
        )

        # Act
        result = await self.registration_service.register_client(
            "https://auth.example.com/register", self.client_metadata
        )

        # Assert
        assert result.client_id == "generated-client-id-123"
        assert result.client_secret is None
        assert result.client_id_issued_at == 1640995200

    async def test_request_registers_a_public_client(self):
        # Arrange
        self.registration_service._http_client.post.return_value = httpx.Response(
            200, json={"client_id": "abc"}
        )

        # Act
        await self.registration_service.register_client(
            "https://auth.example.com/register", self.client_metadata
        )

        # Assert
        call_args = self.registration_service._http_client.post.call_args
        assert call_args[0][0] == "https://auth.example.com/register"
        body = call_args[1]["json"]
        assert body == {
            "client_name": "MCPeek",
            "redirect_uris": ["http://localhost:8765/oauth/callback"],
            "scope": "mcp:read mcp:write",
            "token_endpoint_auth_method": "none",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
        }
        assert call_args[1]["headers"]["Content-Type"] == "application/json"


class TestRegistrationErrors:
    def setup_method(self):
        self.registration_service = OAuth2Registration()
        self.registration_service._http_client = AsyncMock()
        self.client_metadata = ClientMetadata(
            client_name="MCPeek",
            redirect_uris=["http://localhost:8765/oauth/callback"],
        )

    async def test_invalid_redirect_uri_error(self):
        # Arrange
        self.registration_service._http_client.post.return_value = httpx.Response(
            400,
            json={
                "error": "invalid_redirect_uri",
                "error_description": "Loopback not allowed",
            },
        )

        # Act & Assert
        with pytest.raises(RegistrationError, match="Invalid redirect URI"):
            await self.registration_service.register_client(
                "https://auth.example.com/register", self.client_metadata
            )

    async def test_non_json_error_response(self):
        # Arrange
        self.registration_service._http_client.post.return_value = httpx.Response(
            503, text="Service Unavailable"
        )

        # Act & Assert
        with pytest.raises(RegistrationError, match="HTTP 503"):
            await self.registration_service.register_client(
                "https://auth.example.com/register", self.client_metadata
            )

    async def test_response_without_client_id(self):
        # Arrange
        self.registration_service._http_client.post.return_value = httpx.Response(
            201, json={"client_name": "MCPeek"}
        )

        # Act & Assert
        with pytest.raises(RegistrationError, match="Invalid registration response"):
            await self.registration_service.register_client(
                "https://auth.example.com/register", self.client_metadata
            )

    async def test_network_error(self):
        # Arrange
        self.registration_service._http_client.post.side_effect = httpx.ConnectError(
            "Connection refused"
        )

        # Act & Assert
        with pytest.raises(RegistrationError, match="HTTP error during registration"):
            await self.registration_service.register_client(
                "https://auth.example.com/register", self.client_metadata
            )
