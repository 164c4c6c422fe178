"""OAuth 2.1 authorization flow service.

Builds the authorization URL for a prepared proof key and turns the consent
callback into an authorization code, or into the specific error that ended
the attempt.
"""

from __future__ import annotations

import logging

from mcpeek.auth.client.models.discovery import DiscoveryResult
from mcpeek.auth.client.models.errors import (
    AuthorizationError,
    ConsentCancelled,
    ConsentDenied,
)
from mcpeek.auth.client.models.flow import AuthorizationRequest, ConsentResult
from mcpeek.auth.client.models.security import PKCEParameters
from mcpeek.auth.client.primitives.pkce import PKCEManager
from mcpeek.auth.client.services.security import validate_state

logger = logging.getLogger(__name__)


class OAuth2FlowManager:
    """Orchestrates the browser leg of the authorization code flow."""

    def __init__(self, pkce_manager: PKCEManager | None = None):
        self._pkce_manager = pkce_manager or PKCEManager()

    def prepare_proof(self) -> PKCEParameters:
        return self._pkce_manager.generate_parameters()

    def build_authorization_url(
        self,
        discovery_result: DiscoveryResult,
        client_id: str,
        redirect_uri: str,
        pkce: PKCEParameters,
        scope: str | None = None,
    ) -> str:
        """Authorization URL carrying the S256 challenge and resource indicator."""
        auth_request = AuthorizationRequest(
            authorization_endpoint=(
                discovery_result.authorization_server_metadata.authorization_endpoint
            ),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.code_challenge_method,
            state=pkce.state,
            resource=discovery_result.get_resource_url(),
            scope=scope,
        )

        logger.debug(
            f"Built authorization URL for client {client_id} with resource "
            f"{auth_request.resource} scope={scope or 'none'}"
        )
        return auth_request.build_authorization_url()

    def extract_code(self, result: ConsentResult | None, expected_state: str) -> str:
        """Validate the consent callback and return its authorization code.

        Raises:
            ConsentCancelled: No callback arrived (abandoned or timed out)
            StateMismatch: The callback state differs from the one sent
            ConsentDenied: The authorization server returned an error
            AuthorizationError: The callback carries neither code nor error
        """
        if result is None:
            raise ConsentCancelled("User did not complete authorization")

        if result.is_error():
            # An error callback with a foreign state is a forgery, not a denial
            if result.state is not None:
                validate_state(expected_state, result.state)
            logger.warning(
                f"Authorization callback contained error: {result.error} - "
                f"{result.error_description}"
            )
            raise ConsentDenied(result.error, result.error_description)

        validate_state(expected_state, result.state)

        if result.code is None:
            raise AuthorizationError("Authorization callback missing code")

        logger.debug("Authorization callback carried a code")
        return result.code
