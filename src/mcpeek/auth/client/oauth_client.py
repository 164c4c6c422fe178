"""OAuth 2.1 authorization lifecycle for one MCP server.

Coordinates discovery, registration, proof-key preparation, consent, code
exchange, refresh and scope step-up, and keeps the resulting credentials in
the ephemeral and durable stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from mcpeek.auth.client.models.context import AuthorizationContext, AuthState
from mcpeek.auth.client.models.discovery import (
    DiscoveryResult,
    canonical_resource_uri,
)
from mcpeek.auth.client.models.errors import (
    AuthorizationError,
    OAuth2Error,
    PKCERejected,
    RefreshInvalid,
    RegistrationError,
    StateMismatch,
    StepUpExceeded,
    TokenError,
    TokenExchangeError,
    TokenRefreshError,
)
from mcpeek.auth.client.models.registration import ClientMetadata
from mcpeek.auth.client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
    TokenState,
)
from mcpeek.auth.client.primitives.challenge import AccessChallenge
from mcpeek.auth.client.primitives.discovery import OAuth2Discovery
from mcpeek.auth.client.services.consent import ConsentProvider
from mcpeek.auth.client.services.flow import OAuth2FlowManager
from mcpeek.auth.client.services.registration import OAuth2Registration
from mcpeek.auth.client.services.security import validate_redirect_uri
from mcpeek.auth.client.services.storage import (
    ACCESS_KEY,
    CLIENT_KEY,
    PKCE_KEY,
    REFRESH_KEY,
    CredentialStore,
    InMemoryCredentialStore,
)
from mcpeek.auth.client.services.tokens import OAuth2TokenManager

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://localhost:8765/oauth/callback"
MAX_STEP_UP_ATTEMPTS = 3


class AuthorizationManager:
    """Obtains and maintains a bearer credential for one MCP server.

    The session asks for the current token before each request
    (``get_access_token``) and hands over any 401/403 challenge it receives
    (``handle_challenge``). Everything else is internal.
    """

    def __init__(
        self,
        server_url: str,
        consent_provider: ConsentProvider,
        *,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        client_name: str = "MCPeek",
        scopes: str | None = None,
        client_id: str | None = None,
        ephemeral_store: CredentialStore | None = None,
        durable_store: CredentialStore | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        max_step_up_attempts: int = MAX_STEP_UP_ATTEMPTS,
    ):
        """Initialize the authorization manager.

        Args:
            server_url: MCP server URL; its canonical form is the identity
                used for the stores and the resource indicator
            consent_provider: Presents the authorization URL to the user
            redirect_uri: Redirect URI registered for the client
            client_name: Name sent on dynamic registration
            scopes: Scopes to request when a challenge names none
            client_id: Operator-supplied client id, used when dynamic
                registration is unavailable or fails
            ephemeral_store: Store for the access token and proof key
            durable_store: Store for the refresh token and client id
            timeout: Bound on each HTTP exchange in seconds
            http_client: Client shared by all OAuth services
            clock: Wall-clock source in seconds
            max_step_up_attempts: Step-ups allowed before StepUpExceeded
        Raises:
            ValueError: If redirect_uri is neither HTTPS nor HTTP loopback
        """
        if not validate_redirect_uri(redirect_uri):
            raise ValueError(
                f"Redirect URI must use HTTPS or an HTTP loopback host: {redirect_uri}"
            )

        self.server_url = server_url
        self.resource = canonical_resource_uri(server_url)
        self.redirect_uri = redirect_uri
        self.client_name = client_name
        self.scopes = scopes
        self.client_id = client_id
        self.max_step_up_attempts = max_step_up_attempts

        self._consent = consent_provider
        self._ephemeral = ephemeral_store or InMemoryCredentialStore()
        self._durable = durable_store or InMemoryCredentialStore()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._failed_refresh: tuple[str | None, float | None] | None = None

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.discovery = OAuth2Discovery(timeout, http_client=self._http_client)
        self.registration = OAuth2Registration(timeout, http_client=self._http_client)
        self.flow_manager = OAuth2FlowManager()
        self.token_manager = OAuth2TokenManager(timeout, http_client=self._http_client)

        self.context = AuthorizationContext(resource=self.resource)

    @property
    def state(self) -> AuthState:
        return self.context.state

    @property
    def tokens(self) -> TokenState:
        return self.context.tokens

    # ================================
    # Public operations
    # ================================

    async def get_access_token(self) -> str | None:
        """Current bearer token, refreshed first when it is due.

        Returns None when there is nothing to present, including after a
        refresh already failed for the current expiry window.

        Raises:
            RefreshInvalid: If the refresh token was rejected
            TokenRefreshError: If refreshing failed for another reason
        """
        async with self._lock:
            await self._load()
            tokens = self.context.tokens
            now = self._clock()

            if tokens.is_valid(now):
                return tokens.access_token
            if not tokens.needs_refresh(now):
                return None
            if self._failed_refresh == self._refresh_window():
                return None

            return await self._refresh()

    async def handle_challenge(
        self, challenge: AccessChallenge, rejected_token: str | None = None
    ) -> str:
        """Obtain a credential that answers an access challenge.

        401 runs a full authorization, unless another caller already obtained
        a valid token other than ``rejected_token`` while this one waited.
        403 with ``insufficient_scope`` steps up to the union of granted and
        required scopes. Any other 403 is final.

        Args:
            challenge: Parsed challenge from the 401/403 response
            rejected_token: Bearer token the rejected request carried, or
                None if it carried none

        Returns:
            Access token to retry the request with
        """
        async with self._lock:
            await self._load()

            if challenge.status_code == 401:
                tokens = self.context.tokens
                if (
                    tokens.is_valid(self._clock())
                    and tokens.access_token != rejected_token
                ):
                    logger.debug(
                        f"Reusing token obtained for {self.resource} while waiting"
                    )
                    return tokens.access_token

                logger.info(f"Server {self.resource} requires authorization")
                return await self._authorize(
                    challenge.scope, challenge.resource_metadata
                )

            if challenge.is_insufficient_scope:
                logger.info(
                    f"Server {self.resource} requires additional scopes: "
                    f"{challenge.scope or 'unspecified'}"
                )
                return await self._step_up(
                    challenge.required_scopes, challenge.resource_metadata
                )

            detail = challenge.error or "no error code"
            if challenge.error_description:
                detail += f" - {challenge.error_description}"
            raise AuthorizationError(f"Access to {self.resource} forbidden: {detail}")

    async def authorize(self, scope: str | None = None) -> str:
        """Run a full authorization now, regardless of stored credentials."""
        async with self._lock:
            await self._load()
            return await self._authorize(scope)

    async def refresh(self) -> str:
        """Refresh the access token now.

        Raises:
            RefreshInvalid: If the refresh token was rejected (credentials
                are cleared)
            TokenRefreshError: If there is nothing to refresh or it failed
        """
        async with self._lock:
            await self._load()
            return await self._refresh()

    async def step_up(self, required_scopes: list[str]) -> str:
        async with self._lock:
            await self._load()
            return await self._step_up(required_scopes)

    async def revoke(self) -> None:
        """Revoke the stored grant (best effort) and forget all credentials."""
        async with self._lock:
            await self._load()
            tokens = self.context.tokens
            token = tokens.refresh_token or tokens.access_token
            client_id = self.context.client_id or self.client_id

            if token and client_id:
                await self._revoke_remote(
                    token,
                    client_id,
                    "refresh_token" if tokens.refresh_token else "access_token",
                )

            await self._clear_credentials()
            self._set_state(AuthState.UNAUTHORIZED)
            logger.info(f"Revoked credentials for {self.resource}")

    async def close(self) -> None:
        """Close the services, and the HTTP client when this manager created it."""
        await self.discovery.close()
        await self.registration.close()
        await self.token_manager.close()
        if self._owns_client:
            await self._http_client.aclose()

    # ================================
    # Authorization cycle
    # ================================

    async def _authorize(
        self, scope: str | None = None, resource_metadata_url: str | None = None
    ) -> str:
        """Fresh authorization. Resets the step-up counter on success."""
        token = await self._run_authorization(
            scope or self.scopes, resource_metadata_url
        )
        self.context.step_up_attempts = 0
        return token

    async def _step_up(
        self, required_scopes: list[str], resource_metadata_url: str | None = None
    ) -> str:
        self.context.step_up_attempts += 1
        if self.context.step_up_attempts > self.max_step_up_attempts:
            logger.error(
                f"Step-up for {self.resource} exceeded "
                f"{self.max_step_up_attempts} attempts"
            )
            self._set_state(AuthState.FAILED)
            raise StepUpExceeded(
                f"Scope step-up for {self.resource} attempted "
                f"{self.context.step_up_attempts} times"
            )

        self._set_state(AuthState.STEPPING_UP)
        scopes = list(dict.fromkeys([*self._granted_scope_list(), *required_scopes]))
        return await self._run_authorization(
            " ".join(scopes) or None, resource_metadata_url
        )

    async def _run_authorization(
        self, scope: str | None, resource_metadata_url: str | None = None
    ) -> str:
        try:
            discovery = await self._discover(resource_metadata_url)
            client_id = await self._ensure_client(discovery)
            scope = scope or discovery.default_scope()

            response = await self._obtain_tokens(discovery, client_id, scope)

            await self._store_tokens(response, requested_scope=scope)
            self._set_state(AuthState.AUTHORIZED)
            logger.info(f"Authorized with {self.resource} (scope={scope or 'default'})")
            return self.context.tokens.access_token

        except (PKCERejected, StateMismatch) as e:
            logger.error(f"Authorization with {self.resource} failed: {e}")
            self._set_state(AuthState.FAILED)
            raise
        except OAuth2Error as e:
            logger.error(f"Authorization with {self.resource} failed: {e}")
            self._set_state(self._resting_state())
            raise

    async def _discover(self, resource_metadata_url: str | None = None) -> DiscoveryResult:
        if self.context.discovery is not None:
            return self.context.discovery

        self._set_state(AuthState.DISCOVERING_RESOURCE)
        prm = await self.discovery.discover_protected_resource(
            self.server_url, resource_metadata_url
        )

        self._set_state(AuthState.DISCOVERING_AUTH_SERVER)
        auth_server_url = str(prm.authorization_servers[0])
        asm = await self.discovery.discover_authorization_server(auth_server_url)

        self.context.discovery = DiscoveryResult(
            server_url=self.server_url,
            protected_resource_metadata=prm,
            authorization_server_metadata=asm,
            auth_server_url=auth_server_url,
        )
        return self.context.discovery

    async def _ensure_client(self, discovery: DiscoveryResult) -> str:
        """Stored client id, else a dynamically registered one, else the
        operator-supplied one."""
        if self.context.client_id:
            return self.context.client_id

        self._set_state(AuthState.REGISTERING)
        endpoint = discovery.authorization_server_metadata.registration_endpoint

        if endpoint:
            metadata = ClientMetadata(
                client_name=self.client_name,
                redirect_uris=[self.redirect_uri],
                scope=self.scopes,
            )
            try:
                credentials = await self.registration.register_client(endpoint, metadata)
            except RegistrationError as e:
                logger.warning(f"Dynamic registration failed, falling back: {e}")
            else:
                self.context.client_id = credentials.client_id
                await self._durable.set(self.resource, CLIENT_KEY, credentials.client_id)
                return credentials.client_id

        if self.client_id:
            logger.debug(f"Using configured client id for {self.resource}")
            self.context.client_id = self.client_id
            return self.client_id

        raise RegistrationError(
            f"No client id for {self.resource}: dynamic registration unavailable "
            "and none configured"
        )

    async def _obtain_tokens(
        self, discovery: DiscoveryResult, client_id: str, scope: str | None
    ) -> TokenResponse:
        """Proof key, consent and code exchange.

        The stored proof key is erased on every exit path.
        """
        self._set_state(AuthState.PREPARING_PROOF)
        pkce = self.flow_manager.prepare_proof()
        await self._ephemeral.set(self.resource, PKCE_KEY, pkce.to_stored())

        try:
            authorization_url = self.flow_manager.build_authorization_url(
                discovery, client_id, self.redirect_uri, pkce, scope
            )

            self._set_state(AuthState.AWAITING_CONSENT)
            result = await self._consent.request(authorization_url)

            stored = await self._ephemeral.get(self.resource, PKCE_KEY)
            if stored is None:
                raise AuthorizationError("Proof key was lost before code exchange")
            code = self.flow_manager.extract_code(result, stored["state"])

            self._set_state(AuthState.EXCHANGING_CODE)
            token_request = TokenRequest(
                token_endpoint=discovery.authorization_server_metadata.token_endpoint,
                code=code,
                redirect_uri=self.redirect_uri,
                client_id=client_id,
                code_verifier=stored["verifier"],
                resource=discovery.get_resource_url(),
            )
            try:
                response = await self.token_manager.exchange_code_for_token(
                    token_request
                )
            except TokenError as e:
                raise TokenExchangeError(str(e)) from e

        finally:
            await self._ephemeral.delete(self.resource, PKCE_KEY)

        if not response.is_success():
            raise TokenExchangeError(
                f"Token exchange failed: {response.error} - "
                f"{response.error_description or 'No description provided'}"
            )
        return response

    # ================================
    # Refresh
    # ================================

    async def _refresh(self) -> str:
        tokens = self.context.tokens
        if not tokens.refresh_token:
            raise TokenRefreshError(f"No refresh token for {self.resource}")

        discovery = await self._discover()
        client_id = self.context.client_id or self.client_id
        if client_id is None:
            raise TokenRefreshError(f"No client id to refresh {self.resource} with")

        window = self._refresh_window()
        self._set_state(AuthState.REFRESHING)
        refresh_request = RefreshTokenRequest(
            token_endpoint=discovery.authorization_server_metadata.token_endpoint,
            refresh_token=tokens.refresh_token,
            client_id=client_id,
            resource=discovery.get_resource_url(),
        )

        try:
            response = await self.token_manager.refresh_access_token(refresh_request)
        except TokenError as e:
            self._failed_refresh = window
            self._set_state(self._resting_state())
            raise TokenRefreshError(str(e)) from e

        if response.error == "invalid_grant":
            logger.warning(f"Refresh token for {self.resource} is no longer valid")
            await self._clear_credentials()
            self._set_state(AuthState.UNAUTHORIZED)
            raise RefreshInvalid(
                f"Refresh token rejected by {discovery.auth_server_url}: "
                f"{response.error_description or 'invalid_grant'}"
            )

        if not response.is_success():
            self._failed_refresh = window
            self._set_state(self._resting_state())
            raise TokenRefreshError(
                f"Token refresh failed: {response.error} - "
                f"{response.error_description or 'No description provided'}"
            )

        await self._store_tokens(response)
        self._failed_refresh = None
        self._set_state(AuthState.AUTHORIZED)
        logger.info(f"Refreshed access token for {self.resource}")
        return self.context.tokens.access_token

    def _refresh_window(self) -> tuple[str | None, float | None]:
        tokens = self.context.tokens
        return (tokens.refresh_token, tokens.expires_at)

    # ================================
    # Credential storage
    # ================================

    async def _load(self) -> None:
        """Populate the context from the stores on first use."""
        if self.context.loaded:
            return

        access = await self._ephemeral.get(self.resource, ACCESS_KEY)
        refresh = await self._durable.get(self.resource, REFRESH_KEY)
        self.context.tokens = TokenState.from_records(access, refresh)
        self.context.client_id = await self._durable.get(self.resource, CLIENT_KEY)
        self.context.loaded = True

        if self.context.tokens.access_token or self.context.tokens.refresh_token:
            self._set_state(AuthState.AUTHORIZED)
            logger.debug(f"Loaded stored credentials for {self.resource}")

    async def _store_tokens(
        self, response: TokenResponse, requested_scope: str | None = None
    ) -> None:
        tokens = self.context.tokens
        tokens.apply(response, self._clock())
        if response.scope is None and requested_scope:
            tokens.scope = requested_scope

        await self._ephemeral.set(self.resource, ACCESS_KEY, tokens.access_record())
        if tokens.refresh_token:
            await self._durable.set(self.resource, REFRESH_KEY, tokens.refresh_record())

    async def _clear_credentials(self) -> None:
        await self._ephemeral.delete(self.resource)
        await self._durable.delete(self.resource)
        self.context.reset_credentials()
        self._failed_refresh = None

    async def _revoke_remote(self, token: str, client_id: str, hint: str) -> None:
        try:
            discovery = await self._discover()
        except OAuth2Error as e:
            logger.debug(f"Skipping remote revocation for {self.resource}: {e}")
            return

        endpoint = discovery.authorization_server_metadata.revocation_endpoint
        if endpoint is None:
            logger.debug(f"{discovery.auth_server_url} has no revocation endpoint")
            return
        await self.token_manager.revoke_token(endpoint, token, client_id, hint)

    # ================================
    # Helpers
    # ================================

    def _granted_scope_list(self) -> list[str]:
        scope = self.context.tokens.scope
        return scope.split() if scope else []

    def _resting_state(self) -> AuthState:
        if self.context.tokens.access_token or self.context.tokens.refresh_token:
            return AuthState.AUTHORIZED
        return AuthState.UNAUTHORIZED

    def _set_state(self, new_state: AuthState) -> None:
        old_state = self.context.state
        if old_state is new_state:
            return
        self.context.state = new_state
        logger.debug(
            f"Authorization for {self.resource}: {old_state.value} -> {new_state.value}"
        )
