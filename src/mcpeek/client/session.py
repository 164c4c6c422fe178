"""Client session for one MCP server.

Key components:
- Handshake: initialize, the initialized notification, then tool discovery
- Request tracking: session-issued ids correlated with responses in any order
- Authorization: bearer credentials and access challenges via an optional
  AuthorizationManager
- Callbacks: lifecycle events and unsolicited server messages
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from mcpeek.auth.client.models.errors import OAuth2Error
from mcpeek.auth.client.oauth_client import AuthorizationManager
from mcpeek.auth.client.services.consent import (
    ConsentProvider,
    LoopbackConsentProvider,
)
from mcpeek.auth.client.services.storage import (
    FileCredentialStore,
    InMemoryCredentialStore,
)
from mcpeek.client.callbacks import CallbackManager
from mcpeek.client.request_tracker import RequestTracker
from mcpeek.config import ClientSettings
from mcpeek.protocol.base import INTERNAL_ERROR, PROTOCOL_VERSION
from mcpeek.protocol.codec import Envelope, RequestId
from mcpeek.protocol.errors import (
    AccessChallengeError,
    MCPeekError,
    ProtocolError,
    ProtocolErrorKind,
    RemoteError,
    RequestTimeout,
    SessionStateError,
)
from mcpeek.protocol.initialization import (
    CANCELLED_NOTIFICATION,
    INITIALIZE,
    INITIALIZED_NOTIFICATION,
    ClientCapabilities,
    Implementation,
    InitializeParams,
    InitializeResult,
)
from mcpeek.protocol.tools import CALL_TOOL, LIST_TOOLS, ListToolsResult, Tool
from mcpeek.transport.base import ClientTransport
from mcpeek.transport.streamable_http.client.transport import HttpClientTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    NOTIFYING_READY = "notifying-ready"
    TOOLS_LISTED = "tools-listed"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ClientConfig:
    client_info: Implementation
    capabilities: ClientCapabilities = field(default_factory=ClientCapabilities)
    protocol_version: str = PROTOCOL_VERSION


class ClientSession:
    def __init__(
        self,
        transport: ClientTransport,
        config: ClientConfig | None = None,
        authorizer: AuthorizationManager | None = None,
        timeout: float = 30.0,
    ):
        self.transport = transport
        self.client_config = config or ClientConfig(
            client_info=Implementation(name="MCPeek", version="2.0.0")
        )
        self.authorizer = authorizer
        self.timeout = timeout

        self.callbacks = CallbackManager()
        self.requests = RequestTracker()

        self.state = SessionState.IDLE
        self.tools: list[Tool] = []
        self.server_result: InitializeResult | None = None

        self._next_id = 1
        self._message_loop_task: asyncio.Task[None] | None = None
        self._owns_authorizer = False

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        consent_provider: ConsentProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> ClientSession:
        """Wire transport, credential stores and authorization from settings."""
        transport = HttpClientTransport(
            settings.server_url,
            mode=settings.transport_mode,
            timeout=settings.timeout,
            http_client=http_client,
        )
        consent = consent_provider or LoopbackConsentProvider(
            settings.redirect_uri, timeout=settings.consent_timeout
        )
        authorizer = AuthorizationManager(
            settings.server_url,
            consent,
            redirect_uri=settings.redirect_uri,
            client_name=settings.client_name,
            scopes=settings.scopes,
            client_id=settings.client_id,
            ephemeral_store=InMemoryCredentialStore(),
            durable_store=FileCredentialStore(settings.credentials_path),
            timeout=settings.timeout,
            http_client=http_client,
        )
        config = ClientConfig(
            client_info=Implementation(
                name=settings.client_name, version=settings.client_version
            )
        )

        session = cls(
            transport, config, authorizer=authorizer, timeout=settings.timeout
        )
        session._owns_authorizer = True
        return session

    # ================================
    # Server description
    # ================================

    @property
    def server_info(self) -> Implementation | None:
        return self.server_result.server_info if self.server_result else None

    @property
    def server_capabilities(self) -> dict[str, Any]:
        return self.server_result.capabilities if self.server_result else {}

    @property
    def instructions(self) -> str | None:
        return self.server_result.instructions if self.server_result else None

    # ================================
    # Lifecycle
    # ================================

    async def connect(self, timeout: float | None = None) -> None:
        """Connect to the server and perform the MCP handshake.

        1. Send ``initialize`` with client info and capabilities
        2. Record the server's self-description
        3. Send ``notifications/initialized`` exactly once
        4. Open the server event stream (event-stream servers only)
        5. Discover tools

        Args:
            timeout: How long to wait for each handshake response (seconds).
                Defaults to the session timeout.

        Raises:
            SessionStateError: If the session is not idle
            RequestTimeout: If the server didn't respond in time
            TransportError: Network failure or the server rejected a request
            ProtocolError: The server's replies break the protocol
            RemoteError: The server answered the handshake with an error
            OAuth2Error: Authorization was required and failed
        """
        if self.state is SessionState.READY:
            return
        if self.state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot connect from state {self.state.value}")

        timeout = timeout or self.timeout
        await self._set_state(SessionState.INITIALIZING)
        self._start_message_loop()

        try:
            await self._do_handshake(timeout)
        except Exception as e:
            await self._fail(e)
            raise

        await self.callbacks.call_connected(self.server_result)

    async def _do_handshake(self, timeout: float) -> None:
        params = InitializeParams(
            protocol_version=self.client_config.protocol_version,
            capabilities=self.client_config.capabilities,
            client_info=self.client_config.client_info,
        )
        result = await self._request(
            INITIALIZE, params.to_wire(), timeout, InitializeResult
        )
        self.server_result = result
        self._check_protocol_version(result)
        await self._set_state(SessionState.INITIALIZED)

        await self._send(Envelope.notification(INITIALIZED_NOTIFICATION))
        await self._set_state(SessionState.NOTIFYING_READY)

        await self.transport.start_event_stream()
        await self._list_tools(timeout)

    def _check_protocol_version(self, result: InitializeResult) -> None:
        """A differing server version is reported, not rejected."""
        if result.protocol_version != self.client_config.protocol_version:
            logger.warning(
                "Protocol version mismatch: client="
                f"{self.client_config.protocol_version}, "
                f"server={result.protocol_version}"
            )

    async def disconnect(self) -> None:
        """Tear the session down. Pending calls fail with ``Cancelled``.

        Safe to call from any state and multiple times.
        """
        if self.state is SessionState.CLOSED:
            return

        await self._stop_message_loop()
        self.requests.fail_all("Session closed")
        await self.transport.close()
        if self._owns_authorizer and self.authorizer is not None:
            await self.authorizer.close()

        self.tools = []
        self.server_result = None

        await self._set_state(SessionState.CLOSED)
        await self.callbacks.call_disconnected()

    async def __aenter__(self) -> ClientSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # ================================
    # Tools
    # ================================

    async def list_tools(self, timeout: float | None = None) -> list[Tool]:
        """Fetch the full tool catalog, following ``nextCursor`` pages.

        Raises:
            SessionStateError: Before the initialized notification was sent
        """
        if self.state not in (SessionState.NOTIFYING_READY, SessionState.READY):
            raise SessionStateError(f"Cannot list tools in state {self.state.value}")
        return await self._list_tools(timeout or self.timeout)

    async def _list_tools(self, timeout: float) -> list[Tool]:
        tools: list[Tool] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()

        while True:
            params = {"cursor": cursor} if cursor else None
            result = await self._request(LIST_TOOLS, params, timeout, ListToolsResult)
            tools.extend(result.tools)

            cursor = result.next_cursor
            if not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)

        self.tools = tools
        await self._set_state(SessionState.TOOLS_LISTED)
        await self.callbacks.call_tools_received(tools)
        await self._set_state(SessionState.READY)
        logger.info(f"Discovered {len(tools)} tools")
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a tool and return the raw ``tools/call`` result."""
        return await self.call(
            CALL_TOOL, {"name": name, "arguments": arguments or {}}, timeout
        )

    # ================================
    # Requests and notifications
    # ================================

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        result_type: type[BaseModel] | None = None,
    ) -> Any:
        """Send a request and wait for its response.

        Args:
            method: JSON-RPC method name
            params: Request parameters
            timeout: Seconds to wait for the response. Defaults to the
                session timeout.
            result_type: Model to validate the result with. The raw result
                is returned when omitted.

        Raises:
            SessionStateError: If the session is not ready
            RemoteError: The server answered with a JSON-RPC error
            RequestTimeout: No response in time; a cancellation is sent
            Cancelled: The session was torn down while waiting
        """
        if self.state is not SessionState.READY:
            raise SessionStateError(f"Cannot call {method} in state {self.state.value}")
        return await self._request(method, params, timeout or self.timeout, result_type)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification. No id is allocated and no response is awaited."""
        if self.state in (SessionState.IDLE, SessionState.FAILED, SessionState.CLOSED):
            raise SessionStateError(f"Cannot notify in state {self.state.value}")
        await self._send(Envelope.notification(method, params))

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None,
        timeout: float,
        result_type: type[BaseModel] | None = None,
    ) -> Any:
        request_id = self._allocate_id()
        pending = self.requests.track(request_id, method, result_type)

        try:
            await self._send(Envelope.request(request_id, method, params))
            response = await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError as e:
            await self._send_cancellation(request_id, method)
            raise RequestTimeout(
                f"Request {method} ({request_id}) timed out after {timeout}s"
            ) from e
        finally:
            self.requests.untrack(request_id)

        return self._unwrap(response, result_type)

    def _allocate_id(self) -> RequestId:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def _unwrap(
        self, response: Envelope, result_type: type[BaseModel] | None
    ) -> Any:
        if response.error is not None:
            error = response.error
            raise RemoteError(
                code=error.get("code", INTERNAL_ERROR),
                message=error.get("message", ""),
                data=error.get("data"),
            )

        if result_type is None:
            return response.result
        try:
            return result_type.model_validate(response.result)
        except ValidationError as e:
            raise ProtocolError(
                ProtocolErrorKind.OUT_OF_CONTRACT,
                f"{result_type.__name__} does not match the result: {e}",
            ) from e

    async def _send(self, envelope: Envelope) -> None:
        """Send one envelope with the current credential.

        An access challenge is handed to the authorizer and the same envelope
        is re-sent once. A second challenge propagates.
        """
        presented: str | None = None
        if self.authorizer is not None:
            try:
                presented = await self.authorizer.get_access_token()
            except OAuth2Error as e:
                await self.callbacks.call_error(e)
                raise
            self.transport.set_bearer_token(presented)

        try:
            await self.transport.send(envelope)
            return
        except AccessChallengeError as e:
            if self.authorizer is None:
                raise
            challenge = e.challenge

        await self.callbacks.call_authorization_required(
            challenge.status_code, challenge.scope
        )
        try:
            token = await self.authorizer.handle_challenge(
                challenge, rejected_token=presented
            )
        except OAuth2Error as e:
            await self.callbacks.call_error(e)
            raise

        self.transport.set_bearer_token(token)
        await self.transport.send(envelope)

    async def _send_cancellation(self, request_id: RequestId, method: str) -> None:
        """Tell the server a timed-out request is abandoned.

        Note: Won't try to cancel initialization requests.
        """
        if method == INITIALIZE:
            return
        try:
            await self._send(
                Envelope.notification(
                    CANCELLED_NOTIFICATION,
                    {"requestId": request_id, "reason": "Request timed out"},
                )
            )
        except MCPeekError as e:
            logger.error(f"Error sending cancellation for request {request_id}: {e}")

    # ================================
    # Message loop
    # ================================

    def _start_message_loop(self) -> None:
        if self._message_loop_task is not None and not self._message_loop_task.done():
            return
        self._message_loop_task = asyncio.create_task(self._message_loop())

    async def _stop_message_loop(self) -> None:
        if self._message_loop_task is None:
            return

        self._message_loop_task.cancel()
        try:
            await self._message_loop_task
        except asyncio.CancelledError:
            pass
        self._message_loop_task = None

    async def _message_loop(self) -> None:
        """Dispatches incoming messages until cancelled or the transport fails.

        Individual message handling errors are logged and don't interrupt
        the loop.
        """
        try:
            async for server_message in self.transport.server_messages():
                try:
                    await self._dispatch(server_message.envelope)
                except Exception as e:
                    logger.warning(f"Error handling server message: {e}")
        except MCPeekError as e:
            logger.error(f"Transport error: {e}")

    async def _dispatch(self, envelope: Envelope) -> None:
        """Route one envelope along exactly one path.

        (a) its id matches a pending call
        (b) it is a response whose result has the shape of an in-flight
            handshake call
        (c) otherwise it goes to the message callback
        """
        if envelope.is_response and envelope.has_id and envelope.id in self.requests:
            self.requests.resolve(envelope.id, envelope)
            return

        if envelope.is_response:
            flow_call = self.requests.find_flow_call(envelope)
            if flow_call is not None:
                logger.debug(
                    f"Response with id {envelope.id!r} matched in-flight "
                    f"{flow_call.method} ({flow_call.id!r}) by shape"
                )
                self.requests.resolve(flow_call.id, envelope)
                return

        await self.callbacks.call_message(envelope)

    # ================================
    # State
    # ================================

    async def _set_state(self, new_state: SessionState) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        logger.info(f"Session state: {old_state.value} -> {new_state.value}")
        await self.callbacks.call_state_changed(old_state.value, new_state.value)

    async def _fail(self, error: Exception) -> None:
        logger.error(f"Session failed: {error}")
        await self._set_state(SessionState.FAILED)
        if not isinstance(error, OAuth2Error):
            await self.callbacks.call_error(error)
        await self._stop_message_loop()
        self.requests.fail_all("Session failed")
        await self.transport.close()
