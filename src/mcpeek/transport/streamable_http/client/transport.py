"""HTTP client transport for MCP servers."""

import asyncio
import logging
from typing import Any, AsyncIterator
from urllib.parse import urlparse, urlunparse

import httpx

from mcpeek.auth.client.primitives.challenge import parse_www_authenticate
from mcpeek.protocol.base import PROTOCOL_VERSION
from mcpeek.protocol.codec import Envelope, MessageCodec
from mcpeek.protocol.errors import (
    AccessChallengeError,
    RequestTimeout,
    TransportError,
)
from mcpeek.transport.base import ClientTransport, ServerMessage, TransportMode
from mcpeek.transport.streamable_http.client.stream_manager import StreamManager

logger = logging.getLogger(__name__)


def detect_transport_mode(url: str) -> TransportMode:
    """Guess the transport mode from a server URL.

    Legacy event-stream servers conventionally expose their stream under an
    ``/sse`` path segment.
    """
    path = urlparse(url).path
    if "/sse" in path:
        return TransportMode.EVENT_STREAM
    return TransportMode.REQUEST_RESPONSE


def message_endpoint_for(url: str) -> str:
    """Derive the POST endpoint that pairs with an ``/sse`` stream URL."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(path=parsed.path.replace("/sse", "/mcp", 1)))


class HttpClientTransport(ClientTransport):
    """HTTP client transport for a single MCP server.

    Supports:
    - HTTP POST for sending messages, with JSON or event-stream reply bodies
    - A GET event stream for server-pushed messages (event-stream mode)
    - Session management with Mcp-Session-Id headers
    - Bearer credentials and structured access challenges (401/403)
    """

    def __init__(
        self,
        endpoint: str,
        headers: dict[str, str] | None = None,
        mode: TransportMode | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize HTTP client transport.

        Args:
            endpoint: Server URL. For event-stream servers this is the stream
                URL; messages are posted to its ``/mcp`` counterpart.
            headers: Additional HTTP headers sent with every request
            mode: Transport mode, detected from the URL when omitted
            timeout: Bound on each HTTP exchange in seconds
            http_client: Client to use instead of a private one

        Raises:
            ValueError: If endpoint is not an HTTP URL
        """
        if not isinstance(endpoint, str) or not endpoint.startswith(
            ("http://", "https://")
        ):
            raise ValueError("'endpoint' must be a valid HTTP URL")

        self.mode = mode or detect_transport_mode(endpoint)
        if self.mode is TransportMode.EVENT_STREAM:
            self.stream_url: str | None = endpoint
            self.endpoint = message_endpoint_for(endpoint)
        else:
            self.stream_url = None
            self.endpoint = endpoint

        self.timeout = timeout
        self._headers = dict(headers or {})
        self._session_id: str | None = None
        self._bearer_token: str | None = None
        self._codec = MessageCodec()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self._message_queue: asyncio.Queue[ServerMessage] = asyncio.Queue()
        self._stream_manager = StreamManager(self._http_client, self._codec)

        logger.debug(
            f"HTTP transport for {self.endpoint} in {self.mode.value} mode"
        )

    @property
    def session_id(self) -> str | None:
        return self._session_id

    # ================================
    # Transport Interface
    # ================================

    async def send(self, message: Envelope) -> None:
        """Send message to server via HTTP POST.

        Replies carried in the response body, JSON or event stream, are
        decoded and queued for ``server_messages``.

        Raises:
            AccessChallengeError: On 401/403
            RequestTimeout: If the exchange exceeds the timeout
            TransportError: On network failure or an unexpected status
            ProtocolError: If the reply body cannot be decoded
        """
        headers = self._build_headers()

        try:
            response = await self._http_client.post(
                self.endpoint,
                content=self._codec.encode(message),
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout(
                f"HTTP request to {self.endpoint} timed out after {self.timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"HTTP request to {self.endpoint} failed: {e}") from e

        self._handle_session_id(message, response)
        await self._handle_response(response)

    def server_messages(self) -> AsyncIterator[ServerMessage]:
        """Stream of messages from the server.

        Yields messages from the internal queue as they arrive from HTTP
        responses and the event stream.
        """
        return self._message_queue_iterator()

    def set_bearer_token(self, token: str | None) -> None:
        self._bearer_token = token

    async def start_event_stream(self) -> None:
        """Open the GET event stream used by event-stream servers.

        Does nothing in request-response mode.
        """
        if self.mode is not TransportMode.EVENT_STREAM or self.stream_url is None:
            return

        self._stream_manager.start_stream_listener(
            self.stream_url,
            headers=self._build_get_stream_headers(),
            message_queue=self._message_queue,
        )

    async def close(self) -> None:
        """Close streams, end the MCP session and release the HTTP client.

        Safe to call multiple times.
        """
        self._stream_manager.stop_all_listeners()

        if self._session_id is not None:
            await self._terminate_session()

        if self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            logger.debug("HTTP client closed")

    # ================================
    # Response Handling
    # ================================

    async def _handle_response(self, response: httpx.Response) -> None:
        """Handle the HTTP response based on status and content type.

        - 200 with application/json: a single JSON-RPC message
        - 200 with text/event-stream: one or more messages as event frames
        - 202: accepted (notifications)
        - 400: request defect, never retried
        - 401/403: access challenge
        - 404: session expired (if we sent a session ID)
        """
        status = response.status_code

        if status == 200:
            content_type = response.headers.get("content-type", "")
            if not response.content:
                return

            if "text/event-stream" in content_type:
                envelopes = self._codec.decode_stream(response.content)
            else:
                envelopes = [self._codec.decode(response.content, content_type)]

            for envelope in envelopes:
                await self._queue(envelope, content_type)

        elif status == 202:
            logger.debug(f"Server at {self.endpoint} accepted message (202)")

        elif status in (401, 403):
            challenge = parse_www_authenticate(
                response.headers.get("WWW-Authenticate"), status
            )
            logger.info(
                f"Access challenge from {self.endpoint}: HTTP {status}"
                f" scope={challenge.scope or 'none'}"
            )
            raise AccessChallengeError(status, challenge)

        elif status == 400:
            raise TransportError(
                f"Server at {self.endpoint} rejected the request (400): "
                f"{response.text or 'Bad Request'}",
                status_code=400,
            )

        elif status == 404 and "Mcp-Session-Id" in response.request.headers:
            self._session_id = None
            logger.info(f"Session expired for {self.endpoint}. Cleared session ID")
            raise TransportError(
                f"Session expired for {self.endpoint}. "
                "Must re-initialize with a new initialize request.",
                status_code=404,
            )

        else:
            raise TransportError(
                f"Server at {self.endpoint} returned HTTP {status}",
                status_code=status,
            )

    async def _queue(self, envelope: Envelope, content_type: str) -> None:
        server_message = ServerMessage(
            envelope=envelope,
            timestamp=asyncio.get_running_loop().time(),
            metadata={"content_type": content_type},
        )
        await self._message_queue.put(server_message)

    # ================================
    # Session Management
    # ================================

    def _handle_session_id(self, message: Envelope, response: httpx.Response) -> None:
        """Keep the session ID issued in the reply to ``initialize``."""
        if (
            message.method == "initialize"
            and response.status_code == 200
            and "Mcp-Session-Id" in response.headers
        ):
            self._session_id = response.headers["Mcp-Session-Id"]
            logger.debug(f"Established session for {self.endpoint}: {self._session_id}")

    async def _terminate_session(self) -> None:
        """Attempt graceful session termination via DELETE request."""
        headers = self._build_delete_headers()

        try:
            response = await self._http_client.delete(
                self.endpoint, headers=headers, timeout=5.0
            )
            if response.status_code == 200:
                logger.debug(f"Terminated session for {self.endpoint}")
            elif response.status_code == 405:
                logger.debug(
                    f"Server at {self.endpoint} does not support session termination"
                )
            else:
                logger.warning(
                    f"Unexpected response {response.status_code} when terminating "
                    f"session for {self.endpoint}"
                )
        except httpx.HTTPError as e:
            logger.debug(f"Failed to gracefully terminate session: {e}")
        finally:
            self._session_id = None

    # ================================
    # Build Headers
    # ================================

    def _build_headers(self) -> dict[str, str]:
        """Build headers for POST requests.

        - Content-Type: application/json
        - Accept: application/json, text/event-stream (support both replies)
        - MCP-Protocol-Version: current protocol version
        - Mcp-Session-Id: once the server issued one
        - Authorization: once a bearer credential is available
        - Any custom headers from configuration
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }
        self._add_common_headers(headers)
        return headers

    def _build_get_stream_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }
        self._add_common_headers(headers)
        return headers

    def _build_delete_headers(self) -> dict[str, str]:
        headers = {"MCP-Protocol-Version": PROTOCOL_VERSION}
        self._add_common_headers(headers)
        return headers

    def _add_common_headers(self, headers: dict[str, Any]) -> None:
        if self._session_id is not None:
            headers["Mcp-Session-Id"] = self._session_id
        if self._bearer_token:
            headers["Authorization"] = f"Bearer {self._bearer_token}"
        headers.update(self._headers)

    # ================================
    # Helper Methods
    # ================================

    async def _message_queue_iterator(self) -> AsyncIterator[ServerMessage]:
        """Yield queued messages until the consumer stops iterating."""
        while True:
            message = await self._message_queue.get()
            yield message
