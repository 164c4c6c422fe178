import asyncio
import time
from typing import Any, AsyncIterator, Callable

import pytest

from mcpeek.client.session import ClientSession
from mcpeek.protocol.codec import Envelope, MessageCodec
from mcpeek.protocol.errors import TransportError
from mcpeek.transport.base import ClientTransport, ServerMessage

Reply = Callable[[Envelope], dict[str, Any] | None]


class MockClientTransport(ClientTransport):
    """Mock transport for testing ClientSession against one scripted server."""

    def __init__(self):
        self.sent_messages: list[Envelope] = []
        self.sent_tokens: list[str | None] = []
        self.server_message_queue: asyncio.Queue[ServerMessage] = asyncio.Queue()
        self.replies: dict[str, Reply] = {}
        self.send_errors: list[Exception] = []
        self.bearer_token: str | None = None
        self.event_stream_started = False
        self.closed = False
        self._codec = MessageCodec()
        self._should_raise_error = False

    async def send(self, message: Envelope) -> None:
        """Record the message and queue the scripted reply, if any."""
        if self._should_raise_error:
            raise TransportError("Transport error")
        if self.send_errors:
            raise self.send_errors.pop(0)

        self.sent_messages.append(message)
        self.sent_tokens.append(self.bearer_token)

        if message.is_request and message.method in self.replies:
            reply = self.replies[message.method](message)
            if reply is not None:
                self.add_server_message(reply)

    def server_messages(self) -> AsyncIterator[ServerMessage]:
        return self._server_message_iterator()

    async def _server_message_iterator(self) -> AsyncIterator[ServerMessage]:
        while True:
            if self._should_raise_error:
                raise TransportError("Transport error")
            try:
                message = await asyncio.wait_for(
                    self.server_message_queue.get(), timeout=0.01
                )
                yield message
            except asyncio.TimeoutError:
                continue

    def set_bearer_token(self, token: str | None) -> None:
        self.bearer_token = token

    async def start_event_stream(self) -> None:
        self.event_stream_started = True

    async def close(self) -> None:
        self.closed = True

    # Helper methods for testing
    def add_server_message(self, payload: dict[str, Any]) -> None:
        """Simulate receiving a message from the server."""
        message = ServerMessage(
            envelope=self._codec.decode_document(payload),
            timestamp=time.time(),
            metadata=None,
        )
        self.server_message_queue.put_nowait(message)

    def reply_with_result(self, method: str, result: dict[str, Any]) -> None:
        """Answer every ``method`` request with ``result``."""
        self.replies[method] = lambda request: {
            "jsonrpc": "2.0",
            "id": request.id,
            "result": result,
        }

    def reply_with_error(self, method: str, code: int, message: str) -> None:
        self.replies[method] = lambda request: {
            "jsonrpc": "2.0",
            "id": request.id,
            "error": {"code": code, "message": message},
        }

    def simulate_error(self) -> None:
        """Simulate a transport error."""
        self._should_raise_error = True

    def get_sent_messages(self, method: str | None = None) -> list[Envelope]:
        if method is None:
            return list(self.sent_messages)
        return [m for m in self.sent_messages if m.method == method]

    def sent_methods(self) -> list[str | None]:
        return [m.method for m in self.sent_messages]


INITIALIZE_RESULT = {
    "protocolVersion": "2025-06-18",
    "capabilities": {"tools": {"listChanged": True}},
    "serverInfo": {"name": "weather-server", "version": "1.4.0"},
    "instructions": "Ask about the weather.",
}

TOOLS_RESULT = {
    "tools": [
        {
            "name": "get_forecast",
            "description": "Forecast for a city",
            "inputSchema": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
            },
        },
        {"name": "get_alerts", "inputSchema": {"type": "object", "properties": {}}},
    ]
}


@pytest.fixture
def mock_transport() -> MockClientTransport:
    """Transport scripted with a well-behaved handshake."""
    transport = MockClientTransport()
    transport.reply_with_result("initialize", INITIALIZE_RESULT)
    transport.reply_with_result("tools/list", TOOLS_RESULT)
    return transport


@pytest.fixture
async def session(mock_transport):
    session = ClientSession(mock_transport, timeout=1.0)
    yield session
    await session.disconnect()


async def yield_to_event_loop(seconds: float = 0.01) -> None:
    """Let the event loop process pending tasks and callbacks.

    Args:
        seconds: Small delay to ensure async operations settle.
                Defaults to 10ms - enough for most async operations.
    """
    await asyncio.sleep(seconds)


@pytest.fixture
def yield_loop():
    """Helper to yield to event loop in tests."""
    return yield_to_event_loop


@pytest.fixture
def initialize_result() -> dict[str, Any]:
    return dict(INITIALIZE_RESULT)
