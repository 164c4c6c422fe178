"""Client transport protocol - one client talking to one MCP server."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

from mcpeek.protocol.codec import Envelope


class TransportMode(str, Enum):
    """How the server delivers its replies."""

    REQUEST_RESPONSE = "request-response"
    EVENT_STREAM = "event-stream"


@dataclass
class ServerMessage:
    """Decoded message from the server with delivery context."""

    envelope: Envelope
    timestamp: float
    metadata: dict[str, Any] | None = None


class ClientTransport(ABC):
    """Transport for a client session bound to a single server.

    Focuses purely on message passing: the session layer owns the handshake,
    id allocation and response correlation. Replies to a send are not returned
    from ``send``; they arrive through ``server_messages``.
    """

    mode: TransportMode = TransportMode.REQUEST_RESPONSE

    @abstractmethod
    async def send(self, message: Envelope) -> None:
        """Send a message to the server.

        Raises:
            AccessChallengeError: If the server answers 401 or 403
            TransportError: If the exchange fails for any other reason
            ProtocolError: If the server's reply cannot be decoded
        """
        ...

    @abstractmethod
    def server_messages(self) -> AsyncIterator[ServerMessage]:
        """Stream of messages from the server.

        Yields:
            ServerMessage: Decoded envelope with delivery metadata
        """
        ...

    @abstractmethod
    def set_bearer_token(self, token: str | None) -> None:
        """Present ``token`` on subsequent requests, or nothing if None."""
        ...

    async def start_event_stream(self) -> None:
        """Open the server-to-client event stream, if the mode has one."""
        return None

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources. Safe to call repeatedly."""
        ...
