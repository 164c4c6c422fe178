from typing import Any

from pydantic import Field

from mcpeek.protocol.base import PROTOCOL_VERSION, ProtocolModel


class Implementation(ProtocolModel):
    """Name and version string of the server or client."""

    name: str
    version: str


class ClientCapabilities(ProtocolModel):
    """
    Capabilities that the client supports. Sent during initialization.
    """

    experimental: dict[str, Any] | None = None
    """
    Experimental or non-standard capabilities.
    """

    tools: dict[str, Any] = Field(default_factory=dict)
    """
    Tool discovery and invocation. Always an object, never an array.
    """


class InitializeParams(ProtocolModel):
    """Parameters of the ``initialize`` request."""

    protocol_version: str = Field(default=PROTOCOL_VERSION, alias="protocolVersion")
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    client_info: Implementation = Field(alias="clientInfo")


class InitializeResult(ProtocolModel):
    """
    The server's answer to ``initialize``.

    Capabilities are kept as the raw mapping the server sent. Checking their
    shape (e.g. ``tools`` being an object rather than an array) belongs to
    compliance tooling, not to the handshake.
    """

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    server_info: Implementation | None = Field(default=None, alias="serverInfo")
    instructions: str | None = None


INITIALIZE = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"
CANCELLED_NOTIFICATION = "notifications/cancelled"
