"""Shared protocol constants and the base model for MCP payloads."""

from pydantic import BaseModel, ConfigDict

PROTOCOL_VERSION = "2025-06-18"
JSONRPC_VERSION = "2.0"

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ProtocolModel(BaseModel):
    """Base for protocol payload models.

    Fields use snake_case in Python and camelCase aliases on the wire. Unknown
    fields are kept so nothing the server sends is silently dropped.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict:
        """Dump the model using wire aliases, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
