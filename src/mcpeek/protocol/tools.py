from typing import Any

from pydantic import Field

from mcpeek.protocol.base import ProtocolModel


class Tool(ProtocolModel):
    """A tool the server can invoke.

    ``input_schema`` is stored as sent. Its ``type`` and ``properties`` are
    expected to be object-typed, but validating that is left to consumers.
    """

    name: str
    description: str | None = None
    input_schema: Any = Field(default=None, alias="inputSchema")


class ListToolsResult(ProtocolModel):
    tools: list[Tool]
    next_cursor: str | None = Field(default=None, alias="nextCursor")


LIST_TOOLS = "tools/list"
CALL_TOOL = "tools/call"
