"""JSON-RPC envelope encoding and decoding for both HTTP response shapes.

A server may answer a POST with a single JSON document or with an event
stream whose ``data:`` lines carry the same document. Callers never need to
know which one was used: both decode to the same ``Envelope``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any, Literal

from pydantic import ConfigDict, ValidationError

from mcpeek.protocol.base import JSONRPC_VERSION, ProtocolModel
from mcpeek.protocol.errors import ProtocolError, ProtocolErrorKind

logger = logging.getLogger(__name__)

RequestId = str | int


class Envelope(ProtocolModel):
    """One JSON-RPC 2.0 message: request, notification or response.

    An absent ``id`` (notification) is distinguished from ``"id": null``
    through ``model_fields_set``.
    """

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId | None = None
    method: str | None = None
    params: dict[str, Any] | list[Any] | None = None
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def request(
        cls, request_id: RequestId, method: str, params: dict[str, Any] | None = None
    ) -> Envelope:
        if params is None:
            return cls(id=request_id, method=method)
        return cls(id=request_id, method=method, params=params)

    @classmethod
    def notification(
        cls, method: str, params: dict[str, Any] | None = None
    ) -> Envelope:
        if params is None:
            return cls(method=method)
        return cls(method=method, params=params)

    @property
    def has_id(self) -> bool:
        return "id" in self.model_fields_set

    @property
    def is_request(self) -> bool:
        return self.method is not None and self.has_id

    @property
    def is_notification(self) -> bool:
        return self.method is not None and not self.has_id

    @property
    def is_response(self) -> bool:
        return self.method is None and (
            "result" in self.model_fields_set or "error" in self.model_fields_set
        )

    @property
    def is_error(self) -> bool:
        return self.is_response and self.error is not None

    def to_wire(self) -> dict[str, Any]:
        """Wire form: ``jsonrpc`` first, then only the fields that were set."""
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        wire.update(
            self.model_dump(exclude_unset=True, exclude={"jsonrpc"}, mode="json")
        )
        return wire


class MessageCodec:
    """Encodes outgoing envelopes and decodes incoming ones."""

    def encode(self, envelope: Envelope) -> str:
        """Encode an envelope as a compact JSON document."""
        return json.dumps(envelope.to_wire(), separators=(",", ":"))

    def encode_event(self, envelope: Envelope, event: str = "message") -> str:
        """Encode an envelope as a single event-stream frame."""
        return f"event: {event}\ndata: {self.encode(envelope)}\n\n"

    def decode(self, raw: str | bytes, content_type: str | None = None) -> Envelope:
        """Decode one envelope from a JSON body or an event-stream body.

        Args:
            raw: Response body
            content_type: Declared content type, if known. Without one the
                body is tried as JSON first, then as an event stream.

        Raises:
            ProtocolError: ``malformed`` when neither shape yields JSON,
                ``not-envelope`` when the JSON is not a JSON-RPC 2.0 envelope.
        """
        text = self._to_text(raw)
        kind = _content_kind(content_type)

        if kind == "json":
            document = self._parse_json(text)
        elif kind == "event-stream":
            document = self._parse_json(self._first_event_data(text))
        else:
            try:
                document = self._parse_json(text)
            except ProtocolError:
                document = self._parse_json(self._first_event_data(text))

        return self._to_envelope(document)

    def decode_stream(self, raw: str | bytes) -> list[Envelope]:
        """Decode every ``data:`` frame of an event-stream body, in order."""
        text = self._to_text(raw)
        envelopes = [
            self._to_envelope(self._parse_json(data))
            for data in self._iter_event_data(text)
        ]
        if not envelopes:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED, "event stream carries no data frames"
            )
        return envelopes

    def decode_document(self, document: Any) -> Envelope:
        """Validate an already-parsed JSON document as an envelope."""
        return self._to_envelope(document)

    # ================================
    # Helpers
    # ================================

    def _to_text(self, raw: str | bytes) -> str:
        if isinstance(raw, bytes):
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError(
                    ProtocolErrorKind.MALFORMED, f"body is not UTF-8: {e}"
                ) from e
        return raw

    def _parse_json(self, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED, f"invalid JSON: {e}"
            ) from e

    def _first_event_data(self, text: str) -> str:
        for data in self._iter_event_data(text):
            return data
        raise ProtocolError(ProtocolErrorKind.MALFORMED, "no data line found")

    def _iter_event_data(self, text: str) -> Iterator[str]:
        """Yield the data payload of each event in an event-stream body.

        Multiple ``data:`` lines of one event are joined with newlines. Other
        fields (``event:``, ``id:``, ``retry:``) and comments are ignored.
        """
        data_lines: list[str] = []
        for line in text.splitlines():
            if not line:
                if data_lines:
                    yield "\n".join(data_lines)
                    data_lines = []
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if field != "data":
                continue
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)

        if data_lines:
            yield "\n".join(data_lines)

    def _to_envelope(self, document: Any) -> Envelope:
        if not isinstance(document, dict):
            raise ProtocolError(
                ProtocolErrorKind.NOT_ENVELOPE, "JSON document is not an object"
            )
        if document.get("jsonrpc") != JSONRPC_VERSION:
            raise ProtocolError(
                ProtocolErrorKind.NOT_ENVELOPE,
                f"missing or wrong jsonrpc version: {document.get('jsonrpc')!r}",
            )
        if "result" in document and "error" in document:
            raise ProtocolError(
                ProtocolErrorKind.OUT_OF_CONTRACT,
                "response carries both result and error",
            )

        try:
            return Envelope.model_validate(document)
        except ValidationError as e:
            raise ProtocolError(
                ProtocolErrorKind.OUT_OF_CONTRACT, f"invalid envelope: {e}"
            ) from e


def _content_kind(content_type: str | None) -> str | None:
    if not content_type:
        return None
    content_type = content_type.lower()
    if "text/event-stream" in content_type:
        return "event-stream"
    if "json" in content_type:
        return "json"
    return None
