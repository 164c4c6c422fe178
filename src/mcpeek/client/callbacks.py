import logging
from typing import Awaitable, Callable

from mcpeek.protocol.codec import Envelope
from mcpeek.protocol.initialization import InitializeResult
from mcpeek.protocol.tools import Tool

logger = logging.getLogger(__name__)


class CallbackManager:
    """Manages event callbacks for session lifecycle changes.

    Callback failures are logged and never propagate into the session.
    """

    def __init__(self):
        self._connected: Callable[[InitializeResult], Awaitable[None]] | None = None
        self._disconnected: Callable[[], Awaitable[None]] | None = None
        self._tools_received: Callable[[list[Tool]], Awaitable[None]] | None = None
        self._message: Callable[[Envelope], Awaitable[None]] | None = None
        self._error: Callable[[Exception], Awaitable[None]] | None = None
        self._authorization_required: (
            Callable[[int, str | None], Awaitable[None]] | None
        ) = None
        self._state_changed: Callable[[str, str], Awaitable[None]] | None = None

    # ================================
    # Registration
    # ================================

    def on_connected(
        self, callback: Callable[[InitializeResult], Awaitable[None]]
    ) -> None:
        """Register your callback for a completed handshake.

        Receives the server's initialize result once the tool catalog is in.
        """
        self._connected = callback

    def on_disconnected(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._disconnected = callback

    def on_tools_received(
        self, callback: Callable[[list[Tool]], Awaitable[None]]
    ) -> None:
        """Register your callback for the discovered tool catalog."""
        self._tools_received = callback

    def on_message(self, callback: Callable[[Envelope], Awaitable[None]]) -> None:
        """Register your callback for messages no pending request claimed.

        Server notifications, server requests and responses nobody is waiting
        for all arrive here.
        """
        self._message = callback

    def on_error(self, callback: Callable[[Exception], Awaitable[None]]) -> None:
        self._error = callback

    def on_authorization_required(
        self, callback: Callable[[int, str | None], Awaitable[None]]
    ) -> None:
        """Register your callback for access challenges.

        Receives the HTTP status (401 or 403) and the scope hint, if any,
        before authorization starts.
        """
        self._authorization_required = callback

    def on_state_changed(self, callback: Callable[[str, str], Awaitable[None]]) -> None:
        """Register your callback for session state transitions (old, new)."""
        self._state_changed = callback

    # ================================
    # Invocation
    # ================================

    async def call_connected(self, result: InitializeResult) -> None:
        if self._connected:
            try:
                await self._connected(result)
            except Exception as e:
                logger.warning(f"Connected callback failed: {e}")

    async def call_disconnected(self) -> None:
        if self._disconnected:
            try:
                await self._disconnected()
            except Exception as e:
                logger.warning(f"Disconnected callback failed: {e}")

    async def call_tools_received(self, tools: list[Tool]) -> None:
        if self._tools_received:
            try:
                await self._tools_received(tools)
            except Exception as e:
                logger.warning(f"Tools received callback failed: {e}")

    async def call_message(self, envelope: Envelope) -> None:
        if self._message:
            try:
                await self._message(envelope)
            except Exception as e:
                logger.warning(f"Message callback failed: {e}")

    async def call_error(self, error: Exception) -> None:
        if self._error:
            try:
                await self._error(error)
            except Exception as e:
                logger.warning(f"Error callback failed: {e}")

    async def call_authorization_required(
        self, status_code: int, scope: str | None
    ) -> None:
        if self._authorization_required:
            try:
                await self._authorization_required(status_code, scope)
            except Exception as e:
                logger.warning(f"Authorization required callback failed: {e}")

    async def call_state_changed(self, old_state: str, new_state: str) -> None:
        if self._state_changed:
            try:
                await self._state_changed(old_state, new_state)
            except Exception as e:
                logger.warning(f"State changed callback failed: {e}")
