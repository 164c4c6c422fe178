"""Client-side event stream management for the HTTP transport."""

import asyncio
import logging

import httpx
from httpx_sse import ServerSentEvent, aconnect_sse

from mcpeek.protocol.codec import MessageCodec
from mcpeek.protocol.errors import ProtocolError
from mcpeek.transport.base import ServerMessage

logger = logging.getLogger(__name__)


class StreamManager:
    """Runs GET event-stream listeners that feed the transport's queue."""

    def __init__(self, http_client: httpx.AsyncClient, codec: MessageCodec) -> None:
        """Initialize stream manager.

        Args:
            http_client: HTTP client to use for event-stream connections
            codec: Codec used to decode each event's data
        """
        self._http_client = http_client
        self._codec = codec
        self._listeners: set[asyncio.Task] = set()

    def start_stream_listener(
        self,
        url: str,
        headers: dict[str, str],
        message_queue: asyncio.Queue[ServerMessage],
    ) -> asyncio.Task:
        """Open a GET event stream on ``url`` and listen in the background.

        Returns:
            The asyncio task handling the stream listener
        """
        task = asyncio.create_task(
            self._listen_to_stream(url, headers, message_queue),
            name=f"event-stream-{url}",
        )
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

        logger.debug(f"Started stream listener for {url}")
        return task

    def stop_all_listeners(self) -> None:
        """Cancel every active listener, closing its connection."""
        cancelled_count = 0
        for task in list(self._listeners):
            if not task.done():
                task.cancel()
                cancelled_count += 1
        self._listeners.clear()

        if cancelled_count > 0:
            logger.debug(f"Cancelled {cancelled_count} stream listeners")

    @property
    def active_streams(self) -> int:
        return len([task for task in self._listeners if not task.done()])

    async def _listen_to_stream(
        self,
        url: str,
        headers: dict[str, str],
        message_queue: asyncio.Queue[ServerMessage],
    ) -> None:
        try:
            async with aconnect_sse(
                self._http_client, "GET", url, headers=headers
            ) as event_source:
                event_source.response.raise_for_status()
                async for sse_event in event_source.aiter_sse():
                    if sse_event.data:
                        await self._process_event(url, sse_event, message_queue)

        except asyncio.CancelledError:
            logger.debug(f"Stream listener for {url} was cancelled")
            raise
        except httpx.HTTPError as e:
            logger.error(f"Stream listener for {url} failed: {e}")
        finally:
            logger.debug(f"Stream listener for {url} closed")

    async def _process_event(
        self,
        url: str,
        sse_event: ServerSentEvent,
        message_queue: asyncio.Queue[ServerMessage],
    ) -> None:
        """Decode one event and queue the message.

        Undecodable events are logged and skipped so one bad frame does not
        end the stream.
        """
        try:
            envelope = self._codec.decode(sse_event.data, "application/json")
        except ProtocolError as e:
            logger.warning(f"Dropped event from {url}: {e}")
            return

        server_message = ServerMessage(
            envelope=envelope,
            timestamp=asyncio.get_running_loop().time(),
            metadata={"sse_event_id": sse_event.id} if sse_event.id else None,
        )
        await message_queue.put(server_message)

        logger.debug(f"Event from {url}: {envelope.method or 'response'}")

    def __repr__(self) -> str:
        return f"StreamManager(active_streams={self.active_streams})"
