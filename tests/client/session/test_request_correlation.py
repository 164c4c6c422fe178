"""Tests for request ids, response correlation, timeouts and notifications."""

import asyncio

import pytest

from mcpeek.client.session import SessionState
from mcpeek.protocol.errors import (
    RemoteError,
    RequestTimeout,
    SessionStateError,
)
from mcpeek.protocol.tools import ListToolsResult


class TestRequestIds:
    async def test_ids_are_strictly_increasing_across_the_session(
        self, session, mock_transport
    ):
        # Arrange
        mock_transport.reply_with_result("ping", {})
        await session.connect()

        # Act
        await session.call("ping")
        await session.call("ping")

        # Assert
        ids = [m.id for m in mock_transport.sent_messages if m.has_id]
        assert ids == [1, 2, 3, 4]
        assert len(set(ids)) == len(ids)

    async def test_notifications_do_not_consume_ids(self, session, mock_transport):
        # Arrange
        mock_transport.reply_with_result("ping", {})
        await session.connect()

        # Act
        await session.notify("notifications/progress", {"progress": 0.5})
        await session.call("ping")

        # Assert
        notification = mock_transport.get_sent_messages("notifications/progress")[0]
        assert not notification.has_id
        assert mock_transport.get_sent_messages("ping")[0].id == 3
        assert len(session.requests) == 0


class TestResponseCorrelation:
    async def test_out_of_order_responses_reach_their_callers(
        self, session, mock_transport, yield_loop
    ):
        # Arrange
        await session.connect()
        first = asyncio.create_task(session.call("echo", {"n": 1}))
        second = asyncio.create_task(session.call("echo", {"n": 2}))
        await yield_loop()
        first_id, second_id = [m.id for m in mock_transport.get_sent_messages("echo")]

        # Act
        mock_transport.add_server_message(
            {"jsonrpc": "2.0", "id": second_id, "result": {"n": 2}}
        )
        mock_transport.add_server_message(
            {"jsonrpc": "2.0", "id": first_id, "result": {"n": 1}}
        )

        # Assert
        assert await first == {"n": 1}
        assert await second == {"n": 2}

    async def test_error_response_raises_remote_error(self, session, mock_transport):
        # Arrange
        mock_transport.reply_with_error("missing", -32601, "Method not found")
        await session.connect()

        # Act & Assert
        with pytest.raises(RemoteError) as exc_info:
            await session.call("missing")

        assert exc_info.value.code == -32601
        assert exc_info.value.message == "Method not found"
        assert session.state is SessionState.READY

    async def test_result_is_validated_when_a_type_is_given(
        self, session, mock_transport
    ):
        # Arrange
        await session.connect()

        # Act
        result = await session.call("tools/list", result_type=ListToolsResult)

        # Assert
        assert isinstance(result, ListToolsResult)
        assert result.tools[1].name == "get_alerts"

    async def test_call_tool_sends_name_and_arguments(self, session, mock_transport):
        # Arrange
        mock_transport.reply_with_result(
            "tools/call", {"content": [{"type": "text", "text": "Sunny"}]}
        )
        await session.connect()

        # Act
        result = await session.call_tool("get_forecast", {"city": "Oslo"})

        # Assert
        request = mock_transport.get_sent_messages("tools/call")[0]
        assert request.params == {"name": "get_forecast", "arguments": {"city": "Oslo"}}
        assert result["content"][0]["text"] == "Sunny"


class TestTimeouts:
    async def test_timeout_raises_and_sends_cancellation(
        self, session, mock_transport
    ):
        # Arrange
        await session.connect()

        # Act & Assert
        with pytest.raises(RequestTimeout):
            await session.call("slow/operation", timeout=0.05)

        cancellation = mock_transport.get_sent_messages("notifications/cancelled")
        assert len(cancellation) == 1
        assert cancellation[0].params["requestId"] == 3
        assert 3 not in session.requests

    async def test_late_response_after_timeout_goes_to_message_callback(
        self, session, mock_transport, yield_loop
    ):
        # Arrange
        received = []

        async def on_message(envelope):
            received.append(envelope)

        session.callbacks.on_message(on_message)
        await session.connect()
        with pytest.raises(RequestTimeout):
            await session.call("slow/operation", timeout=0.05)

        # Act
        mock_transport.add_server_message(
            {"jsonrpc": "2.0", "id": 3, "result": {"late": True}}
        )
        await yield_loop(0.05)

        # Assert
        assert [envelope.id for envelope in received] == [3]


class TestStateGuards:
    async def test_call_before_connect_raises(self, session):
        # Act & Assert
        with pytest.raises(SessionStateError):
            await session.call("ping")

    async def test_notify_before_connect_raises(self, session):
        # Act & Assert
        with pytest.raises(SessionStateError):
            await session.notify("notifications/progress")
