"""Tests for session teardown and the authorization hooks around sending."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from mcpeek.auth.client.models.errors import ConsentDenied
from mcpeek.auth.client.primitives.challenge import parse_www_authenticate
from mcpeek.client.session import ClientSession, SessionState
from mcpeek.protocol.errors import (
    AccessChallengeError,
    Cancelled,
    SessionStateError,
)


def _challenge(status: int, header: str) -> AccessChallengeError:
    return AccessChallengeError(status, parse_www_authenticate(header, status))


class TestDisconnect:
    async def test_disconnect_cancels_pending_calls(
        self, session, mock_transport, yield_loop
    ):
        # Arrange
        await session.connect()
        pending = asyncio.create_task(session.call("slow/operation"))
        await yield_loop()

        # Act
        await session.disconnect()

        # Assert
        with pytest.raises(Cancelled):
            await pending
        assert len(session.requests) == 0

    async def test_disconnect_closes_transport_and_clears_state(
        self, session, mock_transport
    ):
        # Arrange
        disconnected = AsyncMock()
        session.callbacks.on_disconnected(disconnected)
        await session.connect()

        # Act
        await session.disconnect()

        # Assert
        assert mock_transport.closed
        assert session.state is SessionState.CLOSED
        assert session.tools == []
        assert session.server_info is None
        disconnected.assert_awaited_once()

    async def test_disconnect_twice_is_safe(self, session):
        # Arrange
        await session.connect()
        await session.disconnect()

        # Act
        await session.disconnect()

        # Assert
        assert session.state is SessionState.CLOSED

    async def test_closed_session_rejects_calls(self, session):
        # Arrange
        await session.connect()
        await session.disconnect()

        # Act & Assert
        with pytest.raises(SessionStateError):
            await session.call("ping")

    async def test_async_context_manager_connects_and_disconnects(
        self, mock_transport
    ):
        # Act
        async with ClientSession(mock_transport, timeout=1.0) as session:
            state_inside = session.state

        # Assert
        assert state_inside is SessionState.READY
        assert session.state is SessionState.CLOSED


class TestAuthorizationHooks:
    def setup_method(self):
        self.authorizer = AsyncMock()
        self.authorizer.get_access_token.return_value = "stored-token"
        self.authorizer.handle_challenge.return_value = "fresh-token"

    async def test_current_token_is_presented_on_every_send(self, mock_transport):
        # Arrange
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)

        # Act
        await session.connect()

        # Assert
        assert mock_transport.sent_tokens == ["stored-token"] * 3
        await session.disconnect()

    async def test_unauthorized_send_is_retried_once_with_new_token(
        self, mock_transport
    ):
        # Arrange
        mock_transport.send_errors.append(
            _challenge(401, 'Bearer resource_metadata="https://mcp.example.com/prm"')
        )
        required = AsyncMock()
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)
        session.callbacks.on_authorization_required(required)

        # Act
        await session.connect()

        # Assert
        self.authorizer.handle_challenge.assert_awaited_once()
        challenge = self.authorizer.handle_challenge.await_args.args[0]
        assert challenge.resource_metadata == "https://mcp.example.com/prm"
        required.assert_awaited_once_with(401, None)
        assert len(mock_transport.get_sent_messages("initialize")) == 1
        assert mock_transport.sent_tokens[0] == "fresh-token"
        assert session.state is SessionState.READY
        await session.disconnect()

    async def test_challenge_names_the_token_that_was_rejected(self, mock_transport):
        # Arrange
        mock_transport.send_errors.append(
            _challenge(401, 'Bearer resource_metadata="https://mcp.example.com/prm"')
        )
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)

        # Act
        await session.connect()

        # Assert
        kwargs = self.authorizer.handle_challenge.await_args.kwargs
        assert kwargs["rejected_token"] == "stored-token"
        await session.disconnect()

    async def test_second_challenge_propagates(self, mock_transport):
        # Arrange
        mock_transport.send_errors.extend(
            [_challenge(401, "Bearer"), _challenge(401, "Bearer")]
        )
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)

        # Act & Assert
        with pytest.raises(AccessChallengeError):
            await session.connect()

        self.authorizer.handle_challenge.assert_awaited_once()
        assert session.state is SessionState.FAILED
        await session.disconnect()

    async def test_insufficient_scope_is_handed_to_the_authorizer(
        self, mock_transport
    ):
        # Arrange
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)
        await session.connect()
        mock_transport.reply_with_result("admin/reset", {"ok": True})
        mock_transport.send_errors.append(
            _challenge(403, 'Bearer error="insufficient_scope", scope="admin"')
        )

        # Act
        result = await session.call("admin/reset")

        # Assert
        assert result == {"ok": True}
        challenge = self.authorizer.handle_challenge.await_args.args[0]
        assert challenge.is_insufficient_scope
        assert challenge.required_scopes == ["admin"]
        await session.disconnect()

    async def test_authorization_failure_reaches_error_callback(
        self, mock_transport
    ):
        # Arrange
        self.authorizer.handle_challenge.side_effect = ConsentDenied(
            "access_denied", "User said no"
        )
        mock_transport.send_errors.append(_challenge(401, "Bearer"))
        on_error = AsyncMock()
        session = ClientSession(mock_transport, authorizer=self.authorizer, timeout=1.0)
        session.callbacks.on_error(on_error)

        # Act & Assert
        with pytest.raises(ConsentDenied):
            await session.connect()

        on_error.assert_awaited_once()
        assert isinstance(on_error.await_args.args[0], ConsentDenied)
        assert session.state is SessionState.FAILED
        await session.disconnect()

    async def test_challenge_without_authorizer_propagates(self, session, mock_transport):
        # Arrange
        mock_transport.send_errors.append(_challenge(401, "Bearer"))

        # Act & Assert
        with pytest.raises(AccessChallengeError):
            await session.connect()
