"""Tests for the relay-backed signaling channel."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from studypals_calls.models.schemas import SessionDescription, SignalKind, SignalMessage
from studypals_calls.models.state import CallType
from studypals_calls.services.errors import SignalingError
from studypals_calls.services.signaling_http import HttpSignalingChannel

CALL_ID = "alice_bob_1700000000000"


def offer_message() -> SignalMessage:
    return SignalMessage(
        kind=SignalKind.OFFER,
        call_id=CALL_ID,
        sender_id="alice",
        recipient_id="bob",
        call_type=CallType.AUDIO,
        description=SessionDescription(type="offer", sdp="v=0"),
    )


def mock_session(status=200, body=None, text=""):
    """aiohttp session whose post() yields a canned response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body or {"call_id": CALL_ID, "status": "ringing", "delivered": True})
    response.text = AsyncMock(return_value=text)

    session = MagicMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=None)
    session.close = AsyncMock()
    return session


class TestHttpSignalingChannel:
    """Test cases for HttpSignalingChannel."""

    def test_ws_url(self):
        """Test the WebSocket URL follows the relay scheme."""
        assert HttpSignalingChannel("http://relay:8080/", "bob").ws_url == "ws://relay:8080/ws/bob"
        assert HttpSignalingChannel("https://relay.example.org", "bob").ws_url == "wss://relay.example.org/ws/bob"

    @pytest.mark.asyncio
    async def test_send_signal_posts_json(self):
        """Test signals are POSTed to the call's signal endpoint."""
        session = mock_session()
        channel = HttpSignalingChannel("http://relay:8080", "alice", session=session)

        await channel.send_signal(CALL_ID, offer_message())

        session.post.assert_called_once()
        call_args = session.post.call_args
        assert call_args.args[0] == f"http://relay:8080/calls/{CALL_ID}/signals"
        assert call_args.kwargs["json"]["kind"] == "offer"
        assert call_args.kwargs["json"]["call_type"] == "audio"

    @pytest.mark.asyncio
    async def test_send_signal_rejected(self):
        """Test a non-200 response raises SignalingError."""
        session = mock_session(status=409, text="Call has ended")
        channel = HttpSignalingChannel("http://relay:8080", "alice", session=session)

        with pytest.raises(SignalingError, match="409"):
            await channel.send_signal(CALL_ID, offer_message())

    @pytest.mark.asyncio
    async def test_send_signal_unreachable(self):
        """Test transport errors raise SignalingError."""
        session = MagicMock()
        session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
        channel = HttpSignalingChannel("http://relay:8080", "alice", session=session)

        with pytest.raises(SignalingError):
            await channel.send_signal(CALL_ID, offer_message())

    @pytest.mark.asyncio
    async def test_send_signal_call_id_mismatch(self):
        """Test a message for another call is refused before sending."""
        session = mock_session()
        channel = HttpSignalingChannel("http://relay:8080", "alice", session=session)

        with pytest.raises(SignalingError):
            await channel.send_signal("other_call", offer_message())
        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_pushed_offer_dispatched(self):
        """Test a pushed offer reaches incoming-call and signal listeners."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        incoming = []
        signals = []
        channel.on_incoming_call("bob", incoming.append)
        channel.on_signal(CALL_ID, signals.append)

        payload = {"type": "signal", "message": offer_message().model_dump(mode="json", by_alias=True)}
        await channel._handle_payload(json.dumps(payload))

        assert [c.call_id for c in incoming] == [CALL_ID]
        assert [m.kind for m in signals] == [SignalKind.OFFER]

    @pytest.mark.asyncio
    async def test_invalid_payloads_ignored(self):
        """Test junk from the relay is logged, not raised."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        signals = []
        channel.on_signal(CALL_ID, signals.append)

        await channel._handle_payload("not json")
        await channel._handle_payload(json.dumps({"type": "pong"}))
        await channel._handle_payload(json.dumps({"type": "signal", "message": {"kind": "offer"}}))

        assert signals == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Test unsubscribed callbacks are not called."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        signals = []
        unsubscribe = channel.on_signal(CALL_ID, signals.append)
        unsubscribe()

        payload = {"type": "signal", "message": offer_message().model_dump(mode="json", by_alias=True)}
        await channel._handle_payload(json.dumps(payload))

        assert signals == []

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        """Test an unreachable relay raises SignalingError."""
        session = MagicMock()
        session.ws_connect = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=session)

        with pytest.raises(SignalingError):
            await channel.connect()

    @pytest.mark.asyncio
    async def test_close_keeps_injected_session(self):
        """Test close does not close a session it does not own."""
        session = mock_session()
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=session)

        await channel.close()

        session.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_stops_reader(self):
        """Test close cancels the reader and closes the socket."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        websocket = MagicMock()
        websocket.close = AsyncMock()
        channel._ws = websocket
        channel._reader_task = asyncio.ensure_future(asyncio.sleep(10))

        await channel.close()

        websocket.close.assert_awaited_once()
        assert channel._reader_task is None

    @pytest.mark.asyncio
    async def test_dropped_socket_reports_transport_error(self):
        """Test the reader tells listeners when the relay socket ends on its own."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        signals = []
        errors = []
        channel.on_signal(CALL_ID, signals.append)
        channel.on_transport_error(errors.append)

        pushed = MagicMock()
        pushed.type = aiohttp.WSMsgType.TEXT
        pushed.data = json.dumps({"type": "signal", "message": offer_message().model_dump(mode="json", by_alias=True)})
        websocket = MagicMock()
        websocket.__aiter__.return_value = [pushed]
        channel._ws = websocket

        await channel._reader()

        assert [m.kind for m in signals] == [SignalKind.OFFER]
        assert len(errors) == 1
        assert isinstance(errors[0], SignalingError)

    @pytest.mark.asyncio
    async def test_socket_error_reports_transport_error(self):
        """Test a WebSocket error frame is reported as a lost transport."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        errors = []
        channel.on_transport_error(errors.append)

        failed = MagicMock()
        failed.type = aiohttp.WSMsgType.ERROR
        websocket = MagicMock()
        websocket.__aiter__.return_value = [failed]
        websocket.exception.return_value = ConnectionResetError("reset by peer")
        channel._ws = websocket

        await channel._reader()

        assert len(errors) == 1
        assert "reset by peer" in str(errors[0])

    @pytest.mark.asyncio
    async def test_closing_does_not_report_transport_error(self):
        """Test a socket ending because of close() is not an error."""
        channel = HttpSignalingChannel("http://relay:8080", "bob", session=mock_session())
        errors = []
        channel.on_transport_error(errors.append)

        websocket = MagicMock()
        websocket.__aiter__.return_value = []
        channel._ws = websocket
        channel._closing = True

        await channel._reader()

        assert errors == []
