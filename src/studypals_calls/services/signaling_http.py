"""Signaling over the StudyPals relay: HTTP for sending, WebSocket for receiving."""

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from pydantic import ValidationError

from ..models.schemas import IncomingCall, SignalKind, SignalMessage
from .errors import SignalingError
from .signaling_base import BaseSignalingChannel

logger = logging.getLogger(__name__)


class HttpSignalingChannel(BaseSignalingChannel):
    """Signaling channel backed by the relay server.

    Outgoing signals are POSTed to ``/calls/{call_id}/signals``. Signals for
    this user are pushed by the relay over ``/ws/{user_id}`` and dispatched
    to the registered callbacks by a reader task.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        """Initialize the channel.

        Args:
            base_url: Relay base URL (http:// or https://)
            user_id: User whose signals this channel receives
            session: Optional aiohttp session (will create if not provided)
            request_timeout_s: Total timeout for each signal POST
        """
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.request_timeout_s = request_timeout_s
        self._session = session
        self._owned_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            base = "wss://" + self.base_url[len("https://"):]
        else:
            base = "ws://" + self.base_url[len("http://"):]
        return f"{base}/ws/{self.user_id}"

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def connect(self) -> None:
        """Open the relay WebSocket and start dispatching pushed signals.

        Raises:
            SignalingError: If the relay is unreachable
        """
        if self.is_connected:
            return
        self._closing = False
        session = await self._get_session()
        try:
            self._ws = await session.ws_connect(self.ws_url, heartbeat=30.0)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SignalingError(f"Could not connect to signaling relay: {e}") from e

        self._reader_task = asyncio.create_task(self._reader())
        logger.info(f"Connected to signaling relay at {self.ws_url}")

    async def send_signal(self, call_id: str, message: SignalMessage) -> None:
        if message.call_id != call_id:
            raise SignalingError(f"Signal for call {message.call_id} sent on call {call_id}")

        session = await self._get_session()
        url = f"{self.base_url}/calls/{call_id}/signals"
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)

        try:
            async with session.post(
                url, json=message.model_dump(mode="json", by_alias=True), timeout=timeout
            ) as response:
                if response.status != 200:
                    detail = await response.text()
                    raise SignalingError(
                        f"Relay rejected {message.kind.value} signal: {response.status} {detail}"
                    )
                ack = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SignalingError(f"Signaling relay unavailable: {e}") from e

        logger.debug(
            f"Sent {message.kind.value} signal for call {call_id}",
            extra={"evt": "signal_sent", "delivered": ack.get("delivered")},
        )

    async def _reader(self) -> None:
        """Dispatch messages pushed by the relay until the socket closes.

        If the socket ends without ``close()`` being called, transport-error
        listeners are notified.
        """
        error: Optional[BaseException] = None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_payload(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = self._ws.exception()
                    logger.error(f"Signaling WebSocket error: {error}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.error(f"Signaling reader error: {e}")

        logger.info("Signaling WebSocket closed")
        if not self._closing:
            await self._dispatch_transport_error(
                SignalingError(f"Connection to signaling relay lost: {error or 'socket closed'}")
            )

    async def _handle_payload(self, raw: str) -> None:
        try:
            data: Dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON from signaling relay: {e}")
            return

        if data.get("type") != "signal":
            logger.debug(f"Ignoring relay message type: {data.get('type')}")
            return

        try:
            message = SignalMessage.model_validate(data.get("message") or {})
        except ValidationError as e:
            logger.warning(f"Malformed signal from relay: {e}")
            return

        if message.kind == SignalKind.OFFER:
            await self._dispatch_incoming(IncomingCall.from_offer(message))
        await self._dispatch_signal(message)

    async def close(self) -> None:
        """Close the WebSocket, stop the reader and the owned session."""
        self._closing = True
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
            self._ws = None

        if self._owned_session and self._session:
            await self._session.close()
            self._session = None

        await super().close()
        logger.info("Signaling channel closed")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - cleanup session."""
        await self.close()
