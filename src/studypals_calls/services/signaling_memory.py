"""In-process signaling for tests, demos and same-process peers."""

import logging
from collections import defaultdict
from typing import Optional

from ..models.schemas import IncomingCall, SignalKind, SignalMessage
from .errors import SignalingError
from .signaling_base import BaseSignalingChannel

logger = logging.getLogger(__name__)


class InMemorySignalingHub:
    """Routes signals between channels registered in the same process.

    Offers are announced to the callee's incoming-call listeners; every
    message is also delivered to the recipient's subscribers of that call.
    """

    def __init__(self):
        self._channels: dict[str, list["InMemorySignalingChannel"]] = defaultdict(list)
        self.history: list[SignalMessage] = []

    def channel(self, user_id: str) -> "InMemorySignalingChannel":
        """Create a channel for ``user_id`` attached to this hub."""
        channel = InMemorySignalingChannel(self, user_id)
        self._channels[user_id].append(channel)
        return channel

    def detach(self, channel: "InMemorySignalingChannel") -> None:
        channels = self._channels.get(channel.user_id, [])
        if channel in channels:
            channels.remove(channel)

    async def route(self, message: SignalMessage) -> int:
        """Deliver ``message`` to the recipient's channels. Returns deliveries."""
        self.history.append(message)
        delivered = 0
        for channel in list(self._channels.get(message.recipient_id, [])):
            if message.kind == SignalKind.OFFER:
                delivered += await channel._dispatch_incoming(IncomingCall.from_offer(message))
            delivered += await channel._dispatch_signal(message)

        logger.debug(
            f"Routed {message.kind.value} for call {message.call_id} to {message.recipient_id}",
            extra={"evt": "signal_routed", "delivered": delivered},
        )
        return delivered

    def messages_for(self, call_id: str, kind: Optional[SignalKind] = None) -> list[SignalMessage]:
        """Messages routed for ``call_id``, optionally filtered by kind."""
        return [
            m for m in self.history
            if m.call_id == call_id and (kind is None or m.kind == kind)
        ]


class InMemorySignalingChannel(BaseSignalingChannel):
    """One user's endpoint on an ``InMemorySignalingHub``."""

    def __init__(self, hub: InMemorySignalingHub, user_id: str):
        super().__init__()
        self.hub = hub
        self.user_id = user_id
        self._closed = False

    async def send_signal(self, call_id: str, message: SignalMessage) -> None:
        if self._closed:
            raise SignalingError("Signaling channel is closed")
        if message.call_id != call_id:
            raise SignalingError(f"Signal for call {message.call_id} sent on call {call_id}")
        if message.sender_id != self.user_id:
            raise SignalingError(f"Channel for {self.user_id} cannot send as {message.sender_id}")
        await self.hub.route(message)

    async def disconnect(self, reason: str = "connection lost") -> None:
        """Drop this channel as a failed transport would."""
        self._closed = True
        self.hub.detach(self)
        await self._dispatch_transport_error(SignalingError(f"Signaling channel for {self.user_id} {reason}"))

    async def close(self) -> None:
        self._closed = True
        self.hub.detach(self)
        await super().close()
