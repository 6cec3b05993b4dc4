"""Signaling channel interface definition."""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Protocol

from ..models.schemas import IncomingCall, SignalMessage

logger = logging.getLogger(__name__)

SignalCallback = Callable[[SignalMessage], Any]
IncomingCallCallback = Callable[[IncomingCall], Any]
TransportErrorCallback = Callable[[Exception], Any]
Unsubscribe = Callable[[], None]


class SignalingChannel(Protocol):
    """Protocol for out-of-band exchange of offers, answers and candidates."""

    async def send_signal(self, call_id: str, message: SignalMessage) -> None:
        """Send a signal for ``call_id`` to the other participant.

        Raises:
            SignalingError: Transport unreachable or message rejected
        """
        ...

    def on_signal(self, call_id: str, callback: SignalCallback) -> Unsubscribe:
        """Receive signals from the other participant of ``call_id``."""
        ...

    def on_incoming_call(self, user_id: str, callback: IncomingCallCallback) -> Unsubscribe:
        """Receive offers addressed to ``user_id``."""
        ...

    def on_transport_error(self, callback: TransportErrorCallback) -> Unsubscribe:
        """Be told when the transport drops without ``close()`` being called."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


class BaseSignalingChannel(ABC):
    """Base class keeping signal and incoming-call subscriptions.

    Subclasses deliver inbound messages through ``_dispatch_signal`` and
    ``_dispatch_incoming``; both await coroutine callbacks in order. A
    transport that drops on its own is reported with
    ``_dispatch_transport_error``.
    """

    def __init__(self):
        self._signal_callbacks: dict[str, list[SignalCallback]] = defaultdict(list)
        self._incoming_callbacks: dict[str, list[IncomingCallCallback]] = defaultdict(list)
        self._transport_error_callbacks: list[TransportErrorCallback] = []

    def on_signal(self, call_id: str, callback: SignalCallback) -> Unsubscribe:
        self._signal_callbacks[call_id].append(callback)

        def unsubscribe() -> None:
            callbacks = self._signal_callbacks.get(call_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._signal_callbacks.pop(call_id, None)

        return unsubscribe

    def on_incoming_call(self, user_id: str, callback: IncomingCallCallback) -> Unsubscribe:
        self._incoming_callbacks[user_id].append(callback)

        def unsubscribe() -> None:
            callbacks = self._incoming_callbacks.get(user_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._incoming_callbacks.pop(user_id, None)

        return unsubscribe

    def on_transport_error(self, callback: TransportErrorCallback) -> Unsubscribe:
        self._transport_error_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._transport_error_callbacks:
                self._transport_error_callbacks.remove(callback)

        return unsubscribe

    async def _dispatch_signal(self, message: SignalMessage) -> int:
        """Deliver ``message`` to subscribers of its call. Returns the count."""
        callbacks = list(self._signal_callbacks.get(message.call_id, []))
        for callback in callbacks:
            await _invoke(callback, message)
        return len(callbacks)

    async def _dispatch_incoming(self, incoming: IncomingCall) -> int:
        """Deliver an incoming call to listeners of its callee."""
        callbacks = list(self._incoming_callbacks.get(incoming.callee_id, []))
        for callback in callbacks:
            await _invoke(callback, incoming)
        return len(callbacks)

    async def _dispatch_transport_error(self, error: Exception) -> int:
        """Report a lost transport to its listeners."""
        logger.error(f"Signaling transport lost: {error}", extra={"evt": "signaling_lost"})
        callbacks = list(self._transport_error_callbacks)
        for callback in callbacks:
            await _invoke(callback, error)
        return len(callbacks)

    @abstractmethod
    async def send_signal(self, call_id: str, message: SignalMessage) -> None:
        pass

    async def close(self) -> None:
        self._signal_callbacks.clear()
        self._incoming_callbacks.clear()
        self._transport_error_callbacks.clear()


async def _invoke(callback: Callable[[Any], Any], value: Any) -> None:
    try:
        result = callback(value)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Signal callback failed: {e}")
