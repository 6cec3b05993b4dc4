"""Multi-subscriber broadcast channels for call state and stream bindings."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()
_UNSET = object()


class Subscription(Generic[T]):
    """One observer's view of a broadcast channel.

    Iterate with ``async for`` to receive every value published after the
    subscription was made. Iteration stops when the channel closes or the
    subscription is cancelled.
    """

    def __init__(self, broadcaster: "Broadcaster[T]"):
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def _deliver(self, value: Any) -> None:
        self._queue.put_nowait(value)

    async def get(self, timeout: Optional[float] = None) -> T:
        """Wait for the next value.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
            StopAsyncIteration: If the channel is closed
        """
        if self._done and self._queue.empty():
            raise StopAsyncIteration
        if timeout is None:
            value = await self._queue.get()
        else:
            value = await asyncio.wait_for(self._queue.get(), timeout)
        if value is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return value

    def drain(self) -> list[T]:
        """Return every value already delivered without waiting."""
        values = []
        while not self._queue.empty():
            value = self._queue.get_nowait()
            if value is _CLOSED:
                self._done = True
                break
            values.append(value)
        return values

    def close(self) -> None:
        """Stop receiving values."""
        self._broadcaster._unsubscribe(self)
        if not self._done:
            self._done = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Broadcaster(Generic[T]):
    """Push values to any number of subscribers and callbacks.

    There is no history: a new subscriber receives only the most recent
    value (when ``replay_latest`` is set) followed by everything published
    after it subscribed.
    """

    def __init__(self, name: str, replay_latest: bool = True):
        self.name = name
        self.replay_latest = replay_latest
        self._latest: Any = _UNSET
        self._subscriptions: list[Subscription[T]] = []
        self._listeners: list[Callable[[T], Any]] = []
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latest(self) -> Optional[T]:
        """Most recently published value, or None."""
        return None if self._latest is _UNSET else self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def publish(self, value: T) -> None:
        """Deliver ``value`` to every current subscriber."""
        if self._closed:
            logger.debug(f"Dropping value published on closed channel {self.name}")
            return
        self._latest = value
        for subscription in list(self._subscriptions):
            subscription._deliver(value)
        for listener in list(self._listeners):
            self._notify(listener, value)

    def subscribe(self) -> Subscription[T]:
        """Create a queue-backed subscription."""
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription._deliver(_CLOSED)
            return subscription
        if self.replay_latest and self._latest is not _UNSET:
            subscription._deliver(self._latest)
        self._subscriptions.append(subscription)
        return subscription

    def listen(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it.

        Coroutine callbacks are scheduled on the running loop.
        """
        if self._closed:
            return lambda: None
        self._listeners.append(callback)
        if self.replay_latest and self._latest is not _UNSET:
            self._notify(callback, self._latest)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def close(self) -> None:
        """Close the channel; subscribers' iteration ends."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription._deliver(_CLOSED)
        self._subscriptions.clear()
        self._listeners.clear()

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _notify(self, listener: Callable[[T], Any], value: T) -> None:
        try:
            result = listener(value)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)
        except Exception as e:
            logger.error(f"Listener on channel {self.name} failed: {e}")

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async listener on channel {self.name} failed: {task.exception()}")
