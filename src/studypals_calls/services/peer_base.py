"""Peer connection interface definition."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Protocol

from ..models.media import MediaStream, MediaTrack
from ..models.schemas import IceCandidate, SessionDescription
from ..models.state import CallType

# Peer connection states reported by the WebRTC layer
PEER_CONNECTING = "connecting"
PEER_CONNECTED = "connected"
PEER_DISCONNECTED = "disconnected"
PEER_FAILED = "failed"
PEER_CLOSED = "closed"

RemoteStreamCallback = Callable[[MediaStream], Any]
IceCandidateCallback = Callable[[IceCandidate], Any]
ConnectionStateCallback = Callable[[str], Any]


class PeerConnection(Protocol):
    """Protocol for a single WebRTC peer connection."""

    async def add_stream(self, stream: MediaStream) -> None:
        """Send every track of the local stream to the peer."""
        ...

    async def create_offer(self, call_type: CallType) -> SessionDescription:
        """Create an offer and apply it as the local description."""
        ...

    async def create_answer(self, call_type: CallType) -> SessionDescription:
        """Create an answer to the applied remote offer and apply it locally."""
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the peer's offer or answer."""
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Add a remote ICE candidate."""
        ...

    async def replace_video_track(self, track: MediaTrack) -> None:
        """Swap the outgoing video track in place without renegotiating."""
        ...

    def on_remote_stream(self, callback: RemoteStreamCallback) -> None:
        """Register a callback for the peer's media stream."""
        ...

    def on_ice_candidate(self, callback: IceCandidateCallback) -> None:
        """Register a callback for locally gathered ICE candidates."""
        ...

    def on_connection_state(self, callback: ConnectionStateCallback) -> None:
        """Register a callback for connection state changes."""
        ...

    async def close(self) -> None:
        """Close the connection and stop remote tracks."""
        ...


PeerConnectionFactory = Callable[[], PeerConnection]


class BasePeerConnection(ABC):
    """Base class for peer connection implementations.

    Keeps the registered callbacks and dispatches to them; subclasses call
    the ``_emit_*`` helpers from their backend event handlers.
    """

    def __init__(self):
        self._remote_stream_callbacks: list[RemoteStreamCallback] = []
        self._ice_candidate_callbacks: list[IceCandidateCallback] = []
        self._connection_state_callbacks: list[ConnectionStateCallback] = []
        self._remote_description: Optional[SessionDescription] = None

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description is not None

    def on_remote_stream(self, callback: RemoteStreamCallback) -> None:
        self._remote_stream_callbacks.append(callback)

    def on_ice_candidate(self, callback: IceCandidateCallback) -> None:
        self._ice_candidate_callbacks.append(callback)

    def on_connection_state(self, callback: ConnectionStateCallback) -> None:
        self._connection_state_callbacks.append(callback)

    def _emit_remote_stream(self, stream: MediaStream) -> list[Any]:
        return [callback(stream) for callback in self._remote_stream_callbacks]

    def _emit_ice_candidate(self, candidate: IceCandidate) -> list[Any]:
        return [callback(candidate) for callback in self._ice_candidate_callbacks]

    def _emit_connection_state(self, state: str) -> list[Any]:
        return [callback(state) for callback in self._connection_state_callbacks]

    @abstractmethod
    async def add_stream(self, stream: MediaStream) -> None:
        pass

    @abstractmethod
    async def create_offer(self, call_type: CallType) -> SessionDescription:
        pass

    @abstractmethod
    async def create_answer(self, call_type: CallType) -> SessionDescription:
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        pass

    @abstractmethod
    async def replace_video_track(self, track: MediaTrack) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
