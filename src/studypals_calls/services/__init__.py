"""Services package for call session components."""

from .broadcast import Broadcaster, Subscription
from .call_coordinator import CallSessionCoordinator
from .call_store import CallEndedError, CallNotFoundError, CallStore, CallStoreError, NotAParticipantError
from .connection_registry import ConnectionRegistry
from .errors import (
    CallError,
    InvalidStateError,
    MediaAcquisitionError,
    NegotiationError,
    SignalingError,
)
from .media_base import AudioRouting, BaseMediaCapture, MediaCapture
from .peer_base import BasePeerConnection, PeerConnection, PeerConnectionFactory
from .signaling_base import BaseSignalingChannel, SignalingChannel
from .signaling_http import HttpSignalingChannel
from .signaling_memory import InMemorySignalingChannel, InMemorySignalingHub

__all__ = [
    "Broadcaster",
    "Subscription",
    "CallSessionCoordinator",
    "CallStore",
    "CallStoreError",
    "CallNotFoundError",
    "CallEndedError",
    "NotAParticipantError",
    "ConnectionRegistry",
    "CallError",
    "InvalidStateError",
    "MediaAcquisitionError",
    "NegotiationError",
    "SignalingError",
    "AudioRouting",
    "BaseMediaCapture",
    "MediaCapture",
    "BasePeerConnection",
    "PeerConnection",
    "PeerConnectionFactory",
    "BaseSignalingChannel",
    "SignalingChannel",
    "HttpSignalingChannel",
    "InMemorySignalingChannel",
    "InMemorySignalingHub",
]
