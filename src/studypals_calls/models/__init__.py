"""Data models and schemas for the StudyPals call service."""

from .media import MediaStream, MediaTrack
from .schemas import (
    CallDocument,
    CallDocumentResponse,
    CallStatus,
    HealthResponse,
    IceCandidate,
    IncomingCall,
    SessionDescription,
    SignalAck,
    SignalKind,
    SignalMessage,
)
from .state import CallDirection, CallFlags, CallSession, CallState, CallType

__all__ = [
    "MediaStream",
    "MediaTrack",
    "CallDocument",
    "CallDocumentResponse",
    "CallStatus",
    "HealthResponse",
    "IceCandidate",
    "IncomingCall",
    "SessionDescription",
    "SignalAck",
    "SignalKind",
    "SignalMessage",
    "CallDirection",
    "CallFlags",
    "CallSession",
    "CallState",
    "CallType",
]
