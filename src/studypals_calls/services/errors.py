"""Exceptions raised by call services."""


class CallError(Exception):
    """Base exception for call session failures."""
    pass


class MediaAcquisitionError(CallError):
    """Camera or microphone could not be acquired (permission denied, device busy)."""
    pass


class SignalingError(CallError):
    """Signaling transport unreachable or a malformed signal was received."""
    pass


class NegotiationError(CallError):
    """Peer connection setup (offer/answer/candidates) failed."""
    pass


class InvalidStateError(CallError):
    """Operation attempted in a state that does not allow it."""
    pass
