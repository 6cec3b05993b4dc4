"""StudyPals call session coordination and signaling relay."""

from .models import CallDirection, CallFlags, CallSession, CallState, CallType
from .services import CallSessionCoordinator

__version__ = "1.0.0"

__all__ = [
    "CallDirection",
    "CallFlags",
    "CallSession",
    "CallState",
    "CallType",
    "CallSessionCoordinator",
]
