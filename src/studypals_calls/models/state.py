"""Call session state management."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .media import MediaStream


class CallState(str, Enum):
    """Lifecycle phase of a call session.

    States:
    - IDLE: No call. The only state a new call can start from.
    - CONNECTING: Media is being acquired or the peer connection negotiated.
    - RINGING: Offer sent (outgoing) or observed (incoming), awaiting answer.
    - CONNECTED: Media is flowing between both peers.
    - ENDED: Call finished; held briefly so observers can show it.
    - ERROR: Unrecoverable signaling or media failure.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"
    ERROR = "error"


class CallType(str, Enum):
    """Media carried by a call."""

    AUDIO = "audio"
    VIDEO = "video"


class CallDirection(str, Enum):
    """Which party created the call."""

    OUTGOING = "outgoing"
    INCOMING = "incoming"


ALLOWED_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.IDLE: frozenset({CallState.CONNECTING, CallState.RINGING}),
    # CONNECTING -> IDLE only happens when a start/answer is aborted before
    # anything was sent to the peer.
    CallState.CONNECTING: frozenset(
        {CallState.RINGING, CallState.CONNECTED, CallState.ENDED, CallState.ERROR, CallState.IDLE}
    ),
    CallState.RINGING: frozenset(
        {CallState.CONNECTING, CallState.CONNECTED, CallState.ENDED, CallState.ERROR}
    ),
    CallState.CONNECTED: frozenset({CallState.ENDED, CallState.ERROR}),
    CallState.ENDED: frozenset({CallState.IDLE}),
    CallState.ERROR: frozenset({CallState.ENDED, CallState.IDLE}),
}

ACTIVE_STATES = frozenset({CallState.CONNECTING, CallState.RINGING, CallState.CONNECTED})


def can_transition(current: CallState, target: CallState) -> bool:
    """Check whether ``current -> target`` is a legal transition."""
    return target in ALLOWED_TRANSITIONS[current]


class CallFlags:
    """UI-visible toggles for the active call."""

    def __init__(self):
        self.muted: bool = False
        self.camera_off: bool = False
        self.speaker_on: bool = True
        self.screen_sharing: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "muted": self.muted,
            "camera_off": self.camera_off,
            "speaker_on": self.speaker_on,
            "screen_sharing": self.screen_sharing,
        }

    def __repr__(self) -> str:
        return f"CallFlags({self.as_dict()})"


class CallSession:
    """State of the single call a coordinator owns."""

    def __init__(
        self,
        call_id: str,
        call_type: CallType,
        direction: CallDirection,
        peer_id: str,
        state: CallState = CallState.IDLE,
    ):
        self._call_id = call_id
        self._call_type = call_type
        self._direction = direction
        self.peer_id = peer_id
        self.state = state
        self.local_stream: Optional[MediaStream] = None
        self.remote_stream: Optional[MediaStream] = None
        self.flags = CallFlags()
        self.created_at = datetime.now(timezone.utc)

    @property
    def call_id(self) -> str:
        return self._call_id

    @property
    def call_type(self) -> CallType:
        return self._call_type

    @property
    def direction(self) -> CallDirection:
        return self._direction

    @property
    def is_video(self) -> bool:
        """Check if the session carries video."""
        return self._call_type == CallType.VIDEO

    @property
    def is_active(self) -> bool:
        """Check if the session is still in progress."""
        return self.state in ACTIVE_STATES

    @property
    def has_media(self) -> bool:
        """Check if both local and remote streams are bound."""
        return self.local_stream is not None and self.remote_stream is not None

    def __repr__(self) -> str:
        return (
            f"CallSession(call_id={self._call_id!r}, type={self._call_type.value}, "
            f"direction={self._direction.value}, state={self.state.value})"
        )
