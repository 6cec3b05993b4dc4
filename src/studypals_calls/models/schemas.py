"""Pydantic schemas for signaling messages and relay API responses."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .state import CallType


class SessionDescription(BaseModel):
    """SDP offer or answer."""
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """ICE candidate in the browser dictionary shape."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class SignalKind(str, Enum):
    """Kinds of signaling messages exchanged between peers."""
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    HANGUP = "hangup"


class SignalMessage(BaseModel):
    """A single signaling message for one call."""

    kind: SignalKind
    call_id: str
    sender_id: str
    recipient_id: str
    call_type: Optional[CallType] = None
    description: Optional[SessionDescription] = None
    candidate: Optional[IceCandidate] = None

    @model_validator(mode="after")
    def check_payload(self) -> "SignalMessage":
        """Make sure each kind carries the payload it needs."""
        if self.kind in (SignalKind.OFFER, SignalKind.ANSWER):
            if self.description is None:
                raise ValueError(f"{self.kind.value} signal requires a session description")
            if self.description.type != self.kind.value:
                raise ValueError(
                    f"{self.kind.value} signal carries a {self.description.type} description"
                )
        if self.kind == SignalKind.OFFER and self.call_type is None:
            raise ValueError("offer signal requires call_type")
        if self.kind == SignalKind.CANDIDATE and self.candidate is None:
            raise ValueError("candidate signal requires a candidate")
        return self


class IncomingCall(BaseModel):
    """An offer observed by the callee."""
    call_id: str
    caller_id: str
    callee_id: str
    call_type: CallType
    offer: SessionDescription

    @classmethod
    def from_offer(cls, message: SignalMessage) -> "IncomingCall":
        return cls(
            call_id=message.call_id,
            caller_id=message.sender_id,
            callee_id=message.recipient_id,
            call_type=message.call_type,
            offer=message.description,
        )


class CallStatus(str, Enum):
    """Status of a call document held by the relay."""
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class CallDocument(BaseModel):
    """Relay-side record of one call."""

    call_id: str
    caller_id: str
    callee_id: str
    call_type: CallType
    offer: SessionDescription
    answer: Optional[SessionDescription] = None
    status: CallStatus = CallStatus.RINGING
    caller_candidates: List[IceCandidate] = Field(default_factory=list)
    callee_candidates: List[IceCandidate] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None

    def other_party(self, user_id: str) -> str:
        """Return the participant that is not ``user_id``."""
        if user_id == self.caller_id:
            return self.callee_id
        if user_id == self.callee_id:
            return self.caller_id
        raise ValueError(f"User {user_id} is not part of call {self.call_id}")

    def as_incoming_call(self) -> IncomingCall:
        return IncomingCall(
            call_id=self.call_id,
            caller_id=self.caller_id,
            callee_id=self.callee_id,
            call_type=self.call_type,
            offer=self.offer,
        )


class SignalAck(BaseModel):
    """Response from the signal endpoint."""
    call_id: str
    status: CallStatus
    delivered: bool


class CallDocumentResponse(BaseModel):
    """Response from the call lookup endpoint."""
    call: CallDocument


class HealthResponse(BaseModel):
    """Response from health endpoint."""
    ok: bool
    active_calls: int
    connected_users: int
