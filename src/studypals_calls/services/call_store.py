"""In-memory store of call documents kept by the signaling relay."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models.schemas import CallDocument, CallStatus, SignalKind, SignalMessage

logger = logging.getLogger(__name__)


class CallStoreError(Exception):
    """Base exception for rejected call store updates."""
    pass


class CallNotFoundError(CallStoreError):
    """No call document exists for the given call ID."""
    pass


class CallEndedError(CallStoreError):
    """The call has already ended."""
    pass


class NotAParticipantError(CallStoreError):
    """The sender is not the caller or callee of the call."""
    pass


class CallStore:
    """Keeps one ``CallDocument`` per call and applies signals to it."""

    def __init__(self):
        self._calls: dict[str, CallDocument] = {}
        self._lock = asyncio.Lock()

    async def apply_signal(self, message: SignalMessage) -> CallDocument:
        """Record ``message`` on its call document.

        Returns:
            The updated call document

        Raises:
            CallNotFoundError: Non-offer signal for an unknown call
            CallEndedError: Offer/answer/candidate for an ended call
            NotAParticipantError: Sender or recipient is not part of the call
        """
        async with self._lock:
            if message.kind == SignalKind.OFFER:
                return self._create(message)

            call = self._calls.get(message.call_id)
            if call is None:
                raise CallNotFoundError(f"Call {message.call_id} not found")
            if message.sender_id not in (call.caller_id, call.callee_id):
                raise NotAParticipantError(f"{message.sender_id} is not part of call {call.call_id}")
            if message.recipient_id != call.other_party(message.sender_id):
                raise NotAParticipantError(f"{message.recipient_id} is not the other party of call {call.call_id}")

            if message.kind == SignalKind.HANGUP:
                if call.status != CallStatus.ENDED:
                    call.status = CallStatus.ENDED
                    call.ended_at = datetime.now(timezone.utc)
                    logger.info(f"Call {call.call_id} ended by {message.sender_id}")
                return call

            if call.status == CallStatus.ENDED:
                raise CallEndedError(f"Call {call.call_id} has ended")

            if message.kind == SignalKind.ANSWER:
                if message.sender_id != call.callee_id:
                    raise NotAParticipantError("Only the callee can answer a call")
                call.answer = message.description
                call.status = CallStatus.CONNECTED
                logger.info(f"Call {call.call_id} answered")
            elif message.kind == SignalKind.CANDIDATE:
                if message.sender_id == call.caller_id:
                    call.caller_candidates.append(message.candidate)
                else:
                    call.callee_candidates.append(message.candidate)
            return call

    def _create(self, message: SignalMessage) -> CallDocument:
        existing = self._calls.get(message.call_id)
        if existing is not None and existing.status == CallStatus.ENDED:
            raise CallEndedError(f"Call {message.call_id} has ended")
        if existing is not None and existing.caller_id != message.sender_id:
            raise NotAParticipantError(f"Call {message.call_id} belongs to another caller")

        call = CallDocument(
            call_id=message.call_id,
            caller_id=message.sender_id,
            callee_id=message.recipient_id,
            call_type=message.call_type,
            offer=message.description,
        )
        self._calls[call.call_id] = call
        logger.info(f"Call {call.call_id} created: {call.caller_id} -> {call.callee_id} ({call.call_type.value})")
        return call

    async def get(self, call_id: str) -> Optional[CallDocument]:
        async with self._lock:
            return self._calls.get(call_id)

    async def ringing_for(self, user_id: str) -> list[CallDocument]:
        """Calls still ringing for callee ``user_id``, oldest first."""
        async with self._lock:
            calls = [
                c for c in self._calls.values()
                if c.callee_id == user_id and c.status == CallStatus.RINGING
            ]
        return sorted(calls, key=lambda c: c.created_at)

    async def active_count(self) -> int:
        async with self._lock:
            return sum(1 for c in self._calls.values() if c.status != CallStatus.ENDED)

    async def purge_ended(self, older_than: timedelta = timedelta(minutes=10)) -> int:
        """Drop ended calls older than ``older_than``. Returns how many were removed."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with self._lock:
            stale = [
                call_id for call_id, c in self._calls.items()
                if c.status == CallStatus.ENDED and c.ended_at is not None and c.ended_at < cutoff
            ]
            for call_id in stale:
                del self._calls[call_id]
        if stale:
            logger.info(f"Purged {len(stale)} ended calls")
        return len(stale)
