"""Relay API router for call documents and signal delivery."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_call_store_dependency, get_connection_registry_dependency
from ..models.schemas import (
    CallDocumentResponse,
    HealthResponse,
    SignalAck,
    SignalMessage,
)
from ..services.call_store import (
    CallEndedError,
    CallNotFoundError,
    CallStore,
    NotAParticipantError,
)
from ..services.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def signal_payload(message: SignalMessage) -> dict:
    """WebSocket payload pushed to the recipient of ``message``."""
    return {"type": "signal", "message": message.model_dump(mode="json", by_alias=True)}


@router.post("/calls/{call_id}/signals", response_model=SignalAck)
async def post_signal(
    call_id: str,
    message: SignalMessage,
    store: CallStore = Depends(get_call_store_dependency),
    registry: ConnectionRegistry = Depends(get_connection_registry_dependency),
) -> SignalAck:
    """Record a signal on its call and push it to the other participant.

    Args:
        call_id: Call the signal belongs to
        message: Offer, answer, candidate or hangup

    Returns:
        Call status after the signal and whether the recipient was online

    Raises:
        HTTPException: 400 call ID mismatch, 403 not a participant,
            404 unknown call, 409 call already ended
    """
    if message.call_id != call_id:
        raise HTTPException(status_code=400, detail="call_id in body does not match the URL")

    try:
        call = await store.apply_signal(message)
    except CallNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CallEndedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotAParticipantError as e:
        raise HTTPException(status_code=403, detail=str(e))

    delivered = await registry.send_to(message.recipient_id, signal_payload(message))
    logger.info(
        f"Relayed {message.kind.value} for call {call_id} to {message.recipient_id}",
        extra={"evt": "signal_relayed", "delivered": delivered},
    )
    return SignalAck(call_id=call_id, status=call.status, delivered=delivered > 0)


@router.get("/calls/{call_id}", response_model=CallDocumentResponse)
async def get_call(
    call_id: str,
    store: CallStore = Depends(get_call_store_dependency),
) -> CallDocumentResponse:
    """Look up a call document."""
    call = await store.get(call_id)
    if call is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return CallDocumentResponse(call=call)


@router.get("/health", response_model=HealthResponse)
async def health(
    store: CallStore = Depends(get_call_store_dependency),
    registry: ConnectionRegistry = Depends(get_connection_registry_dependency),
) -> HealthResponse:
    """Get relay health status."""
    return HealthResponse(
        ok=True,
        active_calls=await store.active_count(),
        connected_users=await registry.user_count(),
    )
