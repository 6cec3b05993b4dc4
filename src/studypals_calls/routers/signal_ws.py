"""Signal WebSocket router pushing relayed signals to connected users."""

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..deps import get_call_store_dependency, get_connection_registry_dependency
from ..models.schemas import SignalKind, SignalMessage
from ..services.call_store import CallStore
from ..services.connection_registry import ConnectionRegistry
from .calls import signal_payload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/{user_id}")
async def signal_websocket(
    websocket: WebSocket,
    user_id: str,
    store: CallStore = Depends(get_call_store_dependency),
    registry: ConnectionRegistry = Depends(get_connection_registry_dependency),
) -> None:
    """WebSocket endpoint delivering signals addressed to ``user_id``.

    Handles:
    - Registration of the connection for relayed signals
    - Replay of calls still ringing for the user
    - Application-level ping/pong
    """
    await websocket.accept()
    await registry.add(user_id, websocket)

    try:
        await _replay_ringing_calls(websocket, user_id, store)

        async for message in websocket.iter_text():
            await _process_client_message(websocket, message)

    except WebSocketDisconnect:
        logger.info(f"Signal WebSocket for {user_id} disconnected by client")
    except Exception as e:
        logger.error(f"Signal WebSocket error for {user_id}: {e}")
    finally:
        await registry.remove(user_id, websocket)


async def _replay_ringing_calls(websocket: WebSocket, user_id: str, store: CallStore) -> None:
    """Send an offer for every call still ringing for ``user_id``."""
    calls = await store.ringing_for(user_id)
    for call in calls:
        offer = SignalMessage(
            kind=SignalKind.OFFER,
            call_id=call.call_id,
            sender_id=call.caller_id,
            recipient_id=call.callee_id,
            call_type=call.call_type,
            description=call.offer,
        )
        await websocket.send_json(signal_payload(offer))
    if calls:
        logger.info(f"Replayed {len(calls)} ringing calls to {user_id}")


async def _process_client_message(websocket: WebSocket, message: str) -> None:
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON on signal WebSocket")
        return

    if data.get("type") == "ping":
        await websocket.send_json({"type": "pong"})
    else:
        logger.debug(f"Ignoring client message type: {data.get('type')}")
