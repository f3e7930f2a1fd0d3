from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, WebSocketException, Query, status
from pydantic import ValidationError
from typing import Optional
import asyncio
import json
import logging

from src.configs.settings import TYPING_SWEEP_INTERVAL_SECONDS
from src.firebase.firebase_service import FirebaseService, bearer_token
from .bus import Connection, DeliveryBus, TYPING_START, TYPING_STOP
from .deps import bus, typing_leases, get_identity_provider, get_service
from .errors import ChatError
from .models import RoomEvent
from .presence import TypingLeases
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()


def release_typing(conn: Connection, conversation_id: str, bus: DeliveryBus, leases: TypingLeases) -> None:
    """Stop the user's typing lease once none of their sockets remain in the room."""
    if bus.is_viewing(conversation_id, conn.user_id):
        return
    if leases.release(conversation_id, conn.user_id):
        bus.publish(conversation_id, TYPING_STOP, {"sender_id": conn.user_id}, exclude=conn)


def disconnect(conn: Connection, bus: DeliveryBus, leases: TypingLeases) -> None:
    rooms = list(conn.rooms)
    bus.unregister(conn)
    for cid in rooms:
        release_typing(conn, cid, bus, leases)


async def handle_event(conn: Connection, event: RoomEvent, service, bus: DeliveryBus,
                       leases: TypingLeases) -> None:
    cid = event.conversation_id
    if not cid:
        conn.enqueue({"type": "error", "reason": "missing-conversation"})
        return

    if event.type == "join-room":
        try:
            await service.registry.require_participant(cid, conn.user_id)
        except ChatError as e:
            conn.enqueue({"type": "error", "conversation_id": cid, "reason": e.reason})
            return
        bus.join(conn, cid)
        conn.enqueue({"type": "joined", "conversation_id": cid})
        logger.info("%s (conn %s) joined room %s", conn.user_id, conn.id, cid)

    elif event.type == "leave-room":
        bus.leave(conn, cid)
        release_typing(conn, cid, bus, leases)
        conn.enqueue({"type": "left", "conversation_id": cid})

    elif event.type in ("typing", "stop-typing"):
        # only room members may signal, and signals are best-effort
        if cid not in conn.rooms:
            return
        if event.type == "typing":
            leases.renew(cid, conn.user_id, event.sender_name or "")
            bus.publish(cid, TYPING_START,
                        {"sender_id": conn.user_id, "sender_name": event.sender_name or ""}, exclude=conn)
        else:
            leases.release(cid, conn.user_id)
            bus.publish(cid, TYPING_STOP, {"sender_id": conn.user_id}, exclude=conn)

    else:
        conn.enqueue({"type": "error", "reason": "unknown-event"})


def sweep_typing(bus: DeliveryBus, leases: TypingLeases) -> int:
    """Emit typing-stop for every lease that lapsed without renewal."""
    lapsed = leases.expire()
    for signal in lapsed:
        bus.publish(signal.conversation_id, TYPING_STOP, {"sender_id": signal.sender_id})
    return len(lapsed)


async def typing_sweeper(bus: DeliveryBus = bus, leases: TypingLeases = typing_leases,
                         interval: float = TYPING_SWEEP_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        sweep_typing(bus, leases)


@router.websocket("/ws/chat")
async def websocket_chat(
    ws: WebSocket,
    token: Optional[str] = Query(None),
    provider: FirebaseService = Depends(get_identity_provider),
    service: ChatService = Depends(get_service),
):
    """WebSocket endpoint for real-time chat; the token may also come as a bearer header"""
    try:
        user = provider.verify_token(token or bearer_token(ws.headers.get("authorization")))
    except ChatError as e:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=e.reason)

    bus = service.bus
    await ws.accept()
    conn = Connection(ws, user.user_id)
    bus.register(conn)
    writer = asyncio.create_task(conn.run_writer())
    logger.info("WebSocket connection %s opened for %s", conn.id, user.user_id)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                event = RoomEvent.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError):
                conn.enqueue({"type": "error", "reason": "malformed-event"})
                continue
            await handle_event(conn, event, service, bus, typing_leases)
    except WebSocketDisconnect:
        logger.info("WebSocket connection %s closed for %s", conn.id, user.user_id)
    finally:
        disconnect(conn, bus, typing_leases)
        writer.cancel()
