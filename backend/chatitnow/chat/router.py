"""Chat router providing the WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat?token=...: anonymous matchmaking and 1:1 chat

The token is the client's session identity. It is required at handshake
and is the only thing that ties a reconnecting socket back to its room.

Protocol Message Types (client -> server):
    - find_partner: Start searching (username, field, readReceipts)
    - send_message: Chat message to the partner
    - typing: Typing indicator (isTyping)
    - send_reaction: Reaction to a message
    - mark_read: Read receipt for a message
    - toggle_read_receipts: Enable/disable read receipts
    - disconnect_partner: Leave the current chat or search
    - block_partner: Leave and avoid this partner for a while

Server -> client events are listed in ``schemas``.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .engine import MatchingEngine
from .lifecycle import LifecycleSupervisor
from .schemas import (
    BlockPartnerRequest,
    DisconnectPartnerRequest,
    ErrorEvent,
    FindPartnerRequest,
    InboundFrame,
    MarkReadRequest,
    SendMessageRequest,
    SendReactionRequest,
    ToggleReadReceiptsRequest,
    TypingRequest,
    UnknownFrameType,
    parse_inbound,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
POLICY_VIOLATION = 1008


async def dispatch(engine: MatchingEngine, token: str, frame: InboundFrame) -> None:
    """Route one validated inbound frame to the engine."""
    if isinstance(frame, FindPartnerRequest):
        await engine.find_partner(token, frame)
    elif isinstance(frame, SendMessageRequest):
        await engine.rooms.send_message(token, frame)
    elif isinstance(frame, TypingRequest):
        await engine.rooms.send_typing(token, frame.isTyping)
    elif isinstance(frame, SendReactionRequest):
        await engine.rooms.send_reaction(token, frame)
    elif isinstance(frame, MarkReadRequest):
        await engine.rooms.mark_read(token, frame.messageID)
    elif isinstance(frame, ToggleReadReceiptsRequest):
        engine.rooms.set_read_receipts(token, frame.enabled)
    elif isinstance(frame, DisconnectPartnerRequest):
        await engine.leave_partner(token)
    elif isinstance(frame, BlockPartnerRequest):
        await engine.block_partner(token)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Client-generated session token"),
) -> None:
    """WebSocket endpoint for matchmaking and chat.

    Protocol Flow:
        1. Client connects with ?token=... (rejected with 1008 if missing)
           → known token: server sends {type: "session_restored", status}
        2. Client sends: {type: "find_partner", username, field}
           → after the phase delays both sides get {type: "matched", name, field, roomID}
        3. Client sends: {type: "send_message", text, replyTo?, timestamp?, id?}
           → partner gets {type: "receive_message", ...} now or on reconnect
        4. Client sends: {type: "disconnect_partner"}
           → partner gets {type: "partner_disconnected"}
        5. On socket drop while paired → partner gets {type: "partner_reconnecting_server"}

    Args:
        websocket: The WebSocket connection.
        token: Client-supplied session token.
    """
    token = (token or "").strip()
    if not token:
        logger.warning("[WS] Connection without session token rejected")
        await websocket.close(code=POLICY_VIOLATION)
        return

    engine: MatchingEngine = websocket.app.state.engine
    supervisor: LifecycleSupervisor = websocket.app.state.supervisor

    connection_id = await supervisor.connect(websocket, token)
    logger.info(f"[WS] Session {token[:8]} connected as {connection_id}")

    reason = "connection lost"
    try:
        # Main message loop
        while True:
            raw = await websocket.receive_text()
            engine.connections.touch(connection_id)

            if not supervisor.is_current(connection_id, token):
                logger.debug("[WS] Frame from superseded connection %s ignored", connection_id)
                continue

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"[WS] Non-JSON frame from {connection_id} ignored")
                continue

            try:
                frame = parse_inbound(data)
            except UnknownFrameType as e:
                logger.warning(f"[WS] {e} from {connection_id}")
                continue
            except ValidationError as e:
                logger.warning(f"[WS] Invalid {data.get('type')} payload from {connection_id}")
                await engine.connections.send(
                    connection_id,
                    ErrorEvent(error=f"Invalid {data.get('type')} payload: {e.error_count()} error(s)"),
                )
                continue

            logger.debug("[WS] %s received: type=%s", connection_id, frame.type)
            await dispatch(engine, token, frame)

    except WebSocketDisconnect as e:
        reason = f"client closed (code {e.code})"
    finally:
        await supervisor.handle_disconnect(connection_id, reason)
