"""Room membership and partner-to-partner routing.

A room is not stored on its own. It is the symmetric ``room_id`` /
``partner_token`` pair on two Sessions plus a channel in the connection
registry. This module is the only place that writes those fields.

Delivery rules:
    - chat messages resolve the partner's *current* connection through the
      session store; if the partner is offline (or the send fails) they are
      buffered on the partner's session and flushed in order on reconnect
    - typing and reactions go to the room channel and are dropped when the
      partner is offline
    - read receipts need both sides to have receipts enabled
"""
import logging
from typing import Optional

from .manager import ConnectionManager, Outbound
from .schemas import (
    MessageId,
    MessageReadEvent,
    PartnerTypingEvent,
    ReceiveMessageEvent,
    ReceiveReactionEvent,
    SendMessageRequest,
    SendReactionRequest,
)
from .sessions import Session, SessionStore

logger = logging.getLogger(__name__)


class RoomRouter:

    def __init__(self, sessions: SessionStore, connections: ConnectionManager) -> None:
        self.sessions = sessions
        self.connections = connections

    # =========================================================================
    # Room state
    # =========================================================================

    def open_room(self, first: Session, second: Session, room_id: str) -> None:
        """Pair two sessions symmetrically and join their live connections."""
        for session, partner in ((first, second), (second, first)):
            session.room_id = room_id
            session.partner_token = partner.token
            session.pending_messages.clear()
            if session.connection_id is not None:
                self.connections.join(session.connection_id, room_id)
        logger.info(f"[Rooms] Room {room_id} opened")

    def partner_of(self, session: Session) -> Optional[Session]:
        """The session on the other side of ``session``'s room, if consistent."""
        if session.room_id is None:
            return None
        partner = self.sessions.get(session.partner_token)
        if partner is None or partner.room_id != session.room_id:
            return None
        return partner

    def close_room(self, session: Session) -> Optional[Session]:
        """Tear a room down on both sides.

        Clears room, partner and buffered messages on both sessions and
        empties the channel. Never deletes either Session.

        Returns:
            The former partner, if it still exists.
        """
        room_id = session.room_id
        if room_id is None:
            return None
        partner = self.partner_of(session)
        session.clear_room()
        if partner is not None:
            partner.clear_room()
        self.connections.close_channel(room_id)
        logger.info(f"[Rooms] Room {room_id} closed")
        return partner

    async def notify(self, session: Optional[Session], event: Outbound) -> bool:
        """Send a control event to a session's live connection, if any."""
        if session is None or session.connection_id is None:
            return False
        return await self.connections.send(session.connection_id, event)

    # =========================================================================
    # Chat messages (buffered)
    # =========================================================================

    async def send_message(self, token: str, request: SendMessageRequest) -> bool:
        """Route a chat message to the sender's partner.

        Returns:
            True if delivered now, False if buffered or dropped. The sender is
            never told either way.
        """
        session = self.sessions.get(token)
        if session is None or session.room_id is None:
            logger.debug("[Rooms] send_message from %s outside a room ignored", token[:8])
            return False
        partner = self.partner_of(session)
        if partner is None:
            return False

        event = ReceiveMessageEvent(
            text=request.text,
            replyTo=request.replyTo,
            timestamp=request.timestamp,
            id=request.id,
        )

        # Queue behind anything still waiting so delivery order is preserved
        if partner.connection_id is None or partner.pending_messages:
            partner.pending_messages.append(event)
            logger.debug(
                "[Rooms] Buffered message for %s (%d pending)",
                partner.token[:8], len(partner.pending_messages),
            )
            return False

        if await self.connections.send(partner.connection_id, event):
            return True

        # Socket died under us; keep the message for the reconnect
        if partner.room_id == session.room_id:
            partner.pending_messages.append(event)
            logger.debug("[Rooms] Send to %s failed, message buffered", partner.token[:8])
        return False

    async def flush_pending(self, session: Session) -> int:
        """Deliver buffered messages in order, removing each once sent.

        Stops at the first failed send and leaves the rest buffered.

        Returns:
            Number of messages delivered.
        """
        delivered = 0
        while session.pending_messages and session.connection_id is not None:
            event = session.pending_messages[0]
            if not await self.connections.send(session.connection_id, event):
                break
            # The list may have been cleared by a teardown during the await
            if session.pending_messages and session.pending_messages[0] is event:
                session.pending_messages.pop(0)
            delivered += 1
        if delivered:
            logger.info(f"[Rooms] Flushed {delivered} buffered message(s) to {session.token[:8]}")
        return delivered

    # =========================================================================
    # Ephemeral signals (not buffered)
    # =========================================================================

    async def send_typing(self, token: str, is_typing: bool) -> None:
        session = self.sessions.get(token)
        if session is None or session.room_id is None:
            return
        await self.connections.broadcast_except(
            PartnerTypingEvent(isTyping=is_typing),
            session.room_id,
            exclude_connection_id=session.connection_id,
        )

    async def send_reaction(self, token: str, request: SendReactionRequest) -> None:
        session = self.sessions.get(token)
        if session is None or session.room_id is None:
            return
        await self.connections.broadcast_except(
            ReceiveReactionEvent(messageID=request.messageID, reaction=request.reaction),
            session.room_id,
            exclude_connection_id=session.connection_id,
        )

    # =========================================================================
    # Read receipts
    # =========================================================================

    def set_read_receipts(self, token: str, enabled: bool) -> None:
        session = self.sessions.get(token)
        if session is not None:
            session.read_receipts = enabled

    async def mark_read(self, token: str, message_id: MessageId) -> bool:
        """Tell the partner a message was read, if both sides allow receipts."""
        session = self.sessions.get(token)
        if session is None:
            return False
        partner = self.partner_of(session)
        if partner is None:
            return False
        if not (session.read_receipts and partner.read_receipts):
            return False
        return await self.notify(partner, MessageReadEvent(messageID=message_id))
