"""Connect, disconnect, grace periods and idle eviction.

Per-session states::

    Idle ──find_partner──> Searching ──match──> Paired
      ^                       │                   │  ^
      │                 disconnect            disconnect  reconnect
      │                 (entry dropped)           v  │
      └────────── grace expiry ─────────── Disconnected-Paired

A disconnect is only acted on if it comes from the session's *current*
connection. A client that reconnected before the old socket's disconnect was
processed must not lose its room to that late event.
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import WebSocket

from .engine import MatchingEngine
from .schemas import (
    PARTNER_CONNECTED,
    PARTNER_DISCONNECTED,
    PARTNER_RECONNECTING,
    SessionRestoredEvent,
)
from .sessions import Session

logger = logging.getLogger(__name__)


class LifecycleSupervisor:
    """Drives session state across physical connection churn."""

    def __init__(self, engine: MatchingEngine) -> None:
        self.engine = engine
        self.settings = engine.config.lifecycle
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def sessions(self):
        return self.engine.sessions

    @property
    def connections(self):
        return self.engine.connections

    # =========================================================================
    # Connect
    # =========================================================================

    async def connect(self, websocket: WebSocket, token: str) -> str:
        """Accept a socket and bind it to the session for ``token``.

        A known token is a reconnect: the grace timer is cancelled, the new
        connection rejoins the room channel, the client gets
        ``session_restored``, the partner gets ``partner_connected`` and any
        buffered messages are flushed in order.

        Returns:
            The new connection id.
        """
        connection_id = await self.connections.connect(websocket, token)
        result = self.sessions.bind(token, connection_id)
        if result.created:
            return connection_id

        session = result.session
        previous = result.previous_connection_id
        if previous is not None and previous != connection_id:
            # The old socket is stale from now on; keep it out of the room
            if session.room_id is not None:
                self.connections.leave(previous, session.room_id)
            logger.info(f"[Lifecycle] Connection {previous} superseded by {connection_id}")

        partner = None
        if session.room_id is not None:
            self.connections.join(connection_id, session.room_id)
            partner = self.engine.rooms.partner_of(session)

        restored = SessionRestoredEvent(status=self.engine.status_of(session))
        if partner is not None:
            restored.name = self.engine.display_name(partner.profile)
            restored.field = partner.profile.field
            restored.roomID = session.room_id
        logger.info(f"[Lifecycle] Session {token[:8]} restored (status={restored.status.value})")
        await self.connections.send(connection_id, restored.model_dump(mode="json", exclude_none=True))
        if partner is not None:
            await self.engine.rooms.notify(partner, PARTNER_CONNECTED)
        await self.engine.rooms.flush_pending(session)
        return connection_id

    def is_current(self, connection_id: str, token: str) -> bool:
        """True if ``connection_id`` is the live connection of ``token``."""
        return self.sessions.lookup_connection(token) == connection_id

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def handle_disconnect(self, connection_id: str, reason: str = "") -> None:
        """React to a socket going away.

        Searching sessions leave the pool immediately. Paired sessions keep
        their room and start the grace timer; the partner is told the user
        is reconnecting. Sessions with nothing to restore are deleted.
        Calling this twice for the same connection is harmless.
        """
        token = self.connections.disconnect(connection_id)
        if token is None:
            return

        session = self.sessions.get(token)
        if session is None or session.connection_id != connection_id:
            logger.debug("[Lifecycle] Stale disconnect of %s ignored", connection_id)
            return

        logger.info(f"[Lifecycle] Session {token[:8]} disconnected ({reason or 'no reason'})")
        session.connection_id = None
        self.engine.cancel_search(session)

        if session.room_id is None:
            self.sessions.delete(token)
            return

        self._start_grace(session)
        partner = self.engine.rooms.partner_of(session)
        await self.engine.rooms.notify(partner, PARTNER_RECONNECTING)

    def _start_grace(self, session: Session) -> None:
        token = session.token

        async def expire() -> None:
            await self._expire_grace(token, timer)

        session.cancel_grace_timer()
        timer = self.engine.scheduler.schedule(
            self.settings.grace_period_seconds, expire, name=f"grace:{token[:8]}",
        )
        session.grace_timer = timer
        logger.info(
            f"[Lifecycle] Grace period of {self.settings.grace_period_seconds}s started for {token[:8]}"
        )

    async def _expire_grace(self, token: str, timer) -> None:
        session = self.sessions.get(token)
        if session is None or session.grace_timer is not timer or session.connected:
            return

        session.grace_timer = None
        partner = self.engine.rooms.close_room(session)
        self.sessions.delete(token)
        logger.info(f"[Lifecycle] Grace period over for {token[:8]}, session removed")
        if partner is not None:
            await self.engine.rooms.notify(partner, PARTNER_DISCONNECTED)

    # =========================================================================
    # Idle eviction
    # =========================================================================

    async def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Force-disconnect every connection idle past the threshold.

        Returns:
            The evicted connection ids.
        """
        idle = self.connections.idle_connections(self.settings.idle_timeout_seconds, now)
        for connection_id in idle:
            logger.info(f"[Lifecycle] Evicting idle connection {connection_id}")
            await self.connections.close(connection_id)
            await self.handle_disconnect(connection_id, reason="idle timeout")
        return idle

    async def _sweep_loop(self) -> None:
        interval = self.settings.idle_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_idle()
            except Exception as exc:
                logger.error(f"[Lifecycle] Idle sweep failed: {exc}", exc_info=True)

    def start(self) -> None:
        """Start the periodic idle sweep (no-op if the interval is 0)."""
        if self._sweeper is not None or self.settings.idle_sweep_interval_seconds <= 0:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"[Lifecycle] Idle sweep every {self.settings.idle_sweep_interval_seconds}s "
            f"(timeout {self.settings.idle_timeout_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the sweep and cancel every outstanding timer."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.engine.scheduler.shutdown()
