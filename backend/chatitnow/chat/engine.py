"""Matching engine: waiting pool, phased matching and pairing.

One engine exists per server process and is handed to every handler (it
lives on ``app.state``). It owns all mutable chat state:

    sessions     token -> Session (survives reconnects)
    connections  live WebSockets and room channels
    pool         outstanding searches, in arrival order
    scheduler    phase and grace timers

Search flow for one request::

    find_partner ──phase1 delay──> priority scan ──hit──> execute_match
                                        │ miss
                                   phase = openToAny
                                        │
                                   phase2 delay ──> open scan ──hit──> execute_match
                                                        │ miss
                                                   stays in pool, still a
                                                   target for later scans

Every mutation for a transition is done synchronously before the first
await, so concurrent timers on the loop always see committed state. Timer
bodies start by checking that their entry is still the live one.
"""
import asyncio
import logging
from typing import Optional

from chatitnow.config import AppConfig

from .manager import ConnectionManager
from .matcher import Matcher
from .pool import WaitingPool, WaitingPoolEntry
from .rooms import RoomRouter
from .scheduler import Scheduler
from .schemas import (
    PARTNER_DISCONNECTED,
    FindPartnerRequest,
    MatchedEvent,
    PoolPhase,
    Profile,
    SessionStatus,
)
from .sessions import Session, SessionStore

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Owns matchmaking state and the search state machine."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.sessions = SessionStore()
        self.connections = ConnectionManager()
        self.scheduler = Scheduler()
        self.pool = WaitingPool()
        self.matcher = Matcher(self.pool, self.sessions, config.matching.generic_fields)
        self.rooms = RoomRouter(self.sessions, self.connections)

    # =========================================================================
    # Queries
    # =========================================================================

    def status_of(self, session: Session) -> SessionStatus:
        if session.paired:
            return SessionStatus.PAIRED
        if session.token in self.pool:
            return SessionStatus.SEARCHING
        return SessionStatus.IDLE

    def display_name(self, profile: Profile) -> str:
        return profile.username or self.config.matching.default_display_name

    def stats(self) -> dict:
        paired = sum(1 for s in self.sessions.all() if s.paired)
        return {
            "online": len(self.connections),
            "sessions": len(self.sessions),
            **self.pool.stats(),
            "paired": paired,
        }

    # =========================================================================
    # Search
    # =========================================================================

    async def find_partner(self, token: str, request: FindPartnerRequest) -> Optional[WaitingPoolEntry]:
        """Start a new search for ``token``.

        A session that is already paired forfeits its room first (the old
        partner sees a disconnect), and any earlier search is abandoned. The
        first scan only happens after the phase-1 delay, even when a perfect
        partner is already waiting.

        Returns:
            The new pool entry, or None if the session is unknown or offline.
        """
        session = self.sessions.get(token)
        if session is None or session.connection_id is None:
            return None

        if request.readReceipts is not None:
            session.read_receipts = request.readReceipts
        session.cancel_grace_timer()

        old_partner = self.rooms.close_room(session)
        self.cancel_search(session)

        profile = request.profile()
        session.profile = profile
        entry = WaitingPoolEntry(
            session_token=token,
            profile=profile,
            topic=profile.field,
            generic=self.matcher.is_generic(profile.field),
        )
        self.pool.add(entry)
        session.search_timer = self.scheduler.schedule(
            self.config.matching.phase1_delay_seconds,
            lambda: self._run_phase_one(entry),
            name=f"phase1:{token[:8]}",
        )
        logger.info(
            f"[Engine] {token[:8]} searching (field={profile.field!r}, generic={entry.generic})"
        )

        if old_partner is not None:
            await self.rooms.notify(old_partner, PARTNER_DISCONNECTED)
        return entry

    def cancel_search(self, session: Session) -> bool:
        """Drop the session's pool entry and phase timer, if any."""
        session.cancel_search_timer()
        removed = self.pool.remove(session.token)
        return removed is not None

    async def _run_phase_one(self, entry: WaitingPoolEntry) -> None:
        if not self.pool.is_current(entry):
            return

        pair = self.matcher.select_priority(entry)
        if pair is not None and await self.execute_match(*pair) is not None:
            return
        # An abandoned pairing leaves us unlocked; carry on to phase 2
        if not self.pool.is_current(entry):
            return

        session = self.sessions.get(entry.session_token)
        if session is None:
            self.pool.remove(entry.session_token)
            return

        entry.phase = PoolPhase.OPEN_TO_ANY
        session.search_timer = self.scheduler.schedule(
            self.config.matching.phase2_delay_seconds,
            lambda: self._run_phase_two(entry),
            name=f"phase2:{entry.session_token[:8]}",
        )
        logger.debug("[Engine] %s now open to any partner", entry.session_token[:8])

    async def _run_phase_two(self, entry: WaitingPoolEntry) -> None:
        if not self.pool.is_current(entry):
            return

        pair = self.matcher.select_open(entry)
        if pair is not None and await self.execute_match(*pair) is not None:
            return
        if not self.pool.is_current(entry):
            return

        session = self.sessions.get(entry.session_token)
        if session is not None:
            session.search_timer = None
        logger.debug("[Engine] %s keeps waiting in the pool", entry.session_token[:8])

    # =========================================================================
    # Pairing
    # =========================================================================

    async def execute_match(self, first: WaitingPoolEntry, second: WaitingPoolEntry) -> Optional[str]:
        """Turn two locked pool entries into a room.

        If either side has no live connection the pairing is abandoned: the
        connected side is unlocked so later scans can pick it, and the other
        side is left to the lifecycle supervisor.

        Returns:
            The new room id, or None if the pairing was abandoned.
        """
        a = self.sessions.get(first.session_token)
        b = self.sessions.get(second.session_token)
        conn_a = a.connection_id if a is not None else None
        conn_b = b.connection_id if b is not None else None
        live_a = self.connections.is_connected(conn_a)
        live_b = self.connections.is_connected(conn_b)

        if not (live_a and live_b):
            if live_a:
                self.matcher.unlock(first)
            if live_b:
                self.matcher.unlock(second)
            # Entries whose session no longer exists can never be resolved
            for entry, session in ((first, a), (second, b)):
                if session is None:
                    self.pool.remove(entry.session_token)
            logger.info(
                f"[Engine] Pairing {first.session_token[:8]} <-> {second.session_token[:8]} "
                "abandoned: partner unreachable"
            )
            return None

        room_id = f"{conn_a}#{conn_b}"
        self.pool.remove(first.session_token)
        self.pool.remove(second.session_token)
        a.cancel_search_timer()
        b.cancel_search_timer()
        self.rooms.open_room(a, b, room_id)
        logger.info(f"[Engine] Matched {a.token[:8]} <-> {b.token[:8]} in room {room_id}")

        await asyncio.gather(
            self.connections.send(conn_a, MatchedEvent(
                name=self.display_name(b.profile), field=b.profile.field, roomID=room_id,
            )),
            self.connections.send(conn_b, MatchedEvent(
                name=self.display_name(a.profile), field=a.profile.field, roomID=room_id,
            )),
        )
        return room_id

    # =========================================================================
    # Leaving
    # =========================================================================

    async def leave_partner(self, token: str) -> bool:
        """Explicitly end the current chat (or search).

        Only the partner is notified. Both sessions stay in the store and may
        search again at once. Calling this when there is nothing to leave is
        a no-op.

        Returns:
            True if a room or a search was ended.
        """
        session = self.sessions.get(token)
        if session is None:
            return False

        was_searching = self.cancel_search(session)
        was_paired = session.paired
        partner = self.rooms.close_room(session)
        if not (was_paired or was_searching):
            return False

        logger.info(f"[Engine] {token[:8]} left (paired={was_paired}, searching={was_searching})")
        if partner is not None:
            await self.rooms.notify(partner, PARTNER_DISCONNECTED)
        return True

    async def block_partner(self, token: str) -> bool:
        """Leave the current partner and keep the pair apart for a while."""
        session = self.sessions.get(token)
        if session is None or session.partner_token is None:
            return False
        self.sessions.block(token, session.partner_token, self.config.matching.block_duration_seconds)
        logger.info(f"[Engine] {token[:8]} blocked {session.partner_token[:8]}")
        return await self.leave_partner(token)
