"""Session store: per-user state keyed by the client-supplied token.

A Session outlives the physical connections that carry it. Everything that
must survive a reconnect (room membership, partner, buffered messages, block
list) lives here, and all routing resolves the *current* connection through
the token rather than caching a connection id.

Invariants maintained by callers through the helpers below:
    - ``room_id`` is set if and only if ``partner_token`` is set
    - two sessions in a room reference each other symmetrically
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .scheduler import ScheduledTask
from .schemas import Profile, ReceiveMessageEvent

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Durable state for one anonymous user."""

    token: str
    connection_id: Optional[str] = None
    profile: Profile = field(default_factory=Profile)
    room_id: Optional[str] = None
    partner_token: Optional[str] = None
    pending_messages: List[ReceiveMessageEvent] = field(default_factory=list)
    read_receipts: bool = True
    # other token -> unix expiry
    block_list: Dict[str, float] = field(default_factory=dict)
    grace_timer: Optional[ScheduledTask] = None
    search_timer: Optional[ScheduledTask] = None

    @property
    def connected(self) -> bool:
        return self.connection_id is not None

    @property
    def paired(self) -> bool:
        return self.room_id is not None

    def cancel_grace_timer(self) -> None:
        if self.grace_timer is not None:
            self.grace_timer.cancel()
            self.grace_timer = None

    def cancel_search_timer(self) -> None:
        if self.search_timer is not None:
            self.search_timer.cancel()
            self.search_timer = None

    def clear_room(self) -> None:
        self.room_id = None
        self.partner_token = None
        self.pending_messages.clear()

    def is_blocking(self, other_token: str, now: Optional[float] = None) -> bool:
        """True if this session has an unexpired block on ``other_token``."""
        expires_at = self.block_list.get(other_token)
        if expires_at is None:
            return False
        if expires_at <= (time.time() if now is None else now):
            del self.block_list[other_token]
            return False
        return True


@dataclass
class BindResult:
    session: Session
    created: bool
    # Connection the session was bound to before this call, if any
    previous_connection_id: Optional[str] = None


class SessionStore:
    """Owns every Session for the lifetime of the process."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def bind(self, token: str, connection_id: str) -> BindResult:
        """Attach a live connection to the session for ``token``.

        Creates the session on first sight of a token. For a known token the
        connection id is replaced and any pending grace timer is cancelled,
        since the user is back.
        """
        session = self._sessions.get(token)
        if session is None:
            session = Session(token=token, connection_id=connection_id)
            self._sessions[token] = session
            logger.info(f"[Sessions] New session {_short(token)} on connection {connection_id}")
            return BindResult(session=session, created=True)

        previous = session.connection_id
        session.connection_id = connection_id
        session.cancel_grace_timer()
        logger.info(
            f"[Sessions] Session {_short(token)} rebound to {connection_id} "
            f"(previous={previous}, paired={session.paired})"
        )
        return BindResult(session=session, created=False, previous_connection_id=previous)

    def get(self, token: Optional[str]) -> Optional[Session]:
        if token is None:
            return None
        return self._sessions.get(token)

    def lookup_connection(self, token: Optional[str]) -> Optional[str]:
        """Return the live connection id for ``token``, or None if offline."""
        session = self.get(token)
        return session.connection_id if session else None

    def delete(self, token: str) -> Optional[Session]:
        """Remove a session, cancelling any timers it still owns."""
        session = self._sessions.pop(token, None)
        if session is not None:
            session.cancel_grace_timer()
            session.cancel_search_timer()
            logger.info(f"[Sessions] Session {_short(token)} deleted")
        return session

    def block(self, token_a: str, token_b: str, duration_seconds: float, now: Optional[float] = None) -> None:
        """Record a mutual block between two sessions."""
        expires_at = (time.time() if now is None else now) + duration_seconds
        for owner, other in ((token_a, token_b), (token_b, token_a)):
            session = self._sessions.get(owner)
            if session is not None:
                session.block_list[other] = expires_at

    def is_blocked(self, token_a: str, token_b: str, now: Optional[float] = None) -> bool:
        """True if either side currently blocks the other."""
        for owner, other in ((token_a, token_b), (token_b, token_a)):
            session = self._sessions.get(owner)
            if session is not None and session.is_blocking(other, now):
                return True
        return False

    def __contains__(self, token: str) -> bool:
        return token in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def all(self) -> List[Session]:
        return list(self._sessions.values())


def _short(token: str) -> str:
    """Truncated token for log lines."""
    return token[:8]
