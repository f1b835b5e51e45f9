"""Tiered partner selection over the waiting pool.

Selection policy (explicit, not incidental):
    * candidates are scanned in pool insertion order; the first compatible,
      unlocked, unblocked entry wins
    * phase 1 accepts only an exactly equal, non-generic topic
    * phase 2 accepts a candidate that is open to any partner, or one whose
      topic equals ours (all generic topics count as equal)

Selection and locking happen together in ``select_*``. Nothing here awaits,
so on the event loop no other scan can observe one side locked and the
other not.
"""
import logging
from typing import Iterable, Optional, Tuple

from .pool import WaitingPool, WaitingPoolEntry
from .sessions import SessionStore

logger = logging.getLogger(__name__)

Pair = Tuple[WaitingPoolEntry, WaitingPoolEntry]


class Matcher:

    def __init__(self, pool: WaitingPool, sessions: SessionStore, generic_fields: Iterable[str]) -> None:
        self.pool = pool
        self.sessions = sessions
        self._generic = {value.strip().casefold() for value in generic_fields}

    def is_generic(self, topic: Optional[str]) -> bool:
        """Empty or reserved topics mean "no preference"."""
        return (topic or "").strip().casefold() in self._generic

    def select_priority(self, entry: WaitingPoolEntry) -> Optional[Pair]:
        """Phase-1 scan: same specific topic only."""
        if entry.generic:
            return None
        for candidate in self.pool.candidates(entry.session_token):
            if candidate.generic or candidate.topic != entry.topic:
                continue
            if self.sessions.is_blocked(entry.session_token, candidate.session_token):
                continue
            return self._lock(entry, candidate)
        return None

    def select_open(self, entry: WaitingPoolEntry) -> Optional[Pair]:
        """Phase-2 scan: any open candidate, or a same-topic one."""
        for candidate in self.pool.candidates(entry.session_token):
            same_topic = self._same_topic(entry, candidate)
            if not (candidate.open_to_any or same_topic):
                continue
            if self.sessions.is_blocked(entry.session_token, candidate.session_token):
                continue
            return self._lock(entry, candidate)
        return None

    @staticmethod
    def _same_topic(entry: WaitingPoolEntry, candidate: WaitingPoolEntry) -> bool:
        if entry.generic or candidate.generic:
            return entry.generic and candidate.generic
        return entry.topic == candidate.topic

    def unlock(self, entry: WaitingPoolEntry) -> None:
        entry.match_lock = False

    def _lock(self, entry: WaitingPoolEntry, candidate: WaitingPoolEntry) -> Pair:
        entry.match_lock = True
        candidate.match_lock = True
        logger.debug(
            "[Matcher] Locked %s <-> %s (topic=%r/%r)",
            entry.session_token[:8], candidate.session_token[:8], entry.topic, candidate.topic,
        )
        return entry, candidate
