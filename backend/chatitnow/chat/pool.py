"""Waiting pool: sessions actively searching for a partner.

Entries are kept in insertion order. Scans walk that order and the first
compatible candidate wins, so the longest-waiting partner is preferred and
results are reproducible.

The pool only holds tokens; the Session itself belongs to the store.
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .schemas import PoolPhase, Profile

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class WaitingPoolEntry:
    """One outstanding search.

    ``match_lock`` is set the instant a pairing decision selects this entry,
    in the same synchronous step as the selection, so no other scan can pick
    it as well.
    """
    session_token: str
    profile: Profile
    topic: str
    generic: bool
    phase: PoolPhase = PoolPhase.SEARCHING
    match_lock: bool = False
    joined_at: float = field(default_factory=time.time)

    @property
    def open_to_any(self) -> bool:
        return self.phase == PoolPhase.OPEN_TO_ANY


class WaitingPool:
    """At most one entry per session token."""

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, WaitingPoolEntry]" = OrderedDict()

    def add(self, entry: WaitingPoolEntry) -> Optional[WaitingPoolEntry]:
        """Insert ``entry`` at the back of the pool.

        Returns:
            The stale entry it replaced for the same token, if any.
        """
        stale = self._entries.pop(entry.session_token, None)
        self._entries[entry.session_token] = entry
        logger.debug(
            "[Pool] %s joined (topic=%r, generic=%s, size=%d)",
            entry.session_token[:8], entry.topic, entry.generic, len(self._entries),
        )
        return stale

    def get(self, token: str) -> Optional[WaitingPoolEntry]:
        return self._entries.get(token)

    def remove(self, token: str) -> Optional[WaitingPoolEntry]:
        entry = self._entries.pop(token, None)
        if entry is not None:
            logger.debug("[Pool] %s removed (size=%d)", token[:8], len(self._entries))
        return entry

    def is_current(self, entry: WaitingPoolEntry) -> bool:
        """True if ``entry`` is still this token's live, unlocked entry."""
        return self._entries.get(entry.session_token) is entry and not entry.match_lock

    def candidates(self, exclude_token: str) -> Iterator[WaitingPoolEntry]:
        """Unlocked entries other than ``exclude_token``, in pool order."""
        for entry in list(self._entries.values()):
            if entry.session_token != exclude_token and not entry.match_lock:
                yield entry

    def tokens(self) -> List[str]:
        return list(self._entries.keys())

    def stats(self) -> Dict[str, int]:
        open_count = sum(1 for e in self._entries.values() if e.open_to_any)
        return {"searching": len(self._entries), "openToAny": open_count}

    def __contains__(self, token: str) -> bool:
        return token in self._entries

    def __len__(self) -> int:
        return len(self._entries)
