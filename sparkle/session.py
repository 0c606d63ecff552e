"""
Reference Session — Ephemeral numbered references per user.

A listing shown to a user is remembered as ``#1 → id, #2 → id, ...`` so a
follow-up command ("!done 2") can address an item without repeating its
id.  Entries live in memory only and expire lazily 600 seconds after they
were set; nothing is persisted and nothing runs on a timer.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 600


class ReferenceMap(Protocol):
    """Interface consumed by the command layer; swap in a shared cache if needed."""

    def set(self, user_key: str, ordered_ids: Sequence[str]) -> None: ...

    def resolve(self, user_key: str, index: int) -> Optional[str]: ...

    def evict(self, user_key: str) -> None: ...


@dataclass
class SessionEntry:
    """One user's current numbered listing."""
    item_ids: List[str] = field(default_factory=list)
    updated_at: float = 0.0

    def age(self, now: float) -> float:
        return now - self.updated_at


class ReferenceSession:
    """In-memory ReferenceMap keyed by user.

    A single lock guards the map, so ``set`` and ``resolve`` on the same
    user are mutually exclusive.  ``clock`` returns seconds (monotonic by
    default) and is injectable for tests.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries: Dict[str, SessionEntry] = {}

    def set(self, user_key: str, ordered_ids: Sequence[str]) -> None:
        """Replace the user's mapping; index i maps to ordered_ids[i-1]."""
        entry = SessionEntry(item_ids=list(ordered_ids), updated_at=self._clock())
        with self._lock:
            self._entries[user_key] = entry

    def resolve(self, user_key: str, index: int) -> Optional[str]:
        """
        Return the id shown at ``index`` (1-based), or None.

        None covers a missing mapping, an out-of-range index and an expired
        mapping alike; an expired mapping is evicted here.
        """
        with self._lock:
            entry = self._entries.get(user_key)
            if entry is None:
                return None
            if entry.age(self._clock()) > SESSION_TTL_SECONDS:
                del self._entries[user_key]
                logger.debug("reference session for %s expired", user_key)
                return None
            if not 1 <= index <= len(entry.item_ids):
                return None
            return entry.item_ids[index - 1]

    def evict(self, user_key: str) -> None:
        """Drop the user's mapping if present."""
        with self._lock:
            self._entries.pop(user_key, None)

    def clear_expired(self) -> int:
        """Remove every expired mapping. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if entry.age(now) > SESSION_TTL_SECONDS
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("cleared %d expired reference sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
