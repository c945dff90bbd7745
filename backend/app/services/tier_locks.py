"""
Per-(user, tier) exclusive locks.

A tier's order is the only shared mutable state in the engine: a comparison
result is only valid against the tier it was computed from. Every operation
that reads a tier and then writes it holds that tier's lock for the read and
the write. Different tiers and different users never contend.

Waiting is short and bounded: a request that cannot get the lock in
TIER_LOCK_WAIT_SECONDS fails with TierBusyError instead of queueing.

The registry is per process and only tracks tiers someone is holding or
waiting on. Comparing flows also claim their tier in the ranking_flows
table, which covers the time between requests.
"""
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from app.core.config import settings
from app.db.models import Rating
from app.services.score_model import TIER_ORDER

logger = logging.getLogger(__name__)

LockKey = tuple[UUID, Rating]


class TierBusyError(Exception):
    """Raised when another operation holds the tier."""


class _TierLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        # Holders plus waiters; the entry is dropped when this reaches zero
        self.users = 0


class TierLockRegistry:
    def __init__(self, wait_seconds: float | None = None) -> None:
        self._wait_seconds = wait_seconds
        self._guard = threading.Lock()
        self._locks: dict[LockKey, _TierLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @property
    def wait_seconds(self) -> float:
        if self._wait_seconds is not None:
            return self._wait_seconds
        return settings.TIER_LOCK_WAIT_SECONDS

    def _check_out(self, key: LockKey) -> _TierLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _TierLock()
            entry.users += 1
            return entry

    def _check_in(self, key: LockKey, entry: _TierLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, user_id: UUID, *ratings: Rating | None) -> Iterator[None]:
        """
        Hold the locks for every tier in *ratings* (None entries ignored).

        Locks are taken best tier first, so two operations spanning the same
        pair of tiers cannot deadlock.
        """
        wanted = {Rating(r) for r in ratings if r is not None}
        checked_out: list[tuple[LockKey, _TierLock]] = []
        acquired: list[_TierLock] = []
        try:
            for rating in (r for r in TIER_ORDER if r in wanted):
                key = (user_id, rating)
                entry = self._check_out(key)
                checked_out.append((key, entry))
                if not entry.lock.acquire(timeout=self.wait_seconds):
                    logger.warning("Tier busy: user=%s tier=%s", user_id, rating.value)
                    raise TierBusyError(
                        f"Another ranking operation is in progress for your {rating.value} books"
                    )
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()
            for key, entry in reversed(checked_out):
                self._check_in(key, entry)

    def is_held(self, user_id: UUID, rating: Rating) -> bool:
        with self._guard:
            entry = self._locks.get((user_id, Rating(rating)))
        return entry is not None and entry.lock.locked()


tier_locks = TierLockRegistry()
