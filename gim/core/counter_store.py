"""
Shared counter stores for rate limiting.

A counter store offers atomic increment-with-expiry. The expiry is set when
a key is first incremented and never extended, so a window's counter
disappears on its own once its TTL lapses.

- MemoryCounterStore: single-process deployments and tests
- DatabaseCounterStore: counters shared across processes through the
  application database (ratelimitcounter table)
"""

import time
from datetime import timedelta
from typing import Callable, Dict, List, Protocol, Tuple

import anyio.to_thread
import structlog
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gim.core.typing import col, utc_now
from gim.models.rate_limit_counter import RateLimitCounter

logger = structlog.get_logger(__name__)


class CounterStore(Protocol):
    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment `key`, creating it with `ttl_seconds` expiry. Returns new value."""
        ...

    async def get(self, key: str) -> int:
        ...

    async def delete(self, *keys: str) -> int:
        ...


class MemoryCounterStore:
    """In-process counters with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        # {key: [count, expires_at]}
        self._counters: Dict[str, List[float]] = {}

    def _live(self, key: str):
        entry = self._counters.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._counters[key]
            return None
        return entry

    async def incr(self, key: str, ttl_seconds: int) -> int:
        entry = self._live(key)
        if entry is None:
            entry = [0, self._clock() + ttl_seconds]
            self._counters[key] = entry
        entry[0] += 1
        return int(entry[0])

    async def get(self, key: str) -> int:
        entry = self._live(key)
        return int(entry[0]) if entry else 0

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._counters.pop(key, None) is not None:
                removed += 1
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        return len(expired)

    def clear(self) -> None:
        self._counters.clear()


class DatabaseCounterStore:
    """
    Counters in the ratelimitcounter table.

    Increments are a single UPDATE ... SET count = count + 1 RETURNING count,
    so concurrent processes never lose an increment. A missing or expired
    row is (re)created; a concurrent insert of the same key is resolved by
    retrying the update.

    Session work runs in the anyio worker thread pool so the event loop keeps
    serving other requests during the round-trip.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _incr_sync(self, key: str, ttl_seconds: int) -> int:
        with Session(self.engine) as session:
            for _ in range(3):
                now = utc_now()
                stmt = (
                    update(RateLimitCounter)
                    .where(col(RateLimitCounter.key) == key, col(RateLimitCounter.expires_at) > now)
                    .values(count=col(RateLimitCounter.count) + 1)
                    .returning(col(RateLimitCounter.count))
                )
                new_count = session.execute(stmt).scalar_one_or_none()
                if new_count is not None:
                    session.commit()
                    return int(new_count)

                # Missing or expired: clear only an expired row, a live one wins the insert race
                session.execute(
                    delete(RateLimitCounter).where(
                        col(RateLimitCounter.key) == key,
                        col(RateLimitCounter.expires_at) <= now,
                    )
                )
                session.add(
                    RateLimitCounter(
                        key=key,
                        count=1,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                )
                try:
                    session.commit()
                    return 1
                except IntegrityError:
                    session.rollback()
                    logger.debug("Concurrent counter insert, retrying", key=key)
        raise RuntimeError(f"Could not increment rate limit counter {key}")

    async def incr(self, key: str, ttl_seconds: int) -> int:
        return await anyio.to_thread.run_sync(self._incr_sync, key, ttl_seconds)

    def _get_sync(self, key: str) -> int:
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitCounter).where(
                    col(RateLimitCounter.key) == key,
                    col(RateLimitCounter.expires_at) > utc_now(),
                )
            ).first()
            return row.count if row else 0

    async def get(self, key: str) -> int:
        return await anyio.to_thread.run_sync(self._get_sync, key)

    def _delete_sync(self, keys: Tuple[str, ...]) -> int:
        with Session(self.engine) as session:
            result = session.execute(delete(RateLimitCounter).where(col(RateLimitCounter.key).in_(keys)))
            session.commit()
            return result.rowcount or 0

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await anyio.to_thread.run_sync(self._delete_sync, keys)

    def purge_expired(self) -> int:
        with Session(self.engine) as session:
            result = session.execute(delete(RateLimitCounter).where(col(RateLimitCounter.expires_at) <= utc_now()))
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged expired rate limit counters", removed=removed)
        return removed
