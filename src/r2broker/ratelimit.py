"""Fixed-window rate limiting for mutating operations.

Counters are keyed by ``(scope, operation, actor_id)``. The first call in a
window sets the count to 1 and a deadline of ``now + window_seconds``; later
calls increment while ``count < limit`` and are refused (without
incrementing) once the limit is reached. After the deadline the next call
opens a fresh window. Bursts at window boundaries are accepted.

Each store performs check-and-increment as one atomic step so two parallel
requests can never both pass the last free slot.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import aiosqlite

from r2broker import metrics

logger = logging.getLogger(__name__)


@dataclass
class RateLimitCounter:
    """State of one fixed window.

    Attributes:
        actor_id: Who performed the operations.
        operation: Operation name (e.g. "upload", "sync").
        count: Operations admitted in the current window.
        window_expires_at: Epoch seconds at which the window closes.
    """

    actor_id: str
    operation: str
    count: int
    window_expires_at: float


class CounterStore(Protocol):
    """Storage for fixed-window counters."""

    async def try_increment(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> int | None:
        """Atomically admit one operation.

        Returns:
            The new count, or None if the window is already at ``limit``.
        """
        ...

    async def get(self, key: str) -> tuple[int, float] | None: ...

    async def reset(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryCounterStore:
    """Process-local counters guarded by a lock."""

    def __init__(self) -> None:
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    async def try_increment(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> int | None:
        with self._lock:
            current = self._counters.get(key)
            if current is None or current[1] <= now:
                self._counters[key] = (1, now + window_seconds)
                return 1
            count, expires_at = current
            if count >= limit:
                return None
            self._counters[key] = (count + 1, expires_at)
            return count + 1

    async def get(self, key: str) -> tuple[int, float] | None:
        with self._lock:
            return self._counters.get(key)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    async def close(self) -> None:
        pass


class SQLiteCounterStore:
    """Counters persisted in SQLite, shared by every process using the file.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init_db().
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def init_db(self) -> None:
        """Open the database and create the counter table if missing."""
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA synchronous = NORMAL")
        await self._db.execute("PRAGMA busy_timeout = 5000")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS rate_limits (
                counter_key        TEXT PRIMARY KEY,
                count              INTEGER NOT NULL,
                window_expires_at  REAL NOT NULL
            )
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def try_increment(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> int | None:
        assert self._db is not None
        # A refused update returns no row.
        async with self._db.execute(
            """
            INSERT INTO rate_limits (counter_key, count, window_expires_at)
            VALUES (:key, 1, :expires)
            ON CONFLICT(counter_key) DO UPDATE SET
                count = CASE WHEN rate_limits.window_expires_at <= :now
                             THEN 1 ELSE rate_limits.count + 1 END,
                window_expires_at = CASE WHEN rate_limits.window_expires_at <= :now
                                         THEN excluded.window_expires_at
                                         ELSE rate_limits.window_expires_at END
            WHERE rate_limits.window_expires_at <= :now OR rate_limits.count < :limit
            RETURNING count
            """,
            {"key": key, "expires": now + window_seconds, "now": now, "limit": limit},
        ) as cursor:
            row = await cursor.fetchone()
        await self._db.commit()
        return row[0] if row else None

    async def get(self, key: str) -> tuple[int, float] | None:
        assert self._db is not None
        async with self._db.execute(
            "SELECT count, window_expires_at FROM rate_limits WHERE counter_key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        return (row[0], row[1]) if row else None

    async def reset(self, key: str) -> None:
        assert self._db is not None
        await self._db.execute("DELETE FROM rate_limits WHERE counter_key = ?", (key,))
        await self._db.commit()


class FixedWindowRateLimiter:
    """Bounds how often one actor may perform an operation.

    Attributes:
        scope: Optional prefix isolating tenants (site, bucket) that share
            a counter store.
    """

    def __init__(
        self,
        store: CounterStore,
        scope: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.scope = scope
        self._clock = clock

    def _make_key(self, actor_id: str, operation: str) -> str:
        if self.scope:
            return f"ratelimit:{self.scope}:{operation}:{actor_id}"
        return f"ratelimit:{operation}:{actor_id}"

    async def check_and_increment(
        self, actor_id: str, operation: str, limit: int, window_seconds: int
    ) -> bool:
        """Admit one operation if the actor is under ``limit`` for the window.

        Returns:
            True if allowed (and counted), False if refused.
        """
        if limit <= 0:
            allowed = False
        else:
            count = await self.store.try_increment(
                self._make_key(actor_id, operation), limit, window_seconds, self._clock()
            )
            allowed = count is not None

        if not allowed:
            metrics.record_rate_limit_rejection(operation)
            logger.warning(
                "Rate limit exceeded",
                extra={"context": {"actor": actor_id, "operation": operation, "limit": limit}},
            )
        return allowed

    async def counter(self, actor_id: str, operation: str) -> RateLimitCounter | None:
        """Return the stored window for ``(actor_id, operation)``, if any."""
        state = await self.store.get(self._make_key(actor_id, operation))
        if state is None:
            return None
        return RateLimitCounter(actor_id, operation, state[0], state[1])

    async def reset(self, actor_id: str, operation: str) -> None:
        await self.store.reset(self._make_key(actor_id, operation))

    async def close(self) -> None:
        await self.store.close()
