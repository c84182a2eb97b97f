from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from django.db import DEFAULT_DB_ALIAS, connections

from ..exceptions import LockOwnershipViolation
from ..hashing import advisory_lock_id

logger = logging.getLogger(__name__)


@dataclass
class _Hold:
    owner: str
    depth: int = 1


class PostgresAdvisoryLockStore:
    """
    Lock store backed by PostgreSQL session-level advisory locks.

    This is the real-server counterpart of `InMemoryLockStore`: the same
    protocol, with mutual exclusion enforced by PostgreSQL across every
    process and machine connected to the same database.

    Key properties
    --------------
    - Connection-scoped: a lock belongs to the Django connection of the
      thread that took it. If that connection drops (process crash),
      PostgreSQL releases the lock, which plays the role a TTL plays for
      the in-memory store.
    - Owner tokens: PostgreSQL lets one session take the same advisory
      lock twice, so ownership by token is checked in-process before the
      database is asked. Re-entry by the same token is counted.
    - A token must release on the thread (connection) that acquired.

    Timeout behavior
    ----------------
    ``acquire`` polls ``pg_try_advisory_lock`` every ``poll_interval``
    seconds until the deadline, never blocking the connection inside
    PostgreSQL. ``timeout=None`` polls indefinitely.
    """

    def __init__(
        self,
        using: str = DEFAULT_DB_ALIAS,
        poll_interval: float = 0.05,
        namespace: str = "",
    ) -> None:
        self._using = using
        self._poll_interval = poll_interval
        self._namespace = namespace
        self._mutex = threading.Lock()
        self._holds: dict[str, _Hold] = {}

    def _lock_id(self, key: str) -> int:
        return advisory_lock_id(key, self._namespace)

    def _query(self, sql: str, params: list) -> bool:
        with connections[self._using].cursor() as cursor:
            cursor.execute(sql, params)
            return bool(cursor.fetchone()[0])

    def try_acquire(self, key: str, owner: str) -> bool:
        with self._mutex:
            hold = self._holds.get(key)
            if hold is not None:
                if hold.owner != owner:
                    return False
                hold.depth += 1
                return True

            acquired = self._query(
                "SELECT pg_try_advisory_lock(%s);", [self._lock_id(key)]
            )
            if acquired:
                self._holds[key] = _Hold(owner)
                logger.debug("Advisory lock acquired: %s (owner=%s)", key, owner)
            return acquired

    def acquire(self, key: str, owner: str, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if self.try_acquire(key, owner):
                return True
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                time.sleep(min(self._poll_interval, remaining))
            else:
                time.sleep(self._poll_interval)

    def release(self, key: str, owner: str) -> bool:
        with self._mutex:
            hold = self._holds.get(key)
            if hold is None or hold.owner != owner:
                logger.warning(
                    "%s", LockOwnershipViolation(key, hold.owner if hold else None, owner)
                )
                return False

            hold.depth -= 1
            if hold.depth > 0:
                return True

            del self._holds[key]
            unlocked = self._query(
                "SELECT pg_advisory_unlock(%s);", [self._lock_id(key)]
            )

        if not unlocked:
            # The session no longer held it: released from another thread's
            # connection, or the connection was recycled.
            logger.warning("PostgreSQL did not hold advisory lock %s at release", key)
        else:
            logger.debug("Advisory lock released: %s (owner=%s)", key, owner)
        return unlocked

    def is_locked(self, key: str, owner: str) -> bool:
        with self._mutex:
            hold = self._holds.get(key)
            return hold is not None and hold.owner == owner

    def clear(self) -> None:
        """Drop every advisory lock held by the current session."""
        with self._mutex:
            self._holds.clear()
            with connections[self._using].cursor() as cursor:
                cursor.execute("SELECT pg_advisory_unlock_all();")
