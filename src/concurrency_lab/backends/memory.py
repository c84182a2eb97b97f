from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..exceptions import LockOwnershipViolation

logger = logging.getLogger(__name__)


@dataclass
class _Hold:
    owner: str
    depth: int = 1
    expires_at: float | None = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class _WaitQueue:
    """Per-key condition that waiters park on until a release broadcast."""

    __slots__ = ("condition", "waiting")

    def __init__(self) -> None:
        self.condition = threading.Condition(threading.Lock())
        self.waiting = 0


class InMemoryLockStore:
    """
    In-process simulation of a remote lock service (Redis SETNX / DEL).

    The store keeps a key -> owner map and answers the same questions a
    remote lock server would, without requiring one. It is meant to be
    constructed once and shared by every consumer that competes for the
    same keys.

    Key properties
    --------------
    - Atomic: check-and-insert of the owner happens under a single mutex,
      so at most one owner holds a key at any instant.
    - Owner tokens: ownership is an explicit token passed by the caller,
      not the calling thread.
    - Counted re-entry: acquiring a key you already own succeeds and must
      be matched by one more ``release`` before the key is freed.
    - TTL: with ``ttl`` set, a hold that is never released expires on its
      own. Expired holds are treated as absent by every operation.

    Waiting
    -------
    ``acquire`` parks callers on a per-key condition. A release wakes all
    waiters (broadcast), and every waiter re-checks with ``try_acquire``;
    a wake-up never implies acquisition. Waiters also wake at least every
    ``max_wake_interval`` seconds, which covers TTL expiry (no release
    signal is sent for it) and any missed notification. No fairness is
    promised among waiters.
    """

    def __init__(
        self,
        ttl: float | None = None,
        max_wake_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive or None")
        if max_wake_interval <= 0:
            raise ValueError("max_wake_interval must be positive")

        self._ttl = ttl
        self._max_wake_interval = max_wake_interval
        self._clock = clock
        self._mutex = threading.Lock()
        self._holds: dict[str, _Hold] = {}
        self._queues: dict[str, _WaitQueue] = {}

    @classmethod
    def from_settings(cls, settings=None) -> InMemoryLockStore:
        from ..conf import get_settings

        settings = settings or get_settings()
        return cls(ttl=settings.lock_ttl, max_wake_interval=settings.max_wake_interval)

    # Must be called with self._mutex held.
    def _live_hold(self, key: str, now: float) -> _Hold | None:
        hold = self._holds.get(key)
        if hold is not None and hold.expired(now):
            del self._holds[key]
            logger.debug("Lock expired: %s (owner=%s)", key, hold.owner)
            return None
        return hold

    def _expiry(self, now: float) -> float | None:
        return None if self._ttl is None else now + self._ttl

    def try_acquire(self, key: str, owner: str) -> bool:
        """
        Non-blocking SETNX: take ``key`` if it is free or already ours.
        """
        now = self._clock()
        with self._mutex:
            hold = self._live_hold(key, now)
            if hold is None:
                self._holds[key] = _Hold(owner, expires_at=self._expiry(now))
                logger.debug("Lock acquired: %s (owner=%s)", key, owner)
                return True

            if hold.owner == owner:
                hold.depth += 1
                hold.expires_at = self._expiry(now)
                logger.debug(
                    "Lock re-entered: %s (owner=%s, depth=%d)", key, owner, hold.depth
                )
                return True

            holder = hold.owner

        logger.debug("Lock busy: %s (owner=%s, requester=%s)", key, holder, owner)
        return False

    def acquire(self, key: str, owner: str, timeout: float | None = None) -> bool:
        """
        Blocking acquisition with an optional deadline.

        Parameters
        ----------
        key : str
            Lock key.

        owner : str
            Caller's owner token.

        timeout : float | None
            Seconds to wait. None blocks until acquired.

        Returns
        -------
        bool
            True once acquired, False when the deadline passes.
        """
        if self.try_acquire(key, owner):
            return True

        deadline = None if timeout is None else time.monotonic() + timeout
        queue = self._queue_for(key)

        with queue.condition:
            queue.waiting += 1
            try:
                while True:
                    if self.try_acquire(key, owner):
                        return True

                    wait = self._max_wake_interval
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            logger.debug(
                                "Lock wait timed out: %s (owner=%s, timeout=%ss)",
                                key, owner, timeout,
                            )
                            return False
                        wait = min(wait, remaining)

                    queue.condition.wait(wait)
            finally:
                queue.waiting -= 1

    def _queue_for(self, key: str) -> _WaitQueue:
        with self._mutex:
            queue = self._queues.get(key)
            if queue is None:
                queue = self._queues[key] = _WaitQueue()
            return queue

    def release(self, key: str, owner: str) -> bool:
        """
        DEL the key if ``owner`` holds it and wake every waiter.

        A release by anyone else (or of a free key) changes nothing and is
        logged as a warning. It never raises.

        Returns
        -------
        bool
            True if one of the owner's holds was released.
        """
        now = self._clock()
        queue = None
        with self._mutex:
            hold = self._live_hold(key, now)
            if hold is None or hold.owner != owner:
                violation = LockOwnershipViolation(
                    key, hold.owner if hold else None, owner
                )
            else:
                violation = None
                hold.depth -= 1
                if hold.depth > 0:
                    logger.debug(
                        "Lock hold released: %s (owner=%s, depth=%d)",
                        key, owner, hold.depth,
                    )
                    return True
                del self._holds[key]
                queue = self._queues.get(key)

        if violation is not None:
            logger.warning("%s", violation)
            return False

        logger.debug("Lock released: %s (owner=%s)", key, owner)

        if queue is not None and queue.waiting > 0:
            with queue.condition:
                queue.condition.notify_all()
        return True

    def is_locked(self, key: str, owner: str) -> bool:
        """Whether ``owner`` currently holds ``key``."""
        now = self._clock()
        with self._mutex:
            hold = self._live_hold(key, now)
            return hold is not None and hold.owner == owner

    def owner_of(self, key: str) -> str | None:
        now = self._clock()
        with self._mutex:
            hold = self._live_hold(key, now)
            return None if hold is None else hold.owner

    def clear(self) -> None:
        """Drop every hold. Test-only reset."""
        with self._mutex:
            self._holds.clear()
            queues = list(self._queues.values())
            self._queues.clear()

        for queue in queues:
            with queue.condition:
                queue.condition.notify_all()
        logger.debug("All locks cleared")
