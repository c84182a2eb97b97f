from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, Protocol

from .exceptions import LockAcquisitionTimeout

if TYPE_CHECKING:
    from .retry import RetryPolicy, RetryState

logger = logging.getLogger(__name__)

RetryCallback = Callable[[str, "RetryState"], None]


class LockStore(Protocol):
    """
    Protocol describing an ownership-aware lock service.

    Every operation takes the caller's owner token explicitly, so ownership
    is never tied to the thread that happens to run the code.
    Implementations: `InMemoryLockStore` (process-local simulation of a
    remote SETNX/DEL service) and `PostgresAdvisoryLockStore`.
    """

    def try_acquire(self, key: str, owner: str) -> bool: ...
    def acquire(self, key: str, owner: str, timeout: float | None = None) -> bool: ...
    def release(self, key: str, owner: str) -> bool: ...
    def is_locked(self, key: str, owner: str) -> bool: ...
    def clear(self) -> None: ...


def new_owner_token() -> str:
    """Mint an opaque owner token for one logical lock holder."""
    return uuid.uuid4().hex


def acquire_with_policy(
    store: LockStore,
    key: str,
    owner: str,
    policy: RetryPolicy,
    *,
    timeout: float | None = None,
    state: RetryState | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: RetryCallback | None = None,
) -> bool:
    """
    Poll ``store.try_acquire`` until it succeeds or the deadline passes.

    The wait between attempts comes from ``policy``. Each failed attempt
    bumps ``state.retry_count`` and calls ``on_retry(key, state)``. The
    deadline is hard: a computed delay is cut short so the loop never
    sleeps past it.

    Returns
    -------
    bool
        True once acquired, False if ``timeout`` elapsed first.
    """
    if state is None:
        state = policy.new_state()
    deadline = None if timeout is None else time.monotonic() + timeout

    while not store.try_acquire(key, owner):
        state.retry_count += 1
        if on_retry is not None:
            on_retry(key, state)

        delay = policy.next_delay(state)
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug(
                    "Gave up on lock %s after %d retries (timeout=%ss)",
                    key, state.retry_count, timeout,
                )
                return False
            delay = min(delay, remaining)

        sleep(delay)

    return True


@contextmanager
def hold(
    store: LockStore,
    key: str,
    *,
    timeout: float | None = 3.0,
    retry_policy: RetryPolicy | None = None,
    owner: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: RetryCallback | None = None,
) -> Iterator[str]:
    """
    Hold the lock for ``key`` for the duration of the block.

    Parameters
    ----------
    store : LockStore
        Lock service to acquire from.

    key : str
        Lock identifier, e.g. "stock:lock:1".

    timeout : float | None, default=3.0
        Maximum time (in seconds) to wait. None waits indefinitely.

    retry_policy : RetryPolicy | None
        How to wait between attempts. None parks on the store's own
        wait-for-release mechanism (``store.acquire``).

    owner : str | None
        Owner token to acquire with. A fresh one is minted when omitted.

    Yields
    ------
    str
        The owner token holding the lock.

    Raises
    ------
    LockAcquisitionTimeout
        If the lock cannot be acquired within the timeout. Nothing is
        released in that case, since nothing was acquired.

    Example
    -------
    >>> with hold(store, "stock:lock:1", retry_policy=FullJitter()):
    ...     decrease_stock()
    """
    if owner is None:
        owner = new_owner_token()

    if retry_policy is None:
        acquired = store.acquire(key, owner, timeout)
    else:
        acquired = acquire_with_policy(
            store, key, owner, retry_policy,
            timeout=timeout, sleep=sleep, on_retry=on_retry,
        )

    if not acquired:
        raise LockAcquisitionTimeout(key, timeout)

    try:
        yield owner
    finally:
        if store.is_locked(key, owner):
            store.release(key, owner)
        else:
            logger.warning(
                "Lock %s was no longer held by %s at release (expired?)", key, owner
            )
