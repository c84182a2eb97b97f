from __future__ import annotations

import enum
import logging
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Hashable, Iterator, TypeVar

from .api import LockStore, hold
from .exceptions import LockAcquisitionTimeout

if TYPE_CHECKING:
    from .retry import RetryPolicy, RetryState
    from .storage import UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SectionState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACQUIRED = "acquired"
    TIMED_OUT = "timed_out"
    RUNNING = "running"
    COMMITTED = "committed"
    ABORTED = "aborted"
    RELEASED = "released"


Listener = Callable[[str, SectionState], None]


def lock_key(resource: str, resource_id: Hashable) -> str:
    """Conventional lock key: ``lock_key("stock", 1) == "stock:lock:1"``."""
    return f"{resource}:lock:{resource_id}"


class CriticalSectionRunner:
    """
    Composes lock acquisition, a unit of work, and lock release.

    Two compositions are offered as separate operations because their
    guarantees differ:

    ``execute_lock_then_transact``
        lock -> begin -> work -> commit -> release.
        Release strictly follows commit, so the next holder always reads
        committed data. Use this one.

    ``execute_transact_with_inner_lock``
        begin -> lock -> work -> release -> commit.
        The lock is released while the transaction is still open. Another
        caller can take the lock in that window, read the pre-commit value
        and overwrite this caller's update (lost update). It exists to
        demonstrate the hazard. The lock itself behaves correctly; the
        defect is purely the order of release and commit.

    Outcomes are distinguishable by the caller: `LockAcquisitionTimeout`
    means the lock was never obtained; any other exception is the unit of
    work's own, re-raised unchanged after the lock was released; a return
    value means the work committed.

    Parameters
    ----------
    store : LockStore
        Shared lock service.

    unit_of_work : UnitOfWork
        Transaction boundary collaborator.

    retry_policy : RetryPolicy | None
        Wait strategy between ``try_acquire`` attempts. None waits on the
        store's release notifications instead of polling.

    timeout : float | None, default=3.0
        Lock acquisition deadline in seconds. None waits indefinitely.

    listener : Callable[[str, SectionState], None] | None
        Receives every state transition, in order, on the calling thread.
    """

    def __init__(
        self,
        store: LockStore,
        unit_of_work: UnitOfWork,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        listener: Listener | None = None,
    ) -> None:
        self._store = store
        self._unit_of_work = unit_of_work
        self._retry_policy = retry_policy
        self._timeout = timeout
        self._sleep = sleep
        self._listener = listener
        self._retry_lock = threading.Lock()
        self._retry_count = 0

    @classmethod
    def from_settings(cls, store: LockStore, unit_of_work: UnitOfWork, settings=None, **kwargs):
        from .conf import get_settings

        settings = settings or get_settings()
        kwargs.setdefault("timeout", settings.lock_timeout)
        return cls(store, unit_of_work, **kwargs)

    @property
    def retry_policy(self) -> RetryPolicy | None:
        return self._retry_policy

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def retry_count(self) -> int:
        """Failed acquisition attempts across every call since the last reset."""
        with self._retry_lock:
            return self._retry_count

    def reset_retry_count(self) -> None:
        with self._retry_lock:
            self._retry_count = 0

    def _count_retry(self, key: str, state: RetryState) -> None:
        with self._retry_lock:
            self._retry_count += 1

    def _transition(self, key: str, state: SectionState) -> None:
        logger.debug("Critical section %s: %s", key, state.value)
        if self._listener is not None:
            self._listener(key, state)

    @contextmanager
    def _locked(self, key: str) -> Iterator[str]:
        self._transition(key, SectionState.ACQUIRING)
        acquired = False
        try:
            with hold(
                self._store,
                key,
                timeout=self._timeout,
                retry_policy=self._retry_policy,
                sleep=self._sleep,
                on_retry=self._count_retry,
            ) as owner:
                acquired = True
                self._transition(key, SectionState.ACQUIRED)
                yield owner
        except LockAcquisitionTimeout:
            if not acquired:
                self._transition(key, SectionState.TIMED_OUT)
            raise
        finally:
            if acquired:
                self._transition(key, SectionState.RELEASED)

    def execute_lock_then_transact(self, key: str, work: Callable[[], T]) -> T:
        """
        Hold the lock around the whole unit of work, commit included.

        Raises
        ------
        LockAcquisitionTimeout
            The lock was not obtained; ``work`` never ran.
        """
        self._transition(key, SectionState.IDLE)
        with self._locked(key):
            self._transition(key, SectionState.RUNNING)
            try:
                result = self._unit_of_work.run_atomically(work)
            except BaseException:
                self._transition(key, SectionState.ABORTED)
                raise
            self._transition(key, SectionState.COMMITTED)
            return result

    def execute_transact_with_inner_lock(self, key: str, work: Callable[[], T]) -> T:
        """
        Open the unit of work first and take the lock inside it.

        The lock is released before the unit of work commits, which lets
        concurrent callers read stale data and lose updates. Kept on
        purpose to demonstrate that ordering defect.
        """
        self._transition(key, SectionState.IDLE)
        running = False
        try:
            with self._unit_of_work.begin():
                with self._locked(key):
                    running = True
                    self._transition(key, SectionState.RUNNING)
                    result = work()
        except BaseException:
            if running:
                self._transition(key, SectionState.ABORTED)
            raise
        self._transition(key, SectionState.COMMITTED)
        return result


def run_unguarded(unit_of_work: UnitOfWork, work: Callable[[], T]) -> T:
    """
    Run ``work`` in a unit of work with no concurrency control at all.

    Negative control: concurrent read-modify-write through this path loses
    updates.
    """
    return unit_of_work.run_atomically(work)


def measure_contention(
    runner: CriticalSectionRunner,
    key: str,
    work: Callable[[], Any],
    callers: int,
    *,
    max_workers: int = 32,
    recorder=None,
) -> list[BaseException]:
    """
    Fire ``callers`` concurrent ``execute_lock_then_transact`` calls.

    Each call's latency goes to ``recorder`` (a `LatencyRecorder`) when
    given. Returns the exceptions raised by failed calls.
    """
    from concurrent.futures import ThreadPoolExecutor

    def call() -> None:
        if recorder is None:
            runner.execute_lock_then_transact(key, work)
            return
        with recorder.measure():
            runner.execute_lock_then_transact(key, work)

    failures: list[BaseException] = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(call) for _ in range(callers)]
        for future in futures:
            exc = future.exception()
            if exc is not None:
                failures.append(exc)

    logger.info(
        "%d callers through %s: %d failed, %d lock retries",
        callers, key, len(failures), runner.retry_count,
    )
    return failures
