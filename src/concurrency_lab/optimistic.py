from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Hashable, NamedTuple, Protocol

from .exceptions import RetriesExhausted, VersionConflict

logger = logging.getLogger(__name__)


class VersionedRecord(NamedTuple):
    id: Hashable
    value: Any
    version: int


class VersionedRepository(Protocol):
    """
    Storage contract for the optimistic path.

    ``write`` must succeed only when ``expected_version`` matches the stored
    version, bump the version by exactly one, and raise `VersionConflict`
    otherwise.
    """

    def read(self, record_id: Hashable) -> VersionedRecord: ...
    def write(
        self, record_id: Hashable, value: Any, expected_version: int
    ) -> VersionedRecord: ...


class OptimisticRetryRunner:
    """
    Lock-free read-modify-write with a version check and bounded retry.

    No lock is taken: the conditional write is the only synchronization
    point, so a successful return means the write extended exactly the
    version that was read. On conflict the whole cycle re-runs after a
    fixed ``retry_delay``. There is deliberately no backoff here; retry
    behaviour is isolated from any backoff strategy.

    Example
    -------
    >>> runner = OptimisticRetryRunner(repository)
    >>> runner.execute("user:1", lambda balance: balance + 100)
    """

    def __init__(
        self,
        repository: VersionedRepository,
        *,
        max_retries: int = 200,
        retry_delay: float = 0.030,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._retry_lock = threading.Lock()
        self._retry_count = 0

    @classmethod
    def from_settings(cls, repository: VersionedRepository, settings=None, **kwargs):
        from .conf import get_settings

        settings = settings or get_settings()
        kwargs.setdefault("max_retries", settings.optimistic_max_retries)
        kwargs.setdefault("retry_delay", settings.optimistic_retry_delay)
        return cls(repository, **kwargs)

    @property
    def retry_count(self) -> int:
        """Version conflicts seen across every call since the last reset."""
        with self._retry_lock:
            return self._retry_count

    def reset_retry_count(self) -> None:
        with self._retry_lock:
            self._retry_count = 0

    def execute(
        self,
        record_id: Hashable,
        mutate: Callable[[Any], Any],
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> VersionedRecord:
        """
        Read, apply ``mutate`` to the value, write back with a version check.

        Parameters
        ----------
        record_id : Hashable
            Record to update.

        mutate : Callable[[Any], Any]
            Pure function from the current value to the new value. Any error
            it raises is not retried.

        max_retries : int | None
            Attempts allowed before giving up. Defaults to the runner's.

        retry_delay : float | None
            Fixed seconds to wait after a conflict. Defaults to the runner's.

        Returns
        -------
        VersionedRecord
            The state written.

        Raises
        ------
        RetriesExhausted
            If every allowed attempt hit a version conflict.
        """
        limit = self._max_retries if max_retries is None else max_retries
        delay = self._retry_delay if retry_delay is None else retry_delay
        if limit < 1:
            raise ValueError("max_retries must be >= 1")

        for attempt in range(1, limit + 1):
            current = self._repository.read(record_id)
            new_value = mutate(current.value)
            try:
                return self._repository.write(record_id, new_value, current.version)
            except VersionConflict as exc:
                with self._retry_lock:
                    self._retry_count += 1
                logger.debug(
                    "Version conflict on %r, retry %d/%d", record_id, attempt, limit
                )
                if attempt == limit:
                    logger.warning(
                        "Optimistic update of %r unresolved after %d retries",
                        record_id, limit,
                    )
                    raise RetriesExhausted(record_id, limit) from exc
                self._sleep(delay)
