"""
In-memory storage collaborators: a counter repository and a unit of work.

They stand in for a database so the lock and retry machinery can be
exercised without one. The behaviour that matters for the demonstrations
is modelled faithfully:

- Writes made inside a unit of work are private to it until commit. Other
  callers keep reading the last committed value (read committed).
- ``find_for_update`` takes a row lock that is held until the enclosing
  unit of work ends, like ``SELECT ... FOR UPDATE``.
- ``write`` is a conditional update on the version column; a stale
  expected version raises `VersionConflict`.

The Django-backed equivalents live in ``concurrency_lab.backends.orm``.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ContextManager, Hashable, Iterator, Protocol, TypeVar

from .exceptions import InsufficientQuantity, RecordNotFound, VersionConflict
from .optimistic import VersionedRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork(Protocol):
    """
    Runs work atomically: effects become visible to others only once the
    call returns, and are discarded entirely if the work raises.
    """

    def run_atomically(self, fn: Callable[[], T]) -> T: ...
    def begin(self) -> ContextManager[Any]: ...


@dataclass
class CounterRecord:
    """
    Shared counter under contention (a stock quantity or a point balance).

    ``quantity`` never goes negative: a decrement past zero raises
    `InsufficientQuantity` instead of clamping.
    """

    id: Hashable
    quantity: int
    version: int = 0

    def decrease(self, amount: int = 1) -> None:
        if amount > self.quantity:
            raise InsufficientQuantity(self.id, amount, self.quantity)
        self.quantity -= amount

    def increase(self, amount: int) -> None:
        self.quantity += amount


@dataclass
class _Transaction:
    writes: dict[Hashable, CounterRecord] = field(default_factory=dict)
    row_locks: dict[Hashable, threading.Lock] = field(default_factory=dict)


class InMemoryCounterRepository:
    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._rows: dict[Hashable, CounterRecord] = {}
        self._row_locks: dict[Hashable, threading.Lock] = {}
        self._local = threading.local()

    def _current(self) -> _Transaction | None:
        return getattr(self._local, "transaction", None)

    def create(self, record_id: Hashable, quantity: int) -> CounterRecord:
        """Insert or reset a committed record, outside any unit of work."""
        if quantity < 0:
            raise ValueError("quantity must be >= 0")
        with self._mutex:
            record = self._rows[record_id] = CounterRecord(record_id, quantity)
            self._row_locks.setdefault(record_id, threading.Lock())
            return replace(record)

    def find(self, record_id: Hashable) -> CounterRecord | None:
        tx = self._current()
        if tx is not None and record_id in tx.writes:
            return replace(tx.writes[record_id])
        with self._mutex:
            record = self._rows.get(record_id)
            return None if record is None else replace(record)

    def get(self, record_id: Hashable) -> CounterRecord:
        record = self.find(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def find_for_update(self, record_id: Hashable) -> CounterRecord | None:
        """
        Read with an exclusive row lock held until the unit of work ends.

        Concurrent ``find_for_update`` callers on the same row block here.
        Plain ``find`` readers are not blocked.
        """
        tx = self._current()
        if tx is None:
            raise RuntimeError("find_for_update() requires an active unit of work")

        if record_id not in tx.row_locks:
            with self._mutex:
                row_lock = self._row_locks.setdefault(record_id, threading.Lock())
            row_lock.acquire()
            tx.row_locks[record_id] = row_lock
        return self.find(record_id)

    def save(self, record: CounterRecord) -> CounterRecord:
        """
        Unconditional overwrite, like an entity without a version column.

        Inside a unit of work the write is buffered until commit; outside
        one it commits immediately.
        """
        tx = self._current()
        if tx is not None:
            tx.writes[record.id] = replace(record)
            return record

        with self._mutex:
            self._apply(record)
        return record

    # Must be called with self._mutex held.
    def _apply(self, record: CounterRecord) -> None:
        stored = self._rows.get(record.id)
        version = 0 if stored is None else stored.version + 1
        self._rows[record.id] = CounterRecord(record.id, record.quantity, version)
        self._row_locks.setdefault(record.id, threading.Lock())

    def read(self, record_id: Hashable) -> VersionedRecord:
        with self._mutex:
            record = self._rows.get(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            return VersionedRecord(record_id, record.quantity, record.version)

    def write(
        self, record_id: Hashable, value: int, expected_version: int
    ) -> VersionedRecord:
        """
        ``UPDATE ... SET quantity = value, version = version + 1
        WHERE id = record_id AND version = expected_version``.
        """
        with self._mutex:
            record = self._rows.get(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            if record.version != expected_version:
                raise VersionConflict(record_id, expected_version, record.version)
            updated = CounterRecord(record_id, value, record.version + 1)
            self._rows[record_id] = updated
            return VersionedRecord(record_id, updated.quantity, updated.version)

    def quantity_of(self, record_id: Hashable) -> int:
        """Committed quantity, as any other caller would see it."""
        return self.read(record_id).value

    @contextmanager
    def transaction(self, commit_delay: float = 0.0) -> Iterator[None]:
        """
        Open a unit of work on the calling thread.

        Nested calls join the outer unit of work. ``commit_delay`` sleeps
        between the end of the block and the commit.
        """
        if self._current() is not None:
            yield
            return

        tx = _Transaction()
        self._local.transaction = tx
        try:
            yield
        except BaseException:
            self._finish(tx, commit=False)
            raise

        if commit_delay:
            time.sleep(commit_delay)
        self._finish(tx, commit=True)

    def _finish(self, tx: _Transaction, *, commit: bool) -> None:
        self._local.transaction = None
        try:
            if commit and tx.writes:
                with self._mutex:
                    for record in tx.writes.values():
                        self._apply(record)
            logger.debug(
                "Unit of work %s (%d writes)",
                "committed" if commit else "rolled back", len(tx.writes),
            )
        finally:
            for row_lock in tx.row_locks.values():
                row_lock.release()


class InMemoryUnitOfWork:
    """
    Unit of work over an `InMemoryCounterRepository`.

    ``commit_delay`` models the gap between the end of a transactional
    method and the commit its transaction manager performs afterwards.
    """

    def __init__(
        self, repository: InMemoryCounterRepository, commit_delay: float = 0.0
    ) -> None:
        self._repository = repository
        self._commit_delay = commit_delay

    def begin(self) -> ContextManager[None]:
        return self._repository.transaction(self._commit_delay)

    def run_atomically(self, fn: Callable[[], T]) -> T:
        with self.begin():
            return fn()
