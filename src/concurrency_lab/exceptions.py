"""
Exception hierarchy for concurrency_lab.

Concurrency-control failures (lock timeouts, version conflicts) and business
failures (insufficient quantity) are kept apart so callers can tell
"I never got the lock" from "the work itself failed".

Catch `ConcurrencyLabError` to handle every library failure, or a specific
subclass when you need fine-grained control.
"""

from __future__ import annotations

from typing import Any


class ConcurrencyLabError(Exception):
    """
    Base exception for all concurrency_lab errors.

    Example
    -------
    >>> try:
    ...     runner.execute_lock_then_transact("stock:lock:1", work)
    ... except ConcurrencyLabError:
    ...     handle_failure()
    """

    #: Stable error code for programmatic handling.
    code: str = "concurrency_lab_error"

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = "An unspecified concurrency_lab error occurred."
        super().__init__(message)


class LockAcquisitionTimeout(ConcurrencyLabError):
    """
    Raised when a lock cannot be acquired before the caller's deadline.

    Recoverable: retry at a higher level or surface a "try again" response.

    Common causes
    -------------
    - Another caller holds the lock for longer than the timeout
    - The timeout is too low for the contention level
    - A holder crashed and the lock has no TTL
    """

    code: str = "lock_acquisition_timeout"

    def __init__(self, key: str, timeout: float | None) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(
            f"Failed to acquire lock for key='{key}' within timeout={timeout}s"
        )


class LockOwnershipViolation(ConcurrencyLabError):
    """
    A release was attempted by a caller that does not own the lock.

    Stores build this to describe the anomaly and log it at warning level.
    It is never raised out of ``release``, which is usually called from a
    ``finally`` block after something else already went wrong.
    """

    code: str = "lock_ownership_violation"

    def __init__(self, key: str, owner: str | None, requester: str) -> None:
        self.key = key
        self.owner = owner
        self.requester = requester
        if owner is None:
            message = f"Release of unheld lock key='{key}' by requester={requester}"
        else:
            message = (
                f"Release of lock key='{key}' by non-owner "
                f"(owner={owner}, requester={requester})"
            )
        super().__init__(message)


class VersionConflict(ConcurrencyLabError):
    """
    Raised by a versioned write when the stored version moved on since the
    caller's read. OptimisticRetryRunner recovers from it automatically.
    """

    code: str = "version_conflict"

    def __init__(self, record_id: Any, expected: int, actual: int) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on id={record_id!r}: "
            f"expected version {expected}, found {actual}"
        )


class RetriesExhausted(ConcurrencyLabError):
    """
    Raised when an optimistic read-modify-write lost every race it was
    allowed to retry.
    """

    code: str = "retries_exhausted"

    def __init__(self, record_id: Any, max_retries: int) -> None:
        self.record_id = record_id
        self.max_retries = max_retries
        super().__init__(
            f"Exceeded max retries ({max_retries}) for id={record_id!r}"
        )


class InsufficientQuantity(ConcurrencyLabError):
    """
    Business error: a decrement would take a counter below zero.

    This is not a concurrency failure and is propagated to the caller
    unchanged by every runner.
    """

    code: str = "insufficient_quantity"

    def __init__(self, record_id: Any, requested: int, available: int) -> None:
        self.record_id = record_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient quantity for id={record_id!r}: "
            f"requested {requested}, available {available}"
        )


class RecordNotFound(ConcurrencyLabError, LookupError):
    """The storage collaborator has no record with the requested id."""

    code: str = "record_not_found"

    def __init__(self, record_id: Any) -> None:
        self.record_id = record_id
        super().__init__(f"No record with id={record_id!r}")
