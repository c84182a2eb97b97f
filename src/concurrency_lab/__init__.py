from .api import LockStore, acquire_with_policy, hold, new_owner_token
from .backends.memory import InMemoryLockStore
from .decorators import critical_section
from .exceptions import (
    ConcurrencyLabError,
    InsufficientQuantity,
    LockAcquisitionTimeout,
    LockOwnershipViolation,
    RecordNotFound,
    RetriesExhausted,
    VersionConflict,
)
from .optimistic import OptimisticRetryRunner, VersionedRecord
from .retry import (
    BusySpin,
    DecorrelatedJitter,
    EqualJitter,
    FixedBackoff,
    FullJitter,
    RetryState,
    policy_from_name,
)
from .runner import CriticalSectionRunner, SectionState, lock_key, run_unguarded

__all__ = [
    "LockStore",
    "InMemoryLockStore",
    "new_owner_token",
    "acquire_with_policy",
    "hold",
    "critical_section",
    "CriticalSectionRunner",
    "SectionState",
    "lock_key",
    "run_unguarded",
    "OptimisticRetryRunner",
    "VersionedRecord",
    "BusySpin",
    "FixedBackoff",
    "FullJitter",
    "EqualJitter",
    "DecorrelatedJitter",
    "RetryState",
    "policy_from_name",
    "ConcurrencyLabError",
    "LockAcquisitionTimeout",
    "LockOwnershipViolation",
    "VersionConflict",
    "RetriesExhausted",
    "InsufficientQuantity",
    "RecordNotFound",
]
