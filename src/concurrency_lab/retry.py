"""
Retry/backoff policies for lock acquisition.

A policy decides how long a caller waits after a failed ``try_acquire``
before trying again. Policies are immutable configuration; everything that
changes between attempts lives in a `RetryState` owned by a single retry
loop, so one policy instance can be shared by any number of callers.

All durations are in seconds.

Formulas (``ceiling = min(cap, base * 2**attempt)``)
---------------------------------------------------
- BusySpin:            0
- FixedBackoff:        ceiling + uniform(0, ceiling / 2)
- FullJitter:          uniform(0, ceiling)
- EqualJitter:         ceiling / 2 + uniform(0, ceiling / 2)
- DecorrelatedJitter:  min(cap, uniform(base, max(base, 3 * previous_delay)))

The random source is injected (``rng``) so tests can seed it.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

logger = logging.getLogger(__name__)

DEFAULT_BASE = 0.010
DEFAULT_CAP = 0.100

# 2**32 * base overshoots any sane cap; clamping keeps the float finite
# however long a caller keeps retrying.
MAX_EXPONENT = 32


@dataclass
class RetryState:
    """Mutable state of one acquisition loop. Discard it after success."""

    attempt: int = 0
    previous_delay: float | None = None
    retry_count: int = 0


class RetryPolicy(Protocol):
    name: str

    def new_state(self) -> RetryState: ...
    def next_delay(self, state: RetryState) -> float: ...


def _uniform(rng: random.Random, lo: float, hi: float) -> float:
    # Inclusive of both bounds; an empty range collapses to ``lo``.
    if hi < lo:
        return lo
    return rng.uniform(lo, hi)


@dataclass(frozen=True)
class BusySpin:
    """
    Retry immediately, with no wait at all.

    This is a negative baseline only. Request volume against the lock
    service grows with the number of contending callers, so it is unsuitable
    for any real deployment.
    """

    name = "spin"

    def __post_init__(self) -> None:
        logger.warning(
            "BusySpin retry policy in use: it hammers the lock service and "
            "must not be used outside demonstrations"
        )

    def new_state(self) -> RetryState:
        return RetryState()

    def next_delay(self, state: RetryState) -> float:
        state.attempt += 1
        return 0.0

    def delays(self, count: int) -> Iterator[float]:
        state = self.new_state()
        for _ in range(count):
            yield self.next_delay(state)


@dataclass(frozen=True)
class _ExponentialPolicy:
    base: float = DEFAULT_BASE
    cap: float = DEFAULT_CAP
    rng: random.Random = field(
        default_factory=random.Random, repr=False, compare=False
    )

    name = "exponential"

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be > 0")
        if self.cap < self.base:
            raise ValueError("cap must be >= base")

    def ceiling(self, attempt: int) -> float:
        """Exponential term ``min(cap, base * 2**attempt)``."""
        exponent = min(max(attempt, 0), MAX_EXPONENT)
        return min(self.cap, self.base * (2 ** exponent))

    def new_state(self) -> RetryState:
        return RetryState()

    def next_delay(self, state: RetryState) -> float:
        delay = self._compute(state)
        state.attempt += 1
        state.previous_delay = delay
        return delay

    def _compute(self, state: RetryState) -> float:
        raise NotImplementedError

    def delays(self, count: int) -> Iterator[float]:
        """Yield the first ``count`` delays of a fresh retry loop."""
        state = self.new_state()
        for _ in range(count):
            yield self.next_delay(state)


@dataclass(frozen=True)
class FixedBackoff(_ExponentialPolicy):
    """
    Exponential backoff with up to 50% jitter added on top.

    The deterministic term is always waited in full, so the delay lies in
    ``[ceiling, 1.5 * ceiling]`` and may exceed ``cap`` by up to half.
    """

    jitter_factor: float = 0.5

    name = "backoff"

    def _compute(self, state: RetryState) -> float:
        backoff = self.ceiling(state.attempt)
        return backoff + _uniform(self.rng, 0.0, backoff * self.jitter_factor)


@dataclass(frozen=True)
class FullJitter(_ExponentialPolicy):
    """Whole delay drawn from ``[0, ceiling]``. Widest spread."""

    name = "full_jitter"

    def _compute(self, state: RetryState) -> float:
        return _uniform(self.rng, 0.0, self.ceiling(state.attempt))


@dataclass(frozen=True)
class EqualJitter(_ExponentialPolicy):
    """Half of the ceiling is guaranteed; only the upper half is random."""

    name = "equal_jitter"

    def _compute(self, state: RetryState) -> float:
        half = self.ceiling(state.attempt) / 2
        return half + _uniform(self.rng, 0.0, half)


@dataclass(frozen=True)
class DecorrelatedJitter(_ExponentialPolicy):
    """
    Next delay bounded by three times the delay actually waited last time.

    The attempt count plays no part, so delays are not monotonic and can
    shrink. Every delay lies in ``[base, cap]``.
    """

    name = "decorrelated_jitter"

    def new_state(self) -> RetryState:
        return RetryState(previous_delay=self.base)

    def _compute(self, state: RetryState) -> float:
        previous = self.base if state.previous_delay is None else state.previous_delay
        upper = max(self.base, previous * 3)
        return min(self.cap, _uniform(self.rng, self.base, upper))


POLICIES: dict[str, type] = {
    "spin": BusySpin,
    "backoff": FixedBackoff,
    "full_jitter": FullJitter,
    "equal_jitter": EqualJitter,
    "decorrelated_jitter": DecorrelatedJitter,
}


def policy_from_name(name: str, **overrides: Any) -> RetryPolicy:
    """
    Build a policy by name, taking ``base``/``cap`` defaults from settings.

    >>> policy_from_name("full_jitter", rng=random.Random(7))
    """
    try:
        cls = POLICIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown retry policy {name!r}. Available: {sorted(POLICIES)}"
        ) from None

    if cls is BusySpin:
        return BusySpin()

    from .conf import get_settings

    settings = get_settings()
    overrides.setdefault("base", settings.backoff_base)
    overrides.setdefault("cap", settings.backoff_cap)
    return cls(**overrides)
