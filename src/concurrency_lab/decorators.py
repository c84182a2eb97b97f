from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from inspect import signature
from typing import TYPE_CHECKING, Any, Callable, Literal, Protocol

from .exceptions import LockAcquisitionTimeout

if TYPE_CHECKING:
    from .runner import CriticalSectionRunner

Mode = Literal["raise", "return_none", "callable"]


class ConflictHandler(Protocol):
    """Receives the decorated function's arguments after a lock timeout."""
    def __call__(self, *args: Any, **kwargs: Any) -> Any: ...


@dataclass(frozen=True)
class ConflictPolicy:
    """
    What a decorated call does when its section times out on the lock.

    - "raise": let LockAcquisitionTimeout propagate (default)
    - "return_none": swallow it and return None
    - "callable": return ``handler(*args, **kwargs)``
    """
    mode: Mode = "raise"
    handler: ConflictHandler | None = None

    @classmethod
    def from_option(cls, option: Mode | ConflictHandler) -> ConflictPolicy:
        if isinstance(option, str):
            if option not in ("raise", "return_none"):
                raise ValueError(f"Unknown on_conflict mode: {option!r}")
            return cls(mode=option)
        return cls(mode="callable", handler=option)

    def handle(self, exc: LockAcquisitionTimeout, args, kwargs) -> Any:
        if self.mode == "return_none":
            return None
        if self.mode == "callable" and self.handler is not None:
            return self.handler(*args, **kwargs)
        raise exc


def _resolve_key(
    key: str | Callable[..., str],
    fn: Callable[..., Any],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> str:
    """
    Build the lock key for one call.

    ``key`` is either a callable taking the call's arguments, or a
    ``str.format`` template such as "stock:lock:{stock_id}" filled from the
    arguments bound to ``fn``'s signature (defaults included).
    """
    if callable(key):
        return key(*args, **kwargs)

    bound = signature(fn).bind_partial(*args, **kwargs)
    bound.apply_defaults()

    try:
        return key.format(**bound.arguments)
    except KeyError as e:
        raise KeyError(
            f"concurrency_lab: lock key {key!r} needs argument {e.args[0]!r}; "
            f"{fn.__qualname__} was called with {sorted(bound.arguments)}"
        ) from e


def critical_section(
    *,
    runner: CriticalSectionRunner,
    key: str | Callable[..., str],
    on_conflict: Mode | ConflictHandler = "raise",
):
    """
    Run every call of the decorated function as a critical section.

    Calls go through ``runner.execute_lock_then_transact``, so the lock is
    held until the unit of work has committed.

    Example
    -------
    >>> @critical_section(runner=runner, key="stock:lock:{stock_id}")
    ... def decrease(stock_id):
    ...     stock = repository.get(stock_id)
    ...     stock.decrease()
    ...     repository.save(stock)
    """
    policy = ConflictPolicy.from_option(on_conflict)

    def decorator(fn: Callable[..., Any]):
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any):
            resolved_key = _resolve_key(key, fn, args, kwargs)

            try:
                return runner.execute_lock_then_transact(
                    resolved_key, lambda: fn(*args, **kwargs)
                )
            except LockAcquisitionTimeout as exc:
                # Timeouts of sections nested inside fn belong to them.
                if exc.key != resolved_key:
                    raise
                return policy.handle(exc, args, kwargs)

        return wrapper

    return decorator
