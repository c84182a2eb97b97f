from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from django.core.exceptions import ImproperlyConfigured

SETTINGS_NAME = "CONCURRENCY_LAB"


@dataclass(frozen=True)
class LabSettings:
    """
    Library-wide defaults. All durations are in seconds.

    Projects running under Django may override any field through a
    ``CONCURRENCY_LAB`` dict in their settings module:

    >>> CONCURRENCY_LAB = {"lock_timeout": 10.0, "backoff_cap": 0.2}
    """

    lock_timeout: float | None = 3.0
    lock_ttl: float | None = None
    max_wake_interval: float = 0.05
    backoff_base: float = 0.010
    backoff_cap: float = 0.100
    optimistic_max_retries: int = 200
    optimistic_retry_delay: float = 0.030


def _overrides_from_django() -> Mapping[str, Any]:
    from django.conf import settings

    if not settings.configured:
        return {}
    return getattr(settings, SETTINGS_NAME, None) or {}


def get_settings(overrides: Mapping[str, Any] | None = None) -> LabSettings:
    """
    Build the effective settings: defaults, then Django's ``CONCURRENCY_LAB``,
    then explicit ``overrides``.
    """
    values: dict[str, Any] = dict(_overrides_from_django())
    if overrides:
        values.update(overrides)

    known = {f.name for f in fields(LabSettings)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ImproperlyConfigured(
            f"{SETTINGS_NAME} has unknown keys {unknown}. "
            f"Available: {sorted(known)}"
        )

    return replace(LabSettings(), **values)
