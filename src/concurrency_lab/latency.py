from __future__ import annotations

import logging
import math
import threading
import time
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class LatencyRecorder:
    """
    Thread-safe collector of per-call latencies, in seconds.

    Percentiles use the nearest-rank method over the recorded samples.
    An empty recorder reports 0 for every statistic.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._samples: list[float] = []

    def record(self, seconds: float) -> None:
        with self._lock:
            self._samples.append(seconds)

    @contextmanager
    def measure(self) -> Iterator[None]:
        """Record how long the block took, whether or not it raised."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(time.perf_counter() - started)

    def _snapshot(self) -> list[float]:
        with self._lock:
            return list(self._samples)

    def percentile(self, p: float) -> float:
        if not 0 <= p <= 100:
            raise ValueError("percentile must be within [0, 100]")
        samples = sorted(self._snapshot())
        if not samples:
            return 0.0
        index = math.ceil(p * len(samples) / 100) - 1
        index = max(0, min(index, len(samples) - 1))
        return samples[index]

    @property
    def p50(self) -> float:
        return self.percentile(50)

    @property
    def p99(self) -> float:
        return self.percentile(99)

    @property
    def p999(self) -> float:
        return self.percentile(99.9)

    @property
    def min(self) -> float:
        return min(self._snapshot(), default=0.0)

    @property
    def max(self) -> float:
        return max(self._snapshot(), default=0.0)

    @property
    def avg(self) -> float:
        samples = self._snapshot()
        return sum(samples) / len(samples) if samples else 0.0

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._samples)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def log_stats(self) -> None:
        ms = 1000.0
        logger.info("[%s] Latency statistics", self.name)
        logger.info("  requests: %d", self.count)
        logger.info("  min:  %.2f ms", self.min * ms)
        logger.info("  max:  %.2f ms", self.max * ms)
        logger.info("  avg:  %.2f ms", self.avg * ms)
        logger.info("  p50:  %.2f ms", self.p50 * ms)
        logger.info("  p99:  %.2f ms", self.p99 * ms)
        logger.info("  p999: %.2f ms", self.p999 * ms)
