"""
Contention scenarios: many concurrent callers decrementing one counter.

These are the demonstrations the library exists for:
- lock-then-transact is exact for every retry policy
- transact-with-inner-lock can lose updates
- no concurrency control at all loses updates
- a row lock (find_for_update) and optimistic retry are both exact
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from concurrency_lab import (
    CriticalSectionRunner,
    InMemoryLockStore,
    OptimisticRetryRunner,
    lock_key,
    policy_from_name,
    run_unguarded,
)
from concurrency_lab.latency import LatencyRecorder
from concurrency_lab.runner import measure_contention
from concurrency_lab.storage import InMemoryCounterRepository, InMemoryUnitOfWork

KEY = lock_key("stock", 1)
WORKERS = 32
TRIALS = 5


def decrease(repository, think_time=0.0):
    def work():
        stock = repository.get(1)
        if think_time:
            time.sleep(think_time)
        stock.decrease()
        repository.save(stock)
    return work


def hammer(call, callers):
    """Run ``call`` from ``callers`` concurrent tasks, re-raising any failure."""
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(call) for _ in range(callers)]
        for future in futures:
            future.result()


@pytest.mark.parametrize(
    "policy_name",
    ["spin", "backoff", "full_jitter", "equal_jitter", "decorrelated_jitter", None],
)
def test_lock_then_transact_is_exact_for_every_policy(policy_name):
    callers = 1000
    repository = InMemoryCounterRepository()
    repository.create(1, callers)
    policy = policy_from_name(policy_name) if policy_name else None
    runner = CriticalSectionRunner(
        InMemoryLockStore(),
        InMemoryUnitOfWork(repository),
        retry_policy=policy,
        timeout=None,
    )
    recorder = LatencyRecorder(policy_name or "wait_for_release")

    failures = measure_contention(
        runner, KEY, decrease(repository), callers,
        max_workers=WORKERS, recorder=recorder,
    )

    recorder.log_stats()
    assert failures == []
    assert repository.quantity_of(1) == 0
    assert recorder.count == callers


def test_inner_lock_can_lose_updates():
    callers = 100
    finals = []

    for _ in range(TRIALS):
        repository = InMemoryCounterRepository()
        repository.create(1, callers)
        runner = CriticalSectionRunner(
            InMemoryLockStore(),
            InMemoryUnitOfWork(repository, commit_delay=0.002),
            timeout=None,
        )

        hammer(
            lambda: runner.execute_transact_with_inner_lock(KEY, decrease(repository)),
            callers,
        )

        finals.append(repository.quantity_of(1))
        if finals[-1] > 0:
            break

    assert all(0 <= final <= callers for final in finals)
    assert any(final > 0 for final in finals)


def test_no_concurrency_control_loses_updates():
    callers = 100
    finals = []

    for _ in range(TRIALS):
        repository = InMemoryCounterRepository()
        repository.create(1, callers)
        uow = InMemoryUnitOfWork(repository)

        hammer(lambda: run_unguarded(uow, decrease(repository, think_time=0.001)), callers)

        finals.append(repository.quantity_of(1))
        if finals[-1] > 0:
            break

    assert any(final > 0 for final in finals)


def test_row_lock_is_exact():
    callers = 100
    repository = InMemoryCounterRepository()
    repository.create(1, callers)
    uow = InMemoryUnitOfWork(repository)

    def work():
        stock = repository.find_for_update(1)
        stock.decrease()
        repository.save(stock)

    hammer(lambda: uow.run_atomically(work), callers)

    assert repository.quantity_of(1) == 0


def test_optimistic_retry_converges():
    callers = 5
    repository = InMemoryCounterRepository()
    repository.create(1, 0)
    runner = OptimisticRetryRunner(repository, retry_delay=0.001)

    # Every caller reads before anyone writes, so all but one must conflict.
    everyone_read = threading.Barrier(callers)
    local = threading.local()

    def add_100(balance):
        if not getattr(local, "synced", False):
            local.synced = True
            everyone_read.wait(timeout=5.0)
        return balance + 100

    threads = [
        threading.Thread(target=runner.execute, args=(1, add_100))
        for _ in range(callers)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)

    assert repository.quantity_of(1) == 500
    assert repository.read(1).version == callers
    assert runner.retry_count >= callers - 1
