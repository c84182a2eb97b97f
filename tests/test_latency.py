import logging
import threading

import pytest

from concurrency_lab.latency import LatencyRecorder


def test_empty_recorder_reports_zero():
    recorder = LatencyRecorder("empty")

    assert recorder.count == 0
    assert recorder.p50 == recorder.p99 == recorder.p999 == 0.0
    assert recorder.min == recorder.max == recorder.avg == 0.0


def test_nearest_rank_percentiles():
    recorder = LatencyRecorder("ranks")
    for ms in range(1, 101):
        recorder.record(ms / 1000)

    assert recorder.p50 == pytest.approx(0.050)
    assert recorder.p99 == pytest.approx(0.099)
    assert recorder.p999 == pytest.approx(0.100)
    assert recorder.percentile(0) == pytest.approx(0.001)
    assert recorder.min == pytest.approx(0.001)
    assert recorder.max == pytest.approx(0.100)
    assert recorder.avg == pytest.approx(0.0505)


def test_percentile_out_of_range():
    with pytest.raises(ValueError):
        LatencyRecorder("x").percentile(101)


def test_measure_records_even_when_the_block_raises():
    recorder = LatencyRecorder("measure")

    with pytest.raises(RuntimeError):
        with recorder.measure():
            raise RuntimeError

    assert recorder.count == 1
    assert recorder.max >= 0.0


def test_concurrent_recording():
    recorder = LatencyRecorder("threads")

    def worker():
        for _ in range(500):
            recorder.record(0.001)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5.0)

    assert recorder.count == 4000
    recorder.reset()
    assert recorder.count == 0


def test_log_stats(caplog):
    recorder = LatencyRecorder("spin")
    recorder.record(0.002)

    with caplog.at_level(logging.INFO, logger="concurrency_lab.latency"):
        recorder.log_stats()

    assert "[spin] Latency statistics" in caplog.text
    assert "p99:  2.00 ms" in caplog.text
