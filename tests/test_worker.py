import threading

import pytest

from telemetry_store.errors import AdmissionRefused, StoreWriteError
from telemetry_store.metrics import StoreMetrics
from telemetry_store.worker import ChunkWriteExecutor


def test_snapshot_reports_configured_workers() -> None:
    executor = ChunkWriteExecutor(workers=2, queue_maxsize=10, global_inflight_limit=10, metrics=StoreMetrics())
    queued, inflight, workers = executor.snapshot()
    assert queued == 0
    assert inflight == 0
    assert workers == 2
    executor.shutdown()


def test_non_positive_worker_count_falls_back_to_one() -> None:
    executor = ChunkWriteExecutor(workers=0, queue_maxsize=10, global_inflight_limit=10, metrics=StoreMetrics())
    assert executor.snapshot()[2] == 1
    executor.shutdown()


def test_submissions_beyond_inflight_limit_are_refused() -> None:
    metrics = StoreMetrics()
    executor = ChunkWriteExecutor(workers=1, queue_maxsize=10, global_inflight_limit=2, metrics=metrics)
    release = threading.Event()
    started = threading.Event()

    def blocked() -> str:
        started.set()
        release.wait(5)
        return "done"

    first = executor.submit(blocked)
    second = executor.submit(blocked)
    started.wait(5)
    with pytest.raises(StoreWriteError):
        executor.submit(blocked)

    assert metrics.value("session_inflight_chunk_writes") == 1.0
    assert metrics.value("session_chunk_queue_depth") == 1.0

    release.set()
    assert first.result(timeout=5) == "done"
    assert second.result(timeout=5) == "done"
    assert executor.snapshot()[:2] == (0, 0)
    executor.shutdown()


def test_queue_limit_is_enforced() -> None:
    executor = ChunkWriteExecutor(workers=1, queue_maxsize=1, global_inflight_limit=10, metrics=StoreMetrics())
    release = threading.Event()
    started = threading.Event()

    def blocked() -> None:
        started.set()
        release.wait(5)

    running = executor.submit(blocked)
    started.wait(5)
    waiting = executor.submit(blocked)
    with pytest.raises(StoreWriteError):
        executor.submit(blocked)

    assert waiting.cancel()
    assert executor.snapshot()[0] == 0
    release.set()
    running.result(timeout=5)
    executor.shutdown()


def test_errors_propagate_through_future() -> None:
    executor = ChunkWriteExecutor(workers=1, queue_maxsize=10, global_inflight_limit=10, metrics=StoreMetrics())

    def broken() -> None:
        raise StoreWriteError("disk full")

    with pytest.raises(StoreWriteError):
        executor.submit(broken).result(timeout=5)
    assert executor.snapshot()[:2] == (0, 0)
    executor.shutdown()


def test_start_reopens_a_shut_down_pool() -> None:
    executor = ChunkWriteExecutor(workers=1, queue_maxsize=10, global_inflight_limit=10, metrics=StoreMetrics())
    executor.shutdown()
    assert executor.closed
    with pytest.raises(RuntimeError):
        executor.submit(lambda: "late")
    assert executor.snapshot()[:2] == (0, 0)

    executor.start()

    assert not executor.closed
    assert executor.submit(lambda: "again").result(timeout=5) == "again"
    executor.shutdown()


def test_refusal_is_an_admission_error() -> None:
    executor = ChunkWriteExecutor(workers=1, queue_maxsize=0, global_inflight_limit=10, metrics=StoreMetrics())
    with pytest.raises(AdmissionRefused) as excinfo:
        executor.submit(lambda: None)
    assert excinfo.value.error_code == "admission_refused"
    executor.shutdown()
