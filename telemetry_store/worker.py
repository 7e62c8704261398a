from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock

from telemetry_store.errors import AdmissionRefused
from telemetry_store.metrics import StoreMetrics


class ChunkWriteExecutor:
    """Thread pool for chunk writes with admission limits.

    Submissions beyond ``queue_maxsize`` waiting tasks or
    ``global_inflight_limit`` running tasks are refused with
    :class:`AdmissionRefused` instead of queueing without bound.
    """

    def __init__(self, workers: int, queue_maxsize: int, global_inflight_limit: int, metrics: StoreMetrics) -> None:
        self.workers = max(1, workers)
        self.executor = self._new_pool()
        self.closed = False
        self.queue_maxsize = queue_maxsize
        self.global_inflight_limit = global_inflight_limit
        self.metrics = metrics
        self._lock = Lock()
        self._queued = 0
        self._inflight = 0

    def _try_admit(self) -> None:
        with self._lock:
            if self._queued >= self.queue_maxsize:
                raise AdmissionRefused("chunk write queue is full")
            if self._queued + self._inflight >= self.global_inflight_limit:
                raise AdmissionRefused("global inflight chunk limit reached")
            self._queued += 1
            self.metrics.task_queue_depth.set(self._queued)

    def _on_start(self) -> None:
        with self._lock:
            self._queued -= 1
            self._inflight += 1
            self.metrics.task_queue_depth.set(self._queued)
            self.metrics.inflight_chunks.set(self._inflight)

    def _on_end(self) -> None:
        with self._lock:
            self._inflight -= 1
            self.metrics.inflight_chunks.set(self._inflight)

    def snapshot(self) -> tuple[int, int, int]:
        with self._lock:
            return self._queued, self._inflight, self.workers

    def submit(self, fn, *args, **kwargs) -> Future:
        self._try_admit()

        def wrapped():
            self._on_start()
            try:
                return fn(*args, **kwargs)
            finally:
                self._on_end()

        try:
            future = self.executor.submit(wrapped)
        except RuntimeError:
            self._release_queued()
            raise
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        # A future cancelled while queued never reaches _on_start.
        if future.cancelled():
            self._release_queued()

    def _release_queued(self) -> None:
        with self._lock:
            self._queued -= 1
            self.metrics.task_queue_depth.set(self._queued)

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="chunk-writer")

    def start(self) -> None:
        """Replace a shut-down pool so writes are accepted again."""
        if self.closed:
            self.executor = self._new_pool()
            self.closed = False

    def shutdown(self) -> None:
        self.closed = True
        self.executor.shutdown(wait=True, cancel_futures=True)
