from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


class StoreMetrics:
    """Prometheus collectors bound to a registry owned by this instance.

    Each service wiring (and each test) builds its own instance, so counters
    never leak between them.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.uploads_total = Counter(
            "session_uploads_total", "Session uploads by outcome", ["status"], registry=self.registry
        )
        self.chunks_written_total = Counter(
            "session_chunks_written_total", "Chunk documents written", registry=self.registry
        )
        self.bytes_written_total = Counter(
            "session_bytes_written_total", "Payload bytes written as chunks", registry=self.registry
        )
        self.chunk_write_retries_total = Counter(
            "session_chunk_write_retries_total", "Retry attempts for chunk writes", registry=self.registry
        )
        self.chunk_write_failures_total = Counter(
            "session_chunk_write_failures_total", "Chunk writes that exhausted retries", registry=self.registry
        )
        self.chunk_admission_waits_total = Counter(
            "session_chunk_admission_waits_total",
            "Times an upload backed off because the chunk writer pool was saturated",
            registry=self.registry,
        )
        self.claim_waits_total = Counter(
            "session_claim_waits_total",
            "Times an upload waited on another upload's pending digest claim",
            registry=self.registry,
        )
        self.chunks_read_total = Counter(
            "session_chunks_read_total", "Chunk documents read", registry=self.registry
        )
        self.payload_reads_total = Counter(
            "session_payload_reads_total", "Full payload reads by outcome", ["status"], registry=self.registry
        )
        self.metadata_reads_total = Counter(
            "session_metadata_reads_total", "Metadata reads and listings", registry=self.registry
        )
        self.inflight_chunks = Gauge(
            "session_inflight_chunk_writes", "Chunk writes currently executing", registry=self.registry
        )
        self.task_queue_depth = Gauge(
            "session_chunk_queue_depth", "Chunk writes waiting for a worker", registry=self.registry
        )
        self.chunk_write_latency_seconds = Histogram(
            "session_chunk_write_latency_seconds", "Chunk document write latency in seconds", registry=self.registry
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
            ["method", "route", "status_code"],
            registry=self.registry,
        )

    def value(self, name: str, labels: dict[str, str] | None = None) -> float:
        sample = self.registry.get_sample_value(name, labels or {})
        return sample or 0.0

    def response(self) -> Response:
        return Response(content=generate_latest(self.registry), media_type=CONTENT_TYPE_LATEST)
