from dataclasses import dataclass
from threading import Event
from typing import Any, BinaryIO

from sqlalchemy.orm import Session, sessionmaker

from telemetry_store.config import Settings, settings
from telemetry_store.db import SessionLocal
from telemetry_store.dedup import DuplicateIndex
from telemetry_store.metrics import StoreMetrics
from telemetry_store.models import SessionRecord
from telemetry_store.records import SessionPayloadResult, SessionRecordStore
from telemetry_store.storage import ChunkStorage, build_storage
from telemetry_store.uploads import BatchResult, UploadOrchestrator, UploadResult
from telemetry_store.worker import ChunkWriteExecutor


@dataclass
class SessionStoreService:
    """The store's public surface, wired to one set of collaborators."""

    metrics: StoreMetrics
    storage: ChunkStorage
    records: SessionRecordStore
    index: DuplicateIndex
    executor: ChunkWriteExecutor
    orchestrator: UploadOrchestrator
    payload_read_concurrency: int = 3

    def upload_session(
        self, file_bytes: bytes | BinaryIO, file_name: str, user_id: str, cancel_event: Event | None = None
    ) -> UploadResult:
        return self.orchestrator.upload_session(file_bytes, file_name, user_id, cancel_event=cancel_event)

    def upload_batch(
        self, files: list[tuple[str, bytes | BinaryIO]], user_id: str, cancel_event: Event | None = None
    ) -> BatchResult:
        return self.orchestrator.upload_batch(files, user_id, cancel_event=cancel_event)

    def list_sessions(self, user_id: str, limit: int | None = None) -> list[SessionRecord]:
        return self.records.list_metadata(user_id, limit=limit)

    def get_session(self, user_id: str, session_id: str) -> SessionRecord:
        return self.records.read_metadata(user_id, session_id)

    def fetch_session_payload(self, user_id: str, session_id: str) -> Any:
        return self.records.read_full_payload(user_id, session_id)

    def fetch_all_payloads(self, user_id: str, limit: int | None = None) -> list[SessionPayloadResult]:
        return self.records.read_all_payloads(user_id, concurrency=self.payload_read_concurrency, limit=limit)

    def open(self) -> None:
        self.executor.start()

    def close(self) -> None:
        self.executor.shutdown()


def build_service(
    session_factory: sessionmaker[Session] = SessionLocal,
    storage: ChunkStorage | None = None,
    metrics: StoreMetrics | None = None,
    config: Settings = settings,
) -> SessionStoreService:
    metrics = metrics or StoreMetrics()
    storage = storage or build_storage()
    records = SessionRecordStore(session_factory, storage, metrics)
    index = DuplicateIndex(session_factory)
    executor = ChunkWriteExecutor(
        workers=config.chunk_write_workers,
        queue_maxsize=config.task_queue_maxsize,
        global_inflight_limit=config.max_global_inflight_chunks,
        metrics=metrics,
    )
    orchestrator = UploadOrchestrator(
        records=records,
        index=index,
        executor=executor,
        metrics=metrics,
        chunk_size=config.chunk_size_bytes,
        allowed_extensions=config.extensions(),
        max_retries=config.max_retries,
        retry_backoff_seconds=config.retry_backoff_seconds,
        deadline_seconds=config.upload_deadline_seconds,
    )
    return SessionStoreService(
        metrics=metrics,
        storage=storage,
        records=records,
        index=index,
        executor=executor,
        orchestrator=orchestrator,
        payload_read_concurrency=config.payload_read_concurrency,
    )
