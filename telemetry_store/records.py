import hashlib
import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from telemetry_store.chunking import PAYLOAD_ENCODING, Chunk, reassemble
from telemetry_store.errors import CorruptPayload, NotFound, SessionStoreError, StoreReadError, StoreWriteError
from telemetry_store.metadata import SessionMeta, SessionSummary
from telemetry_store.metrics import StoreMetrics
from telemetry_store.models import SessionChunk, SessionRecord, SessionStatus, utc_now
from telemetry_store.storage import ChunkStorage, StorageWriteResult
from telemetry_store.tracing import store_span


@dataclass
class SessionPayloadResult:
    """One entry of a bulk payload read: the document, or why it could not be loaded."""

    session_id: str
    content_digest: str
    file_name: str
    document: Any = None
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


class SessionRecordStore:
    """Metadata records plus their ordered chunk documents.

    A record starts ``PENDING``, receives its chunks, and becomes visible to
    readers only after :meth:`commit_record` has confirmed every index.
    """

    def __init__(self, session_factory: sessionmaker[Session], storage: ChunkStorage, metrics: StoreMetrics) -> None:
        self._session_factory = session_factory
        self.storage = storage
        self.metrics = metrics

    def create_record(
        self,
        user_id: str,
        session_id: str,
        content_digest: str,
        file_name: str,
        meta: SessionMeta,
        summary: SessionSummary,
        chunk_count: int,
        chunk_size: int,
        total_size_bytes: int,
        uploaded_at: datetime | None = None,
    ) -> None:
        if chunk_count < 1:
            raise StoreWriteError("a session always has at least one chunk")
        record = SessionRecord(
            id=session_id,
            owner_id=user_id,
            content_digest=content_digest,
            file_name=file_name,
            status=SessionStatus.pending.value,
            chunk_count=chunk_count,
            chunk_size=chunk_size,
            total_size_bytes=total_size_bytes,
            payload_encoding=PAYLOAD_ENCODING,
            uploaded_at=uploaded_at or utc_now(),
            **meta.as_dict(),
            **summary.as_dict(),
        )
        try:
            with self._session_factory() as db:
                db.add(record)
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"failed to create session record {session_id}: {exc}") from exc

    def _pending_record(self, db: Session, user_id: str, session_id: str) -> SessionRecord:
        record = db.get(SessionRecord, session_id)
        if record is None or record.owner_id != user_id:
            raise StoreWriteError(f"session {session_id} does not exist")
        if record.status != SessionStatus.pending.value:
            raise StoreWriteError(f"session {session_id} is {record.status}, not accepting chunks")
        return record

    def write_chunk(self, user_id: str, session_id: str, index: int, fragment: bytes) -> StorageWriteResult:
        try:
            with self._session_factory() as db:
                record = self._pending_record(db, user_id, session_id)
                if index < 0 or index >= record.chunk_count:
                    raise StoreWriteError(f"chunk index {index} out of range for {record.chunk_count} chunks")

                start = time.perf_counter()
                try:
                    result = self.storage.write_chunk(user_id, session_id, index, fragment)
                except SessionStoreError:
                    raise
                except Exception as exc:
                    raise StoreWriteError(f"chunk {index} of {session_id} write failed: {exc}") from exc
                self.metrics.chunk_write_latency_seconds.observe(time.perf_counter() - start)

                checksum = hashlib.sha256(fragment).hexdigest()
                existing = db.scalar(
                    select(SessionChunk).where(SessionChunk.session_id == session_id, SessionChunk.chunk_index == index)
                )
                if existing:
                    existing.size_bytes = len(fragment)
                    existing.checksum_sha256 = checksum
                    existing.storage_key = result.key
                else:
                    db.add(
                        SessionChunk(
                            session_id=session_id,
                            chunk_index=index,
                            size_bytes=len(fragment),
                            checksum_sha256=checksum,
                            storage_key=result.key,
                        )
                    )
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"failed to record chunk {index} of {session_id}: {exc}") from exc

        self.metrics.chunks_written_total.inc()
        self.metrics.bytes_written_total.inc(len(fragment))
        return result

    def commit_record(self, user_id: str, session_id: str) -> None:
        try:
            with self._session_factory() as db:
                record = self._pending_record(db, user_id, session_id)
                indexes = sorted(
                    db.scalars(select(SessionChunk.chunk_index).where(SessionChunk.session_id == session_id)).all()
                )
                if indexes != list(range(record.chunk_count)):
                    raise StoreWriteError(
                        f"cannot commit {session_id}: {len(indexes)} of {record.chunk_count} chunks confirmed"
                    )
                record.status = SessionStatus.committed.value
                record.committed_at = utc_now()
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"failed to commit session {session_id}: {exc}") from exc

    def mark_failed(self, user_id: str, session_id: str) -> bool:
        try:
            with self._session_factory() as db:
                record = db.get(SessionRecord, session_id)
                if record is None or record.owner_id != user_id:
                    return False
                if record.status == SessionStatus.committed.value:
                    return False
                record.status = SessionStatus.failed.value
                db.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"failed to mark session {session_id} failed: {exc}") from exc

    def read_metadata(self, user_id: str, session_id: str) -> SessionRecord:
        self.metrics.metadata_reads_total.inc()
        try:
            with self._session_factory() as db:
                record = db.get(SessionRecord, session_id)
        except SQLAlchemyError as exc:
            raise StoreReadError(f"failed to read session {session_id}: {exc}") from exc
        if record is None or record.owner_id != user_id or record.status != SessionStatus.committed.value:
            raise NotFound(f"session {session_id} not found")
        return record

    def list_metadata(self, user_id: str, limit: int | None = None) -> list[SessionRecord]:
        self.metrics.metadata_reads_total.inc()
        query = (
            select(SessionRecord)
            .where(SessionRecord.owner_id == user_id, SessionRecord.status == SessionStatus.committed.value)
            .order_by(SessionRecord.uploaded_at.desc(), SessionRecord.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        try:
            with self._session_factory() as db:
                return list(db.scalars(query).all())
        except SQLAlchemyError as exc:
            raise StoreReadError(f"failed to list sessions: {exc}") from exc

    def read_full_payload(self, user_id: str, session_id: str) -> Any:
        with store_span("session.read_payload", user_id=user_id, session_id=session_id):
            return self._read_full_payload(user_id, session_id)

    def _read_full_payload(self, user_id: str, session_id: str) -> Any:
        try:
            record = self.read_metadata(user_id, session_id)
            try:
                with self._session_factory() as db:
                    rows = list(db.scalars(select(SessionChunk).where(SessionChunk.session_id == session_id)).all())
            except SQLAlchemyError as exc:
                raise StoreReadError(f"failed to list chunks of {session_id}: {exc}") from exc

            if len(rows) != record.chunk_count:
                raise CorruptPayload(
                    f"session {session_id} declares {record.chunk_count} chunks, found {len(rows)}"
                )

            chunks = [Chunk(index=row.chunk_index, payload=self._read_chunk(session_id, row)) for row in rows]
            text = reassemble(chunks, record.chunk_count)
            try:
                document = json.loads(text)
            except json.JSONDecodeError as exc:
                raise CorruptPayload(f"session {session_id} payload does not parse: {exc}") from exc
        except NotFound:
            self.metrics.payload_reads_total.labels(status="not_found").inc()
            raise
        except CorruptPayload:
            self.metrics.payload_reads_total.labels(status="corrupt").inc()
            raise

        self.metrics.payload_reads_total.labels(status="ok").inc()
        return document

    def _read_chunk(self, session_id: str, row: SessionChunk) -> bytes:
        try:
            data = self.storage.read_chunk(row.storage_key)
        except Exception as exc:
            raise CorruptPayload(f"chunk {row.chunk_index} of {session_id} is unreadable: {exc}") from exc
        self.metrics.chunks_read_total.inc()
        if hashlib.sha256(data).hexdigest() != row.checksum_sha256:
            raise CorruptPayload(f"chunk {row.chunk_index} of {session_id} failed checksum verification")
        return data

    def read_all_payloads(
        self, user_id: str, concurrency: int = 3, limit: int | None = None
    ) -> list[SessionPayloadResult]:
        """Load every committed session's payload, newest first.

        A session that fails to load is reported in its entry and does not stop
        the others.
        """
        records = self.list_metadata(user_id, limit=limit)
        if not records:
            return []
        with ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix="payload-reader") as pool:
            return list(pool.map(lambda record: self._load_payload_result(user_id, record), records))

    def _load_payload_result(self, user_id: str, record: SessionRecord) -> SessionPayloadResult:
        result = SessionPayloadResult(
            session_id=record.id, content_digest=record.content_digest, file_name=record.file_name
        )
        try:
            result.document = self.read_full_payload(user_id, record.id)
        except StoreReadError as exc:
            result.error = str(exc)
            result.error_code = exc.error_code
        return result
