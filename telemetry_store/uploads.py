"""Upload orchestration: validate, hash, dedup, chunk, write, commit.

Per file: RECEIVED -> HASHED -> (DUPLICATE | WRITING) -> (COMMITTED | ERROR).
Every outcome is returned as an :class:`UploadResult`; nothing raised inside
an upload escapes :meth:`UploadOrchestrator.upload_session`.
"""

import enum
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from threading import Event
from typing import Any, BinaryIO

from telemetry_store.chunking import split
from telemetry_store.dedup import DuplicateIndex
from telemetry_store.errors import (
    AdmissionRefused,
    DeadlineExceeded,
    DocumentTooLargeError,
    DuplicateDetected,
    HashComputationError,
    SessionStoreError,
    StoreWriteError,
    UploadCancelled,
    ValidationError,
)
from telemetry_store.events import UPLOAD_LOGGER, get_event_logger, log_event
from telemetry_store.hashing import content_digest
from telemetry_store.metadata import SessionMeta, SessionSummary, extract_metadata
from telemetry_store.metrics import StoreMetrics
from telemetry_store.models import utc_now
from telemetry_store.records import SessionRecordStore
from telemetry_store.tracing import store_span
from telemetry_store.worker import ChunkWriteExecutor

upload_logger = get_event_logger(UPLOAD_LOGGER)

_NON_RETRYABLE = (UploadCancelled, DeadlineExceeded, DocumentTooLargeError)
_MIN_POLL_SECONDS = 0.01
_MAX_BACKOFF_DOUBLINGS = 5


class UploadStatus(str, enum.Enum):
    ok = "ok"
    duplicate = "duplicate"
    error = "error"


@dataclass
class UploadResult:
    status: UploadStatus
    file_name: str
    session_id: str | None = None
    content_digest: str | None = None
    meta: SessionMeta | None = None
    summary: SessionSummary | None = None
    document: Any = None
    error: str | None = None
    error_code: str | None = None

    def as_dict(self, include_document: bool = True) -> dict:
        payload: dict = {"status": self.status.value, "file_name": self.file_name}
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        if self.content_digest is not None:
            payload["content_digest"] = self.content_digest
        if self.meta is not None:
            payload["meta"] = self.meta.as_dict()
        if self.summary is not None:
            payload["summary"] = self.summary.as_dict()
        if include_document and self.status is UploadStatus.ok:
            payload["document"] = self.document
        if self.error is not None:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
        return payload


@dataclass
class BatchResult:
    results: list[UploadResult] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in UploadStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts


def new_session_id() -> str:
    # Independent of content: millisecond clock plus randomness.
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class UploadOrchestrator:
    def __init__(
        self,
        records: SessionRecordStore,
        index: DuplicateIndex,
        executor: ChunkWriteExecutor,
        metrics: StoreMetrics,
        chunk_size: int,
        allowed_extensions: tuple[str, ...] = (".json",),
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.2,
        deadline_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        claim_poll_seconds: float = 0.05,
    ) -> None:
        self.records = records
        self.index = index
        self.executor = executor
        self.metrics = metrics
        self.chunk_size = chunk_size
        self.allowed_extensions = allowed_extensions
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.deadline_seconds = deadline_seconds
        self._clock = clock
        self.claim_poll_seconds = claim_poll_seconds

    def upload_batch(
        self,
        files: Iterable[tuple[str, bytes | BinaryIO]],
        user_id: str,
        cancel_event: Event | None = None,
    ) -> BatchResult:
        """Upload files one at a time, in the order given."""
        batch = BatchResult()
        for file_name, data in files:
            batch.results.append(self.upload_session(data, file_name, user_id, cancel_event=cancel_event))
        log_event(upload_logger, {"event": "batch_summary", "user_id": user_id, **batch.counts})
        return batch

    def upload_session(
        self,
        data: bytes | BinaryIO,
        file_name: str,
        user_id: str,
        cancel_event: Event | None = None,
    ) -> UploadResult:
        with store_span("session.upload", user_id=user_id, file_name=file_name) as span:
            result = self._upload(data, file_name, user_id, cancel_event)
            span.set_attribute("tss.status", result.status.value)
            if result.session_id:
                span.set_attribute("tss.session_id", result.session_id)
        self.metrics.uploads_total.labels(status=result.status.value).inc()
        return result

    def _upload(self, data, file_name: str, user_id: str, cancel_event: Event | None) -> UploadResult:
        deadline = self._clock() + self.deadline_seconds
        digest: str | None = None
        try:
            self._check_cancelled(cancel_event)
            self._validate_file_name(file_name)
            raw = self._read_bytes(data)
            text, document = self._parse(raw)
            digest = content_digest(raw)

            uploaded_at = utc_now()
            meta, summary = extract_metadata(document, uploaded_at)
            fragments = split(text, self.chunk_size)
            session_id = new_session_id()

            self._claim_digest(user_id, digest, session_id, file_name, deadline, cancel_event)

            try:
                self.records.create_record(
                    user_id=user_id,
                    session_id=session_id,
                    content_digest=digest,
                    file_name=file_name,
                    meta=meta,
                    summary=summary,
                    chunk_count=len(fragments),
                    chunk_size=self.chunk_size,
                    total_size_bytes=sum(len(fragment) for fragment in fragments),
                    uploaded_at=uploaded_at,
                )
                self._write_chunks(user_id, session_id, fragments, deadline, cancel_event)
                self.records.commit_record(user_id, session_id)
            except Exception:
                self._abandon(user_id, session_id, digest)
                raise
        except DuplicateDetected as dup:
            log_event(
                upload_logger,
                {"event": "upload_duplicate", "user_id": user_id, "file_name": file_name, "session_id": dup.session_id},
            )
            return UploadResult(
                status=UploadStatus.duplicate,
                file_name=file_name,
                session_id=dup.session_id,
                content_digest=digest,
            )
        except SessionStoreError as exc:
            return self._error_result(user_id, file_name, digest, str(exc), exc.error_code)
        except Exception as exc:
            upload_logger.exception("unexpected upload failure for %s", file_name)
            return self._error_result(user_id, file_name, digest, str(exc), "internal_error")

        log_event(
            upload_logger,
            {
                "event": "upload_committed",
                "user_id": user_id,
                "file_name": file_name,
                "session_id": session_id,
                "chunk_count": len(fragments),
            },
        )
        return UploadResult(
            status=UploadStatus.ok,
            file_name=file_name,
            session_id=session_id,
            content_digest=digest,
            meta=meta,
            summary=summary,
            document=document,
        )

    def _error_result(
        self, user_id: str, file_name: str, digest: str | None, error: str, error_code: str
    ) -> UploadResult:
        log_event(
            upload_logger,
            {
                "event": "upload_failed",
                "user_id": user_id,
                "file_name": file_name,
                "error": error,
                "error_code": error_code,
            },
            level=logging.WARNING,
        )
        return UploadResult(
            status=UploadStatus.error,
            file_name=file_name,
            content_digest=digest,
            error=error,
            error_code=error_code,
        )

    def _validate_file_name(self, file_name: str) -> None:
        if not file_name or not file_name.lower().endswith(self.allowed_extensions):
            allowed = ", ".join(self.allowed_extensions)
            raise ValidationError(f"file must have one of the extensions: {allowed}")

    def _read_bytes(self, data: bytes | BinaryIO) -> bytes:
        if isinstance(data, (bytes, bytearray, memoryview)):
            return bytes(data)
        read = getattr(data, "read", None)
        if read is None:
            raise HashComputationError(f"cannot read upload of type {type(data).__name__}")
        try:
            raw = read()
        except (OSError, ValueError) as exc:
            raise HashComputationError(f"failed to read upload bytes: {exc}") from exc
        if not isinstance(raw, bytes):
            raise HashComputationError("upload stream did not return bytes")
        return raw

    def _parse(self, raw: bytes) -> tuple[str, dict]:
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"file is not valid UTF-8: {exc}") from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"file is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ValidationError("telemetry capture must be a JSON object")
        return text, document

    def _claim_digest(
        self,
        user_id: str,
        digest: str,
        session_id: str,
        file_name: str,
        deadline: float,
        cancel_event: Event | None,
    ) -> None:
        """Win the digest claim for ``session_id`` or raise :class:`DuplicateDetected`.

        A claim held by a still-pending upload is not a duplicate yet: that
        upload may fail and release it. Wait until the owner commits (duplicate
        of a readable session) or its claim disappears (try again).
        """
        while True:
            existing = self.index.check_duplicate(user_id, digest)
            if existing is not None:
                raise DuplicateDetected(existing.id)
            owner = self.index.register_digest(user_id, digest, session_id, file_name)
            if owner == session_id:
                return
            if owner is not None:
                self.metrics.claim_waits_total.inc()
                log_event(
                    upload_logger,
                    {"event": "claim_wait", "user_id": user_id, "session_id": session_id, "owner_session_id": owner},
                )
            self._check_cancelled(cancel_event)
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DeadlineExceeded(f"upload exceeded its {self.deadline_seconds}s deadline")
            self._pause(min(remaining, self.claim_poll_seconds), cancel_event)

    def _check_cancelled(self, cancel_event: Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelled("upload cancelled")

    def _check_deadline(self, deadline: float) -> None:
        if self._clock() >= deadline:
            raise DeadlineExceeded(f"upload exceeded its {self.deadline_seconds}s deadline")

    def _write_chunks(
        self,
        user_id: str,
        session_id: str,
        fragments: list[bytes],
        deadline: float,
        cancel_event: Event | None,
    ) -> None:
        # Bounded window so a large session never floods the executor's queue.
        window = max(
            1,
            min(self.executor.workers * 2, self.executor.global_inflight_limit, self.executor.queue_maxsize),
        )
        pending_fragments = deque(enumerate(fragments))
        inflight: set[Future] = set()
        refusals = 0
        try:
            while pending_fragments or inflight:
                while pending_fragments and len(inflight) < window:
                    index, fragment = pending_fragments[0]
                    try:
                        future = self.executor.submit(
                            self._write_chunk_with_retry,
                            user_id,
                            session_id,
                            index,
                            fragment,
                            deadline,
                            cancel_event,
                        )
                    except AdmissionRefused:
                        # Other uploads hold the pool; resubmit once a slot frees up.
                        break
                    pending_fragments.popleft()
                    inflight.add(future)
                    refusals = 0
                self._check_cancelled(cancel_event)
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise DeadlineExceeded(f"upload exceeded its {self.deadline_seconds}s deadline")
                if not inflight:
                    refusals += 1
                    self.metrics.chunk_admission_waits_total.inc()
                    self._pause(min(remaining, self._backoff_delay(refusals)), cancel_event)
                    continue
                done, inflight = wait(inflight, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    future.result()
        finally:
            for future in inflight:
                future.cancel()

    def _backoff_delay(self, attempt: int) -> float:
        # Floor keeps admission polling from spinning when retries are configured without backoff.
        return max(_MIN_POLL_SECONDS, self.retry_backoff_seconds) * 2 ** min(attempt - 1, _MAX_BACKOFF_DOUBLINGS)

    def _pause(self, delay: float, cancel_event: Event | None) -> None:
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)

    def _write_chunk_with_retry(
        self,
        user_id: str,
        session_id: str,
        index: int,
        fragment: bytes,
        deadline: float,
        cancel_event: Event | None,
    ) -> None:
        attempt = 0
        while True:
            self._check_cancelled(cancel_event)
            self._check_deadline(deadline)
            try:
                self.records.write_chunk(user_id, session_id, index, fragment)
                return
            except _NON_RETRYABLE:
                raise
            except StoreWriteError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    self.metrics.chunk_write_failures_total.inc()
                    raise StoreWriteError(
                        f"chunk {index} of {session_id} failed after {attempt} attempts: {exc}"
                    ) from exc
                self.metrics.chunk_write_retries_total.inc()
                delay = self.retry_backoff_seconds * 2 ** (attempt - 1)
                log_event(
                    upload_logger,
                    {
                        "event": "chunk_write_retry",
                        "session_id": session_id,
                        "chunk_index": index,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                self._pause(delay, cancel_event)

    def _abandon(self, user_id: str, session_id: str, digest: str) -> None:
        """Fail the pending record and free the digest; leftovers go to cleanup."""
        try:
            self.records.mark_failed(user_id, session_id)
        except SessionStoreError as exc:
            log_event(
                upload_logger,
                {"event": "abandon_error", "session_id": session_id, "step": "mark_failed", "error": str(exc)},
                level=logging.ERROR,
            )
        try:
            self.index.release(user_id, digest, session_id)
        except SessionStoreError as exc:
            log_event(
                upload_logger,
                {"event": "abandon_error", "session_id": session_id, "step": "release_digest", "error": str(exc)},
                level=logging.ERROR,
            )
