from datetime import datetime
from typing import Any

from pydantic import BaseModel

from telemetry_store.models import SessionRecord


class SessionMetaResponse(BaseModel):
    track: str
    date_start: str
    date_end: str | None = None
    car: str | None = None
    driver: str | None = None
    session_type: str
    session_category: str
    session_type_code: int | None = None


class SessionSummaryResponse(BaseModel):
    lap_count: int
    laps_valid: int
    best_lap_ms: int | None = None
    avg_clean_lap_ms: int | None = None
    total_time_ms: int
    stint_count: int


class SessionRecordResponse(BaseModel):
    session_id: str
    content_digest: str
    file_name: str
    uploaded_at: datetime
    meta: SessionMetaResponse
    summary: SessionSummaryResponse
    chunk_count: int
    total_size_bytes: int

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionRecordResponse":
        return cls(
            session_id=record.id,
            content_digest=record.content_digest,
            file_name=record.file_name,
            uploaded_at=record.uploaded_at,
            meta=SessionMetaResponse(
                track=record.track,
                date_start=record.date_start,
                date_end=record.date_end,
                car=record.car,
                driver=record.driver,
                session_type=record.session_type,
                session_category=record.session_category,
                session_type_code=record.session_type_code,
            ),
            summary=SessionSummaryResponse(
                lap_count=record.lap_count,
                laps_valid=record.laps_valid,
                best_lap_ms=record.best_lap_ms,
                avg_clean_lap_ms=record.avg_clean_lap_ms,
                total_time_ms=record.total_time_ms,
                stint_count=record.stint_count,
            ),
            chunk_count=record.chunk_count,
            total_size_bytes=record.total_size_bytes,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionRecordResponse]


class UploadResultResponse(BaseModel):
    status: str
    file_name: str
    session_id: str | None = None
    content_digest: str | None = None
    meta: SessionMetaResponse | None = None
    summary: SessionSummaryResponse | None = None
    document: Any = None
    error: str | None = None
    error_code: str | None = None


class UploadCounts(BaseModel):
    ok: int
    duplicate: int
    error: int


class BatchUploadResponse(BaseModel):
    results: list[UploadResultResponse]
    counts: UploadCounts


class SessionPayloadResponse(BaseModel):
    session_id: str
    document: Any


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    session_id: str | None = None
    trace_id: str | None = None


class SessionPayloadItem(BaseModel):
    session_id: str
    content_digest: str
    file_name: str
    document: Any = None
    error: str | None = None
    error_code: str | None = None


class SessionPayloadsResponse(BaseModel):
    items: list[SessionPayloadItem]
    loaded: int
    failed: int
