from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from telemetry_store.config import settings
from telemetry_store.events import UPLOAD_LOGGER, get_event_logger, log_event
from telemetry_store.models import ContentDigestEntry, SessionChunk, SessionRecord, SessionStatus
from telemetry_store.storage import ChunkStorage, session_prefix

maintenance_logger = get_event_logger(UPLOAD_LOGGER)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _session_id_from_key(key: str) -> str | None:
    # users/{user_id}/sessions/{session_id}/chunks/chunk_{n}
    parts = key.split("/")
    if len(parts) >= 4 and parts[0] == "users" and parts[2] == "sessions":
        return parts[3]
    return None


def _delete_key(storage: ChunkStorage, key: str) -> bool:
    try:
        storage.delete_key(key)
        return True
    except Exception as exc:
        log_event(
            maintenance_logger,
            {"event": "cleanup_error", "key": key, "detail": str(exc), "error_class": "storage_error"},
            level=logging.WARNING,
        )
        return False


def cleanup_once(db: Session, storage: ChunkStorage, now: datetime | None = None) -> dict[str, int]:
    """Remove abandoned sessions and everything that hangs off them.

    Abandoned means ``FAILED``, or ``PENDING`` for longer than
    ``stale_session_ttl_seconds``. Committed sessions are never touched.
    """
    now = now or _utc_now()
    stale_before = now - timedelta(seconds=settings.stale_session_ttl_seconds)

    stale_ids = list(
        db.scalars(
            select(SessionRecord.id).where(
                SessionRecord.status == SessionStatus.pending.value,
                SessionRecord.created_at < stale_before,
            )
        ).all()
    )
    failed_ids = list(
        db.scalars(select(SessionRecord.id).where(SessionRecord.status == SessionStatus.failed.value)).all()
    )
    abandoned_ids = stale_ids + failed_ids

    # Listed before reading live session ids: a chunk object only exists once its record does.
    listed_keys: list[str] = []
    try:
        listed_keys = storage.list_keys("users/")
    except Exception as exc:
        log_event(
            maintenance_logger,
            {"event": "cleanup_error", "detail": str(exc), "error_class": "storage_error"},
            level=logging.WARNING,
        )

    deleted_keys: set[str] = set()
    for session_id in abandoned_ids:
        record = db.get(SessionRecord, session_id)
        keys = set(db.scalars(select(SessionChunk.storage_key).where(SessionChunk.session_id == session_id)).all())
        try:
            keys.update(storage.list_keys(session_prefix(record.owner_id, session_id)))
        except Exception as exc:
            log_event(
                maintenance_logger,
                {"event": "cleanup_error", "session_id": session_id, "detail": str(exc), "error_class": "storage_error"},
                level=logging.WARNING,
            )
        for key in keys:
            if _delete_key(storage, key):
                deleted_keys.add(key)

    digest_entries_deleted = 0
    if abandoned_ids:
        db.execute(delete(SessionChunk).where(SessionChunk.session_id.in_(abandoned_ids)))
        digest_entries_deleted += db.execute(
            delete(ContentDigestEntry).where(ContentDigestEntry.session_id.in_(abandoned_ids))
        ).rowcount or 0
        db.execute(delete(SessionRecord).where(SessionRecord.id.in_(abandoned_ids)))

    # Claims are registered before their record exists; only old dangling ones are abandoned.
    known_ids = set(db.scalars(select(SessionRecord.id)).all())
    dangling = [
        entry
        for entry in db.scalars(select(ContentDigestEntry).where(ContentDigestEntry.created_at < stale_before)).all()
        if entry.session_id not in known_ids
    ]
    for entry in dangling:
        db.delete(entry)
    digest_entries_deleted += len(dangling)

    for key in listed_keys:
        if key in deleted_keys:
            continue
        session_id = _session_id_from_key(key)
        if session_id is not None and session_id not in known_ids and _delete_key(storage, key):
            deleted_keys.add(key)

    db.commit()
    stats = {
        "stale_sessions_deleted": len(stale_ids),
        "failed_sessions_deleted": len(failed_ids),
        "digest_entries_deleted": digest_entries_deleted,
        "storage_keys_deleted": len(deleted_keys),
    }
    log_event(maintenance_logger, {"event": "cleanup_completed", **stats})
    return stats
