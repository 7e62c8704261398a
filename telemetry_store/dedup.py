from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from telemetry_store.errors import StoreReadError, StoreWriteError
from telemetry_store.models import ContentDigestEntry, SessionRecord, SessionStatus


class DuplicateIndex:
    """Per-user map from content digest to the session that first claimed it.

    ``register_digest`` is an insert-if-absent on the ``(owner_id,
    content_digest)`` primary key, so two concurrent uploads of the same
    bytes cannot both win the claim.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def check_duplicate(self, user_id: str, digest: str) -> SessionRecord | None:
        try:
            with self._session_factory() as db:
                entry = db.get(ContentDigestEntry, (user_id, digest))
                if entry is None:
                    return None
                record = db.get(SessionRecord, entry.session_id)
                if record is None or record.owner_id != user_id:
                    return None
                if record.status != SessionStatus.committed.value:
                    return None
                return record
        except SQLAlchemyError as exc:
            raise StoreReadError(f"duplicate index lookup failed: {exc}") from exc

    def register_digest(self, user_id: str, digest: str, session_id: str, file_name: str = "") -> str | None:
        """Claim ``digest`` for ``session_id``; return the session id that owns it.

        ``None`` means the competing claim was released between the insert and
        the lookup, and the caller may try again.
        """
        try:
            with self._session_factory() as db:
                db.add(
                    ContentDigestEntry(
                        owner_id=user_id,
                        content_digest=digest,
                        session_id=session_id,
                        file_name=file_name,
                    )
                )
                try:
                    db.commit()
                    return session_id
                except IntegrityError:
                    db.rollback()

                entry = db.get(ContentDigestEntry, (user_id, digest))
                return entry.session_id if entry is not None else None
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"duplicate index write failed: {exc}") from exc

    def release(self, user_id: str, digest: str, session_id: str) -> bool:
        """Drop the claim only if it still points at ``session_id``."""
        try:
            with self._session_factory() as db:
                deleted = db.execute(
                    delete(ContentDigestEntry).where(
                        ContentDigestEntry.owner_id == user_id,
                        ContentDigestEntry.content_digest == digest,
                        ContentDigestEntry.session_id == session_id,
                    )
                ).rowcount
                db.commit()
                return bool(deleted)
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"duplicate index release failed: {exc}") from exc
