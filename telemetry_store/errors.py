"""Error taxonomy for the session store.

The orchestrator turns every one of these into a per-file result; only the
read path lets them reach the HTTP layer.
"""


class SessionStoreError(Exception):
    """Base class for all session store failures."""

    error_code = "session_store_error"


class ValidationError(SessionStoreError):
    """The upload is not a telemetry capture we accept (extension or content)."""

    error_code = "validation_error"


class HashComputationError(SessionStoreError):
    """The upload bytes could not be read or hashed."""

    error_code = "hash_error"


class DuplicateDetected(SessionStoreError):
    """Identical content was already stored for this user.

    Not a failure: callers report it as a ``duplicate`` result.
    """

    error_code = "duplicate"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"content already stored as session {session_id}")
        self.session_id = session_id


class StoreWriteError(SessionStoreError):
    """A metadata, chunk or digest index write failed."""

    error_code = "store_write_error"


class DocumentTooLargeError(StoreWriteError):
    error_code = "document_too_large"


class AdmissionRefused(StoreWriteError):
    """The chunk writer pool is saturated; the caller should back off and resubmit."""

    error_code = "admission_refused"


class UploadCancelled(StoreWriteError):
    error_code = "cancelled"


class DeadlineExceeded(StoreWriteError):
    error_code = "deadline_exceeded"


class StoreReadError(SessionStoreError):
    error_code = "store_read_error"


class NotFound(StoreReadError):
    """The session does not exist, is not committed, or belongs to another user."""

    error_code = "not_found"


class CorruptPayload(StoreReadError):
    """The chunk set is incomplete, fails its checksums, or does not parse."""

    error_code = "corrupt_payload"
