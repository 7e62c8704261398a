import hashlib

from telemetry_store.errors import HashComputationError


def content_digest(data: bytes) -> str:
    """SHA-256 hex digest of the raw upload bytes."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise HashComputationError(f"cannot hash {type(data).__name__}, expected bytes")
    return hashlib.sha256(data).hexdigest()
