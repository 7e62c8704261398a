"""Size-bounded splitting of serialized payloads and their reassembly.

Payloads are split on UTF-8 byte boundaries. A boundary that would land
inside a multi-byte sequence is moved back to the start of that sequence,
so every fragment decodes on its own and ``join(split(p, n)) == p``.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass

from telemetry_store.config import MIN_CHUNK_SIZE_BYTES
from telemetry_store.errors import CorruptPayload

PAYLOAD_ENCODING = "utf-8"


@dataclass(frozen=True)
class Chunk:
    index: int
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)


def _is_continuation_byte(value: int) -> bool:
    return value & 0xC0 == 0x80


def split_bytes(data: bytes, chunk_size: int) -> list[bytes]:
    if chunk_size < MIN_CHUNK_SIZE_BYTES:
        raise ValueError(f"chunk_size must be at least {MIN_CHUNK_SIZE_BYTES} bytes")
    if not data:
        return [b""]

    fragments: list[bytes] = []
    start = 0
    total = len(data)
    while start < total:
        end = min(start + chunk_size, total)
        if end < total:
            while end > start and _is_continuation_byte(data[end]):
                end -= 1
            if end == start:
                raise ValueError("payload is not valid UTF-8: continuation run longer than chunk size")
        fragments.append(data[start:end])
        start = end
    return fragments


def split(payload: str, chunk_size: int) -> list[bytes]:
    return split_bytes(payload.encode(PAYLOAD_ENCODING), chunk_size)


def join(fragments: Iterable[bytes]) -> str:
    """Inverse of :func:`split`; fragments must already be in index order."""
    return b"".join(fragments).decode(PAYLOAD_ENCODING)


def to_chunks(payload: str, chunk_size: int) -> list[Chunk]:
    return [Chunk(index=idx, payload=fragment) for idx, fragment in enumerate(split(payload, chunk_size))]


def expected_chunk_count(size_bytes: int, chunk_size: int) -> int:
    # Exact for single-byte text; multi-byte text may need more after boundary guards.
    return max(1, math.ceil(size_bytes / chunk_size))


def missing_indexes(indexes: Iterable[int], expected_count: int) -> list[int]:
    present = set(indexes)
    return [idx for idx in range(expected_count) if idx not in present]


def reassemble(chunks: Iterable[Chunk], expected_count: int) -> str:
    ordered = sorted(chunks, key=lambda chunk: chunk.index)
    indexes = [chunk.index for chunk in ordered]
    if indexes != list(range(expected_count)):
        missing = missing_indexes(indexes, expected_count)
        raise CorruptPayload(
            f"chunk set incomplete: expected {expected_count}, got {len(indexes)}, missing {missing}"
        )
    try:
        return join(chunk.payload for chunk in ordered)
    except UnicodeDecodeError as exc:
        raise CorruptPayload(f"reassembled payload is not valid {PAYLOAD_ENCODING}: {exc}") from exc
