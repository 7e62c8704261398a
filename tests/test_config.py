import pytest
from pydantic import ValidationError

from telemetry_store.config import Settings


def test_defaults_keep_chunk_below_document_ceiling() -> None:
    config = Settings(_env_file=None)
    assert config.chunk_size_bytes == 400_000
    assert config.document_size_limit_bytes == 1_048_576
    assert config.chunk_size_bytes < config.document_size_limit_bytes
    assert config.extensions() == (".json",)


def test_chunk_size_without_headroom_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, chunk_size_bytes=1_048_576)


def test_chunk_size_below_one_character_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, chunk_size_bytes=3)


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("CHUNK_SIZE_BYTES", "1024")
    monkeypatch.setenv("ALLOWED_EXTENSIONS", ".json, .JSONL")
    config = Settings(_env_file=None)
    assert config.chunk_size_bytes == 1024
    assert config.extensions() == (".json", ".jsonl")


def test_inflight_limit_below_writer_window_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, chunk_write_workers=8, max_global_inflight_chunks=10)


def test_queue_size_below_writer_window_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, chunk_write_workers=4, task_queue_maxsize=6)


def test_writer_window_at_limit_is_accepted() -> None:
    config = Settings(_env_file=None, chunk_write_workers=5, max_global_inflight_chunks=10)
    assert config.chunk_write_workers * 2 == config.max_global_inflight_chunks


def test_payload_read_concurrency_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, payload_read_concurrency=0)
