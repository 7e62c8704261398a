import sys
import types

import pytest

from telemetry_store.errors import DocumentTooLargeError
from telemetry_store.storage import S3ChunkStorage


class _FakeS3Client:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.objects: dict[str, bytes] = {}

    def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {"ETag": '"etag-1"'}

    def get_object(self, **kwargs):
        self.calls.append(("get_object", kwargs))
        body = self.objects[kwargs["Key"]]
        return {"Body": types.SimpleNamespace(read=lambda: body)}

    def list_objects_v2(self, **kwargs):
        self.calls.append(("list_objects_v2", kwargs))
        keys = sorted(key for key in self.objects if key.startswith(kwargs["Prefix"]))
        if "ContinuationToken" not in kwargs:
            return {"Contents": [{"Key": key} for key in keys[:1]], "IsTruncated": True, "NextContinuationToken": "t1"}
        return {"Contents": [{"Key": key} for key in keys[1:]], "IsTruncated": False}

    def delete_object(self, **kwargs):
        self.calls.append(("delete_object", kwargs))
        self.objects.pop(kwargs["Key"], None)
        return {}


def _storage(monkeypatch, document_limit: int = 1024) -> tuple[S3ChunkStorage, _FakeS3Client]:
    fake_client = _FakeS3Client()
    fake_boto3 = types.SimpleNamespace(client=lambda service_name, **kwargs: fake_client)
    monkeypatch.setitem(sys.modules, "boto3", fake_boto3)
    return S3ChunkStorage(bucket="bucket-1", region="us-east-1", document_limit=document_limit), fake_client


def test_s3_storage_chunk_flow(monkeypatch) -> None:
    storage, fake_client = _storage(monkeypatch)

    result = storage.write_chunk("u1", "s1", 0, b"abc")
    storage.write_chunk("u1", "s1", 1, b"def")
    payload = storage.read_chunk(result.key)
    keys = storage.list_keys("users/u1/sessions/s1/")
    storage.delete_key(result.key)

    assert result.key == "users/u1/sessions/s1/chunks/chunk_0"
    assert result.etag == '"etag-1"'
    assert payload == b"abc"
    assert keys == ["users/u1/sessions/s1/chunks/chunk_0", "users/u1/sessions/s1/chunks/chunk_1"]
    assert [name for name, _ in fake_client.calls] == [
        "put_object",
        "put_object",
        "get_object",
        "list_objects_v2",
        "list_objects_v2",
        "delete_object",
    ]
    assert fake_client.calls[0][1]["Bucket"] == "bucket-1"
    assert fake_client.calls[4][1]["ContinuationToken"] == "t1"


def test_s3_storage_rejects_oversized_document_before_put(monkeypatch) -> None:
    storage, fake_client = _storage(monkeypatch, document_limit=2)

    with pytest.raises(DocumentTooLargeError):
        storage.write_chunk("u1", "s1", 0, b"abc")
    assert fake_client.calls == []


def test_s3_storage_requires_bucket(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "boto3", types.SimpleNamespace(client=lambda service_name, **kwargs: None))
    with pytest.raises(ValueError):
        S3ChunkStorage(bucket="", region="us-east-1", document_limit=1024)
