import os
from dataclasses import dataclass
from pathlib import Path

from telemetry_store.config import settings
from telemetry_store.errors import DocumentTooLargeError


@dataclass(frozen=True)
class StorageWriteResult:
    key: str
    size_bytes: int
    etag: str | None = None


def session_prefix(user_id: str, session_id: str) -> str:
    return f"users/{user_id}/sessions/{session_id}/"


class ChunkStorage:
    """Per-user hierarchical document namespace holding chunk documents.

    Every document write is bounded by ``document_limit``; callers pick a
    chunk size with headroom below it.
    """

    def __init__(self, document_limit: int) -> None:
        self.document_limit = document_limit

    def chunk_key(self, user_id: str, session_id: str, chunk_index: int) -> str:
        return f"{session_prefix(user_id, session_id)}chunks/chunk_{chunk_index}"

    def _check_document_size(self, key: str, data: bytes) -> None:
        if len(data) > self.document_limit:
            raise DocumentTooLargeError(
                f"document {key} is {len(data)} bytes, limit is {self.document_limit}"
            )

    def write_chunk(self, user_id: str, session_id: str, chunk_index: int, data: bytes) -> StorageWriteResult:
        key = self.chunk_key(user_id, session_id, chunk_index)
        self._check_document_size(key, data)
        etag = self._put(key, data)
        return StorageWriteResult(key=key, size_bytes=len(data), etag=etag)

    def _put(self, key: str, data: bytes) -> str | None:
        raise NotImplementedError

    def read_chunk(self, key: str) -> bytes:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError


class LocalChunkStorage(ChunkStorage):
    def __init__(self, root: str, document_limit: int) -> None:
        super().__init__(document_limit)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _put(self, key: str, data: bytes) -> str | None:
        full_path = self.root / key
        full_path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never observe a half-written chunk.
        tmp_path = full_path.with_name(f"{full_path.name}.tmp-{os.getpid()}")
        tmp_path.write_bytes(data)
        tmp_path.replace(full_path)
        return None

    def read_chunk(self, key: str) -> bytes:
        return (self.root / key).read_bytes()

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [
            str(path.relative_to(root)).replace("\\", "/")
            for path in base.rglob("*")
            if path.is_file() and ".tmp-" not in path.name
        ]

    def delete_key(self, key: str) -> None:
        target = self.root / key
        if target.exists():
            target.unlink()


class S3ChunkStorage(ChunkStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        document_limit: int,
        endpoint_url: str | None = None,
    ) -> None:
        super().__init__(document_limit)
        if not bucket:
            raise ValueError("s3_bucket must be set when storage_backend=s3")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        self.client = boto3.client("s3", **client_kwargs)

    def _put(self, key: str, data: bytes) -> str | None:
        result = self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        return result.get("ETag")

    def read_chunk(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_storage() -> ChunkStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalChunkStorage(settings.storage_root, settings.document_size_limit_bytes)
    if backend == "s3":
        return S3ChunkStorage(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            document_limit=settings.document_size_limit_bytes,
            endpoint_url=settings.s3_endpoint_url or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
