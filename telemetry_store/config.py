from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Longest UTF-8 sequence; a chunk must always fit one whole character.
MIN_CHUNK_SIZE_BYTES = 4


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "telemetry-session-store"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./telemetry_session_store.db"
    auto_create_tables: bool = True
    storage_backend: str = "local"
    storage_root: str = "./data"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "telemetry-session-store"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    chunk_size_bytes: int = 400_000
    document_size_limit_bytes: int = 1_048_576
    allowed_extensions: str = ".json"
    max_retries: int = 3
    retry_backoff_seconds: float = 0.2
    upload_deadline_seconds: float = 120.0
    chunk_write_workers: int = 4
    task_queue_maxsize: int = 256
    max_global_inflight_chunks: int = 64
    payload_read_concurrency: int = 3
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_session_ttl_seconds: int = 3600

    @model_validator(mode="after")
    def _check_chunk_headroom(self) -> "Settings":
        if self.chunk_size_bytes < MIN_CHUNK_SIZE_BYTES:
            raise ValueError(f"chunk_size_bytes must be at least {MIN_CHUNK_SIZE_BYTES}")
        if self.chunk_size_bytes >= self.document_size_limit_bytes:
            raise ValueError("chunk_size_bytes must leave headroom below document_size_limit_bytes")
        return self

    @model_validator(mode="after")
    def _check_writer_admission(self) -> "Settings":
        # One upload keeps up to two chunk writes per worker outstanding.
        if self.chunk_write_workers * 2 > self.max_global_inflight_chunks:
            raise ValueError("max_global_inflight_chunks must be at least twice chunk_write_workers")
        if self.chunk_write_workers * 2 > self.task_queue_maxsize:
            raise ValueError("task_queue_maxsize must be at least twice chunk_write_workers")
        if self.payload_read_concurrency < 1:
            raise ValueError("payload_read_concurrency must be at least 1")
        return self

    def extensions(self) -> tuple[str, ...]:
        return tuple(item.strip().lower() for item in self.allowed_extensions.split(",") if item.strip())


settings = Settings()
