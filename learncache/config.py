from pydantic_settings import BaseSettings
from pydantic import BaseModel, model_validator
from typing import Any
import os
import re
import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

# Content types accepted by the portal's upload form.
DEFAULT_ALLOWED_TYPES = [
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
    "text/plain",
    "text/html",
    "application/json",
    "image/jpeg",
    "image/png",
    "image/gif",
]


def _resolve_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)), value
        )
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8855
    log_level: str = "info"

class CacheConfig(BaseModel):
    local_dir: str = "./data/files"
    index_path: str = "./data/index.db"
    max_local_size_mb: int = 100

    @property
    def max_local_bytes(self) -> int:
        return self.max_local_size_mb * 1024 * 1024

class ReplicationConfig(BaseModel):
    enabled: bool = True
    backend: str = "directory"
    base_url: str = ""
    public_base_url: str = ""
    api_key: str = ""
    remote_dir: str = "./data/remote"
    key_prefix: str = "learning-files/"
    timeout_seconds: float = 30.0
    max_concurrency: int = 4
    failure_threshold: int = 3
    failure_window_seconds: int = 300
    cooldown_seconds: int = 300

    @model_validator(mode="after")
    def _check_backend(self) -> "ReplicationConfig":
        self.backend = self.backend.lower()
        if self.backend not in ("http", "directory"):
            raise ValueError(f"Unknown replication backend '{self.backend}'")
        if self.enabled and self.backend == "http" and not self.base_url:
            raise ValueError("replication.base_url is required for the http backend")
        if self.max_concurrency < 1:
            self.max_concurrency = 1
        return self

class RetentionConfig(BaseModel):
    max_age_days: float = 7
    sweep_interval_hours: int = 24

class UploadConfig(BaseModel):
    allowed_types: list[str] = list(DEFAULT_ALLOWED_TYPES)
    max_upload_mb: int = 50

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def is_allowed(self, mime_type: str) -> bool:
        base = mime_type.split(";", 1)[0].strip().lower()
        return base in self.allowed_types

class Settings(BaseSettings):
    model_config = {"extra": "allow"}

    server: ServerConfig = ServerConfig()
    cache: CacheConfig = CacheConfig()
    replication: ReplicationConfig = ReplicationConfig()
    retention: RetentionConfig = RetentionConfig()
    upload: UploadConfig = UploadConfig()

    @classmethod
    def from_yaml(cls, path: str = "learncache.yaml") -> "Settings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data = _resolve_env_vars(data)
        return cls(**data)
