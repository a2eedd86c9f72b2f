import pytest
from pydantic import ValidationError

from learncache.config import ReplicationConfig, Settings, UploadConfig


def test_defaults():
    settings = Settings()
    assert settings.cache.max_local_bytes == 100 * 1024 * 1024
    assert settings.retention.max_age_days == 7
    assert settings.replication.backend == "directory"
    assert settings.upload.max_upload_bytes == 50 * 1024 * 1024


def test_from_yaml_resolves_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv("LC_REMOTE_URL", "https://store.example/bucket")
    monkeypatch.setenv("LC_REMOTE_KEY", "s3cret")
    path = tmp_path / "learncache.yaml"
    path.write_text(
        "cache:\n"
        "  max_local_size_mb: 5\n"
        "replication:\n"
        "  backend: http\n"
        "  base_url: ${LC_REMOTE_URL}\n"
        "  api_key: ${LC_REMOTE_KEY}\n"
        "retention:\n"
        "  max_age_days: 3\n"
    )

    settings = Settings.from_yaml(str(path))

    assert settings.cache.max_local_bytes == 5 * 1024 * 1024
    assert settings.replication.base_url == "https://store.example/bucket"
    assert settings.replication.api_key == "s3cret"
    assert settings.retention.max_age_days == 3


def test_from_empty_yaml(tmp_path):
    path = tmp_path / "learncache.yaml"
    path.write_text("")
    assert Settings.from_yaml(str(path)).cache.max_local_size_mb == 100


def test_unknown_backend_rejected():
    with pytest.raises(ValidationError):
        ReplicationConfig(backend="ftp")


def test_http_backend_requires_base_url():
    with pytest.raises(ValidationError):
        ReplicationConfig(backend="http")
    ReplicationConfig(backend="http", enabled=False)


def test_upload_allow_list():
    upload = UploadConfig()
    assert upload.is_allowed("application/pdf")
    assert upload.is_allowed("Text/Plain; charset=utf-8")
    assert not upload.is_allowed("application/x-msdownload")
