from pathlib import Path

import pytest

from progress_sync.config import ClientConfig, ServerConfig


def test_server_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        ServerConfig.from_env()


def test_server_reads_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/progress")
    monkeypatch.setenv("SYNC_PORT", "9090")
    monkeypatch.setenv("SYNC_LOG_FORMAT", "text")
    monkeypatch.delenv("SYNC_HOST", raising=False)

    config = ServerConfig.from_env()
    assert config.port == 9090
    assert config.host == "0.0.0.0"
    assert config.log_format == "text"
    assert config.store_timeout_seconds == 2.0


def test_client_defaults(monkeypatch):
    for var in ("SYNC_API_URL", "SYNC_QUEUE_PATH", "SYNC_PROBE_INTERVAL", "SYNC_PROBE_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)

    config = ClientConfig.from_env()
    assert config.api_url == "http://localhost:8080"
    assert config.probe_interval_seconds == 30.0
    assert config.probe_timeout_seconds == 5.0
    assert config.queue_path == Path("~/.progress_sync/queue.json").expanduser()


def test_client_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SYNC_API_URL", "https://sync.example.com/")
    monkeypatch.setenv("SYNC_QUEUE_PATH", str(tmp_path / "q.json"))
    monkeypatch.setenv("SYNC_PROBE_INTERVAL", "5")

    config = ClientConfig.from_env()
    assert config.api_url == "https://sync.example.com"
    assert config.queue_path == tmp_path / "q.json"
    assert config.probe_interval_seconds == 5.0
