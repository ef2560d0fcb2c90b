import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ServerConfig:
    database_url: str
    host: str = "0.0.0.0"
    port: int = 8080
    log_format: str = "json"
    store_timeout_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "ServerConfig":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            host=os.environ.get("SYNC_HOST", "0.0.0.0"),
            port=int(os.environ.get("SYNC_PORT", "8080")),
            log_format=os.environ.get("SYNC_LOG_FORMAT", "json"),
            store_timeout_seconds=float(os.environ.get("SYNC_STORE_TIMEOUT", "2.0")),
        )


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = "http://localhost:8080"
    queue_path: Path = Path("~/.progress_sync/queue.json")
    probe_interval_seconds: float = 30.0
    probe_timeout_seconds: float = 5.0
    save_timeout_seconds: float = 10.0
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            api_url=os.environ.get("SYNC_API_URL", "http://localhost:8080").rstrip("/"),
            queue_path=Path(
                os.environ.get("SYNC_QUEUE_PATH", "~/.progress_sync/queue.json")
            ).expanduser(),
            probe_interval_seconds=float(os.environ.get("SYNC_PROBE_INTERVAL", "30")),
            probe_timeout_seconds=float(os.environ.get("SYNC_PROBE_TIMEOUT", "5")),
            save_timeout_seconds=float(os.environ.get("SYNC_SAVE_TIMEOUT", "10")),
            log_format=os.environ.get("SYNC_LOG_FORMAT", "json"),
        )
