"""Central configuration for the batch provisioning controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"
DEFAULT_STORE_PATH = ROOT_DIR / "data" / "recoverable_sessions.db"


class Settings(BaseSettings):
    """Environment-driven settings for the provisioning engine."""

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="PROVISIONING_",
        case_sensitive=False,
        extra="ignore",
    )

    orchestrator_api_url: str = Field("http://localhost:8081", description="Base URL of the orchestrator")
    api_prefix: str = Field("/api/v1", description="Path prefix for versioned orchestrator routes")
    request_timeout_s: float = Field(15.0, description="Timeout for command request/response calls")

    stream_connect_timeout_s: float = Field(10.0, description="Connect timeout for each event stream attempt")
    reconnect_initial_delay_s: float = Field(1.0, description="First reconnect delay before doubling")
    reconnect_max_delay_s: float = Field(30.0, description="Ceiling for reconnect backoff")
    reconnect_jitter_s: float = Field(1.0, description="Upper bound of random jitter added to each delay")
    max_reconnect_attempts: int = Field(
        5, description="Consecutive failed attempts before the stream reports a terminal error"
    )

    store_backend: Literal["sqlite", "memory"] = Field("sqlite", description="Recoverable session store")
    store_path: Path = Field(DEFAULT_STORE_PATH, description="SQLite file for recoverable sessions")

    subscriber_queue_size: int = Field(32, description="Per-subscriber notice queue depth")

    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    log_level: str = Field("INFO", description="Logging level for controller")

    @property
    def api_base_url(self) -> str:
        return self.orchestrator_api_url.rstrip("/") + self.api_prefix


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
