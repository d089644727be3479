"""Application configuration via environment variables."""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env from project root (works regardless of CWD)
_project_root = Path(__file__).resolve().parents[2]
load_dotenv(_project_root / ".env")


class Settings(BaseSettings):
    """Planner assistant configuration."""

    # Database (SQLite via aiosqlite by default, MySQL via aiomysql)
    database_url: str = "sqlite+aiosqlite:///./plannerai.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Security
    api_key: str = ""  # Empty = open access (dev mode)
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit: int = 0  # Requests per minute per caller (0 = disabled)

    # Logging
    log_level: str = "INFO"  # DEBUG | INFO | WARNING | ERROR
    log_format: str = "text"  # "text" | "json"

    # AI trace
    ai_logging_enabled: bool = True
    db_logging_enabled: bool = False  # Persist trace events to ai_logs
    verbose_logging: bool = False  # Include validated inputs and full payloads
    log_buffer_size: int = 1000  # In-memory events kept for the log viewer

    # Queries and resolution
    default_limit: int = 10
    max_limit: int = 50
    max_candidates: int = 5

    # Repository access
    repository_timeout_seconds: float = 10.0
    read_retry_backoff_seconds: float = 0.2

    # Calendar
    timezone: str = "UTC"

    # Trash (retention itself is enforced by an external purge job)
    trash_retention_days: int = 30

    model_config = {"env_prefix": "PA_", "env_file": ".env"}


settings = Settings()
