"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailMirrorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_MIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cached authorized-user tokens, one <account_id>.json per account
    tokens_dir: Path = Path("credentials/tokens")

    # Database
    database_path: Path = Path("data/gmail_mirror.db")

    # Gmail API paging
    page_size: int = 500
    batch_size: int = 50
    inter_page_delay_seconds: float = 0.2

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    num_retries: int = 3
    page_retry_limit: int = 3
    page_retry_delay_seconds: float = 5.0

    # Progress
    rate_window_size: int = 10

    # Concurrency
    max_concurrent_syncs: int = 4
    bulk_max_workers: int = 8
    auto_resume_interrupted: bool = False

    # Explorer
    default_page_limit: int = 50
    browse_max_limit: int = 100
    cleanup_max_limit: int = 5000

    # Client-side polling (CLI)
    poll_interval_active_seconds: float = 1.0
    poll_interval_idle_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and token directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.tokens_dir.mkdir(parents=True, exist_ok=True)
