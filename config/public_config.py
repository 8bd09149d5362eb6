from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """APP_ROOT if set, else /app inside the container image, else the working directory."""
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Tunables and paths. Process env wins over `.env`; every field has a working default.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    log_dir: Path = Field(
        default_factory=lambda: _default_app_root() / "logs", alias="COACH_LOG_DIR"
    )
    # Runtime-only state directory (jobs.db). Prefer a non-repo mount in production.
    state_dir: Path = Field(
        default_factory=lambda: _default_app_root() / "_state", alias="COACH_STATE_DIR"
    )
    jobs_db_name: str = Field(default="jobs.db", alias="COACH_JOBS_DB_NAME")

    # Audio storage. Recordings reference paths relative to this root.
    storage_dir: Path = Field(
        default_factory=lambda: _default_app_root() / "audio-files",
        validation_alias=AliasChoices("COACH_STORAGE_DIR", "AUDIO_STORAGE_DIR"),
    )
    # When set, signed URLs point at this HTTP origin instead of file:// paths.
    storage_base_url: str | None = Field(default=None, alias="STORAGE_BASE_URL")
    download_timeout_s: float = Field(default=120.0, alias="DOWNLOAD_TIMEOUT_S")

    # Used when composing absolute links (logs, CLI output).
    app_base_url: str = Field(default="http://127.0.0.1:8000", alias="APP_BASE_URL")

    # --- provider ---
    model_name: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    chunk_temperature: float = Field(default=0.1, alias="CHUNK_TEMPERATURE")
    chunk_max_output_tokens: int = Field(default=8192, alias="CHUNK_MAX_OUTPUT_TOKENS")
    synthesis_temperature: float = Field(default=0.3, alias="SYNTHESIS_TEMPERATURE")
    synthesis_max_output_tokens: int = Field(default=65536, alias="SYNTHESIS_MAX_OUTPUT_TOKENS")
    synthesis_include_audio: bool = Field(default=True, alias="SYNTHESIS_INCLUDE_AUDIO")

    # --- admission ---
    max_concurrent_jobs: int = Field(
        default=1, validation_alias=AliasChoices("MAX_CONCURRENT_JOBS", "MAX_CONCURRENT_ANALYSES")
    )
    stale_after_minutes: int = Field(default=30, alias="STALE_JOB_MINUTES")
    queue_retry_after_s: int = Field(default=60, alias="QUEUE_RETRY_AFTER_S")
    # Duration estimate when the media duration is unknown (1 MiB ~ 1 minute).
    bytes_per_minute_estimate: int = Field(default=1024 * 1024, alias="BYTES_PER_MINUTE_ESTIMATE")

    # --- chunked transcription ---
    chunk_minutes: int = Field(default=45, alias="CHUNK_MINUTES")
    inter_request_delay_s: float = Field(default=35.0, alias="INTER_REQUEST_DELAY_S")
    context_summary_chars: int = Field(default=600, alias="CONTEXT_SUMMARY_CHARS")
    min_section_chars: int = Field(default=50, alias="MIN_SECTION_CHARS")
    rate_limit_cooldown_s: float = Field(default=60.0, alias="RATE_LIMIT_COOLDOWN_S")
    rate_limit_cooldown_cap_s: float = Field(default=300.0, alias="RATE_LIMIT_COOLDOWN_CAP_S")
    chunk_max_rate_limit_retries: int = Field(default=5, alias="CHUNK_MAX_RATE_LIMIT_RETRIES")
    rate_limit_jitter: bool = Field(default=True, alias="RATE_LIMIT_JITTER")

    # --- synthesis ---
    synthesis_max_retries: int = Field(default=3, alias="SYNTHESIS_MAX_RETRIES")
    synthesis_backoff_base_s: float = Field(default=30.0, alias="SYNTHESIS_BACKOFF_BASE_S")
    synthesis_min_output_chars: int = Field(default=20, alias="SYNTHESIS_MIN_OUTPUT_CHARS")
    stream_checkpoint_every: int = Field(default=5, alias="STREAM_CHECKPOINT_EVERY")

    # --- provider-side ingestion ---
    ingestion_poll_interval_s: float = Field(default=5.0, alias="INGESTION_POLL_INTERVAL_S")
    ingestion_timeout_s: float = Field(default=600.0, alias="INGESTION_TIMEOUT_S")

    # --- worker ---
    queue_scan_interval_s: float = Field(default=5.0, alias="QUEUE_SCAN_INTERVAL_S")
    worker_autostart: bool = Field(default=True, alias="WORKER_AUTOSTART")

    # --- web server ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")
    token_max_age_s: int = Field(default=60 * 60 * 24 * 7, alias="TOKEN_MAX_AGE_S")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    def cors_origin_list(self) -> list[str]:
        items = [o.strip() for o in str(self.cors_origins or "").replace(" ", ",").split(",")]
        return [o for o in items if o]
