"""
Process settings for the API and the stage workers, read from the
environment or a .env file.

Per-queue retry/backoff parameters are NOT here: they are runtime-editable
rows managed by coursegen.jobs.queue_config.
"""

import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Environment-backed settings; field names match the variable names (case-insensitive)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===== Generation Provider =====
    ANTHROPIC_API_KEY: str | None = Field(
        default=None,
        description="Anthropic API key for Claude (required for content generation)"
    )

    GENERATION_MODEL: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for outlines, articles and quizzes"
    )

    GENERATION_MAX_TOKENS: int = Field(
        default=8000,
        ge=100,
        le=16000,
        description="Maximum tokens per generation response"
    )

    GENERATION_TEMPERATURE: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="LLM temperature for generation"
    )

    GENERATION_TIMEOUT_SECONDS: int = Field(
        default=120,
        ge=1,
        description="Hard timeout for a single provider call; exceeding it is a transient failure"
    )

    # ===== Supabase (entity store) =====
    SUPABASE_URL: str | None = Field(
        default=None,
        description="Supabase project URL"
    )

    SUPABASE_SERVICE_KEY: str | None = Field(
        default=None,
        description="Supabase service role key (server-side, bypasses RLS)"
    )

    # ===== Job Queue =====
    JOB_DB_PATH: str = Field(
        default="generation_jobs.db",
        description="SQLite file holding job records and queue configuration rows"
    )

    STORAGE_PATH: str | None = Field(
        default=None,
        description="Persistent volume mount; when set, the job database lives there"
    )

    WORKER_POLL_INTERVAL: int = Field(
        default=5,
        ge=1,
        le=300,
        description="Seconds between worker lease attempts"
    )

    WORKER_CONCURRENCY: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Jobs a single worker process runs at once (1 avoids overwhelming the provider)"
    )

    WORKER_QUEUES: str = Field(
        default="course-structure,quiz,email,sitemap",
        description="Comma-separated queue names this worker leases from"
    )

    STALLED_JOB_MINUTES: int = Field(
        default=15,
        ge=1,
        description="Active jobs leased longer than this are treated as stalled (worker crash)"
    )

    CLEANUP_INTERVAL_MINUTES: int = Field(
        default=60,
        ge=1,
        description="How often the worker trims finished jobs and recovers stalled ones"
    )

    AUTO_GENERATE_QUIZZES: bool = Field(
        default=True,
        description="Queue quiz generation automatically once every article of a course has content"
    )

    @field_validator('AUTO_GENERATE_QUIZZES', 'DEV_MODE', mode='before')
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (platform env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    # ===== Email =====
    RESEND_API_KEY: str | None = Field(
        default=None,
        description="Resend API key for transactional email"
    )

    EMAIL_FROM: str = Field(
        default="Course Studio <courses@example.com>",
        description="From address for transactional email"
    )

    ADMIN_NOTIFICATION_EMAIL: str | None = Field(
        default=None,
        description="Where generation-complete notifications go (disabled when unset)"
    )

    # ===== Sitemap =====
    APP_BASE_URL: str = Field(
        default="http://localhost:8000",
        description="Public base URL used in sitemap entries and email links"
    )

    SITEMAP_DIR: str = Field(
        default="./public/sitemaps",
        description="Directory the sitemap worker writes sitemap.xml into"
    )

    # ===== Application Settings =====
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment mode: development or production"
    )

    DEV_MODE: bool = Field(
        default=True,
        description="Start an in-process worker with the web server"
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # ===== Computed Properties =====

    @property
    def job_db_path(self) -> str:
        """Job database path, using persistent storage if available."""
        if self.STORAGE_PATH and not os.path.isabs(self.JOB_DB_PATH):
            return os.path.join(self.STORAGE_PATH, self.JOB_DB_PATH)
        return self.JOB_DB_PATH

    @property
    def worker_queue_names(self) -> list[str]:
        """Queue names parsed from WORKER_QUEUES."""
        return [q.strip() for q in self.WORKER_QUEUES.split(",") if q.strip()]

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_KEY)

    @property
    def generation_configured(self) -> bool:
        """Check if the generation provider can be called."""
        return self.ANTHROPIC_API_KEY is not None

    @property
    def email_configured(self) -> bool:
        """Check if transactional email can be sent."""
        return self.RESEND_API_KEY is not None


# from coursegen.config import config
config = AppConfig()
