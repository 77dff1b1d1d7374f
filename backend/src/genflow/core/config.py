"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Vendor credentials (Sora2, Veo3 and NanoBanana share the Laozhang gateway)
    laozhang_api_key: str = Field(default="", alias="LAOZHANG_API_KEY")
    laozhang_base_url: str = Field(default="https://api.laozhang.ai", alias="LAOZHANG_BASE_URL")
    newportai_api_key: str = Field(default="", alias="NEWPORTAI_API_KEY")
    newportai_base_url: str = Field(
        default="https://api.newportai.com/api", alias="NEWPORTAI_BASE_URL"
    )
    wavespeed_api_key: str = Field(default="", alias="WAVESPEED_API_KEY")
    wavespeed_base_url: str = Field(
        default="https://api.wavespeed.ai/api/v3", alias="WAVESPEED_BASE_URL"
    )

    # Credit pricing
    sora2_credits_per_second: float = Field(default=1.0, alias="SORA2_CREDITS_PER_SECOND")
    veo3_credits_fast: int = Field(default=20, alias="VEO3_CREDITS_FAST")
    veo3_credits_standard: int = Field(default=35, alias="VEO3_CREDITS_STANDARD")
    lipsync_credits_per_second: float = Field(default=1.0, alias="LIPSYNC_CREDITS_PER_SECOND")
    infinitetalk_credits_per_second: float = Field(
        default=8.0, alias="INFINITETALK_CREDITS_PER_SECOND"
    )
    nanobanana_credits: int = Field(default=7, alias="NANOBANANA_CREDITS")

    # Reconciliation sweep
    stale_timeout_seconds: int = Field(default=600, alias="STALE_TIMEOUT_SECONDS")
    sweep_batch_size: int = Field(default=20, alias="SWEEP_BATCH_SIZE")
    sweep_interval_seconds: int = Field(default=30, alias="SWEEP_INTERVAL_SECONDS")
    run_background_sweeper: bool = Field(default=True, alias="RUN_BACKGROUND_SWEEPER")
    failed_retention_seconds: int = Field(default=60, alias="FAILED_RETENTION_SECONDS")

    # Network budgets
    control_timeout_seconds: float = Field(default=30.0, alias="CONTROL_TIMEOUT_SECONDS")
    transfer_timeout_seconds: float = Field(default=60.0, alias="TRANSFER_TIMEOUT_SECONDS")
    max_artifact_bytes: int = Field(default=500 * 1024 * 1024, alias="MAX_ARTIFACT_BYTES")
    max_inline_media_bytes: int = Field(default=20 * 1024 * 1024, alias="MAX_INLINE_MEDIA_BYTES")
    vendor_max_attempts: int = Field(default=3, alias="VENDOR_MAX_ATTEMPTS")
    vendor_retry_initial_delay: float = Field(default=1.0, alias="VENDOR_RETRY_INITIAL_DELAY")
    vendor_retry_max_delay: float = Field(default=30.0, alias="VENDOR_RETRY_MAX_DELAY")

    # Ledger
    ledger_max_cas_attempts: int = Field(default=8, alias="LEDGER_MAX_CAS_ATTEMPTS")
    reservation_ttl_seconds: int = Field(default=3600, alias="RESERVATION_TTL_SECONDS")

    # Blob storage (S3-compatible: R2, S3, MinIO)
    blob_endpoint_url: str = Field(default="", alias="BLOB_ENDPOINT_URL")
    blob_access_key_id: str = Field(default="", alias="BLOB_ACCESS_KEY_ID")
    blob_secret_access_key: str = Field(default="", alias="BLOB_SECRET_ACCESS_KEY")
    blob_bucket: str = Field(default="", alias="BLOB_BUCKET")
    blob_public_url: str = Field(default="", alias="BLOB_PUBLIC_URL")
    blob_region: str = Field(default="auto", alias="BLOB_REGION")

    # Per-account request limits ("<count>/<period>", limits library notation)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")
    rate_limit_generation: str = Field(default="10/minute", alias="RATE_LIMIT_GENERATION")
    rate_limit_status: str = Field(default="60/minute", alias="RATE_LIMIT_STATUS")
    rate_limit_credits: str = Field(default="30/minute", alias="RATE_LIMIT_CREDITS")
    rate_limit_general: str = Field(default="100/minute", alias="RATE_LIMIT_GENERAL")

    # Operator trigger
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Caller media allow-list
    allowed_media_domains: str = Field(
        default=(
            "supabase.co,supabase.in,supabase.io,storage.googleapis.com,"
            "amazonaws.com,cloudflare.com,r2.dev"
        ),
        alias="ALLOWED_MEDIA_DOMAINS",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def allowed_media_domains_list(self) -> list[str]:
        """Parse allowed media hosts from comma-separated string."""
        return [d.strip().lower() for d in self.allowed_media_domains.split(",") if d.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.laozhang_api_key:
            missing.append("LAOZHANG_API_KEY: required for Sora2, Veo3 and NanoBanana")

        if not self.newportai_api_key:
            missing.append("NEWPORTAI_API_KEY: required for LipSync")

        if not self.wavespeed_api_key:
            missing.append("WAVESPEED_API_KEY: required for InfiniteTalk")

        if not self.blob_bucket:
            missing.append("BLOB_BUCKET: bucket that holds materialized results")

        if self.is_production and not self.cron_secret:
            missing.append("CRON_SECRET: protects the periodic reconciliation trigger")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog for the process.

    Production renders one JSON object per line for the log pipeline;
    everything else gets the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.is_production:
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
