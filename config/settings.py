"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Import ceilings live here so they are configuration, never hidden constants.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE (CATALOG STORE)
    # ===================
    supabase_url: Optional[str] = Field(
        None,
        description="Supabase project URL"
    )
    supabase_key: Optional[str] = Field(
        None,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key; preferred for catalog writes when set"
    )
    catalog_table: str = Field(
        default="products",
        description="Catalog table that receives imported records"
    )

    # ===================
    # MAPPING SUGGESTION SERVICE
    # ===================
    suggestion_service_url: Optional[str] = Field(
        None,
        description="Endpoint of the column-mapping suggestion service"
    )
    suggestion_service_api_key: Optional[str] = Field(
        None,
        description="Bearer token for the suggestion service"
    )
    suggestion_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Seconds to wait for suggestions before mapping without them"
    )
    suggestion_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Threads available for suggestion calls, including ones that timed out"
    )

    # ===================
    # IMPORT LIMITS
    # ===================
    import_max_file_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1024,
        description="Largest accepted upload in bytes"
    )
    import_max_rows: int = Field(
        default=5000,
        ge=1,
        description="Largest accepted number of data rows"
    )
    import_sample_rows: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Rows sent to the mapper as a sample"
    )
    fuzzy_match_threshold: int = Field(
        default=80,
        ge=50,
        le=100,
        description="Minimum rapidfuzz score for a heuristic header match"
    )
    mapping_memory_size: int = Field(
        default=500,
        ge=1,
        le=100000,
        description="Learned header mappings kept in memory"
    )

    # ===================
    # EXECUTION
    # ===================
    import_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Records committed to the catalog store per batch"
    )
    import_batch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Seconds allowed for a single batch write"
    )
    import_write_workers: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Threads available for batch writes, including ones that timed out"
    )
    validation_checkpoint_rows: int = Field(
        default=500,
        ge=1,
        description="Rows validated between cancellation checks"
    )

    # ===================
    # SESSIONS
    # ===================
    session_ttl_minutes: int = Field(
        default=120,
        ge=5,
        le=1440,
        description="Idle minutes before an import session is discarded"
    )
    listener_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Pending progress messages kept per listener"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Frontends allowed to call the API (JSON list in env)"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def catalog_store_configured(self) -> bool:
        """Check if the Supabase catalog store is configured."""
        return bool(self.supabase_url and self.supabase_key)

    @property
    def suggestion_service_configured(self) -> bool:
        """Check if the suggestion service is configured."""
        return bool(self.suggestion_service_url)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
