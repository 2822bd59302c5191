from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from typing import Optional, Literal
from loguru import logger
import sys


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )

    database_host: str = Field(default="localhost", description="Database host")
    database_port: int = Field(
        default=5432, ge=1, le=65535, description="Database port"
    )
    database_name: str = Field(
        default="leadflow", min_length=1, description="Database name"
    )
    database_user: str = Field(default="postgres", min_length=1, description="Database username")
    database_password: Optional[str] = Field(
        default="postgres", description="Database password"
    )

    database_pool_min: int = Field(
        default=1, ge=1, le=100, description="Minimum database pool size"
    )
    database_pool_max: int = Field(
        default=20, ge=1, le=100, description="Maximum database pool size"
    )
    database_pool_timeout: int = Field(
        default=60, ge=1, le=300, description="Database pool timeout in seconds"
    )

    # Google Places (New) text search
    google_maps_api_key: Optional[str] = Field(
        default=None, description="Google Maps Platform API key"
    )
    google_maps_timeout_ms: int = Field(
        default=8000, ge=100, le=120000, description="Places request timeout in milliseconds"
    )
    google_maps_places_api_base_url: str = Field(
        default="https://places.googleapis.com/v1",
        description="Places API base URL",
    )
    google_maps_max_pages: int = Field(
        default=3, ge=1, le=10, description="Maximum result pages per text search"
    )
    google_maps_max_results: int = Field(
        default=60, ge=1, le=200, description="Maximum places returned per text search"
    )

    # Lead pipeline queue
    lead_pipeline_queue_enabled: bool = Field(
        default=False,
        description="Run discoveries through the durable job queue instead of inline",
    )
    lead_pipeline_max_attempts: int = Field(
        default=3, ge=1, le=20, description="Attempts per job before dead-lettering"
    )
    lead_pipeline_backoff_ms: int = Field(
        default=2000, ge=0, description="Base delay for exponential retry backoff"
    )
    lead_pipeline_concurrency: int = Field(
        default=2, ge=1, le=64, description="Concurrent jobs per stage worker"
    )
    lead_pipeline_poll_interval: float = Field(
        default=1.0, gt=0, le=60, description="Seconds an idle worker waits before polling again"
    )
    lead_pipeline_stalled_after: float = Field(
        default=300.0,
        gt=0,
        description="Seconds after which an active job is considered stalled and re-queued",
    )

    discovery_default_limit: int = Field(
        default=60, ge=1, le=200, description="Leads requested when a discovery omits a limit"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: str = Field(
        default="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} - {message}",
        description="Log format string",
    )
    log_rotation: str = Field(default="100 MB", description="Log file rotation size")
    log_retention: str = Field(default="10 days", description="Log retention period")
    log_file: Optional[str] = Field(default="logs/app.log", description="Log file path")
    log_json: bool = Field(default=False, description="Emit JSON formatted logs on stdout")

    @field_validator("database_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("google_maps_places_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_pool_sizes(self) -> "Settings":
        """Ensure max pool size is greater than min pool size"""
        if self.database_pool_max < self.database_pool_min:
            raise ValueError(
                "database_pool_max must be greater than or equal to database_pool_min"
            )
        return self

    @property
    def database_url(self) -> str:
        """Standard database URL for synchronous connections"""
        password = f":{self.database_password}" if self.database_password else ""
        return f"postgresql://{self.database_user}{password}@{self.database_host}:{self.database_port}/{self.database_name}"

    @property
    def google_maps_configured(self) -> bool:
        return bool(self.google_maps_api_key)

    def configure_logging(self) -> None:
        """Configure loguru based on settings"""
        if self.log_json:
            from leadflow.core.logging import setup_json_logging

            setup_json_logging(level=self.log_level)
            return

        logger.remove()

        logger.add(
            sys.stderr, format=self.log_format, level=self.log_level, colorize=True
        )

        if self.log_file:
            logger.add(
                self.log_file,
                format=self.log_format,
                level=self.log_level,
                rotation=self.log_rotation,
                retention=self.log_retention,
                compression="zip",
            )

        logger.info(f"Logging configured for {self.environment} environment")


def get_settings() -> Settings:
    """Get cached settings instance"""
    settings = Settings()
    settings.configure_logging()
    return settings


settings = get_settings()
