"""
Configuration for the generation orchestrator service.

Supports multiple environments (development, staging, production) with
appropriate defaults and validation. Environment variables and an optional
.env file override the defaults.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

# Load .env file if it exists
load_dotenv()


class Environment(str, Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings with environment-specific defaults.

    Uses Pydantic for validation and type safety.
    Environment variables override defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Application environment"
    )

    # API Configuration
    api_title: str = Field(
        default="Beat Studio Orchestrator", description="API title for OpenAPI docs"
    )
    api_version: str = Field(default="1.0.0", description="API version")
    debug: bool = Field(default=True, description="Enable debug mode")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(
        default=False, description="Enable auto-reload (development only)"
    )

    # Generation Service
    generation_api_base_url: str = Field(
        default="https://api.sunoapi.org",
        description="Base URL of the music generation service",
    )
    generation_api_key: str = Field(
        default="", description="Bearer token for the generation service"
    )
    generation_model: str = Field(
        default="V4_5", description="Model requested from the generation service"
    )
    callback_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL the generation service pushes callbacks to",
    )
    callback_token: str | None = Field(
        default=None,
        description="Shared secret expected on callback requests (disabled when unset)",
    )
    service_timeout_seconds: float = Field(
        default=15.0, gt=0, le=120, description="Timeout for generation service calls"
    )

    # Ledger Gateway
    ledger_gateway_url: str = Field(
        default="http://localhost:8545/gateway",
        description="Base URL of the ledger gateway (transaction signer + read model)",
    )
    ledger_api_key: str = Field(default="", description="Ledger gateway API key")
    ledger_timeout_seconds: float = Field(
        default=15.0, gt=0, le=120, description="Timeout for ledger gateway calls"
    )
    receipt_timeout_seconds: float = Field(
        default=60.0, gt=0, le=600, description="Maximum wait for a transaction receipt"
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0, gt=0, le=30, description="Interval between receipt checks"
    )
    ledger_refresh_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Interval between ledger read-model refreshes and sweeps",
    )

    # Artifact Storage
    storage_api_url: str = Field(
        default="https://api.pinata.cloud",
        description="Base URL of the content-addressed storage API",
    )
    storage_api_token: str = Field(default="", description="Storage API token")
    storage_gateway_url: str = Field(
        default="https://gateway.pinata.cloud/ipfs",
        description="Gateway URL used to resolve content addresses",
    )
    upload_timeout_seconds: float = Field(
        default=20.0, gt=0, le=300, description="Timeout for artifact uploads"
    )

    # Reconciliation
    poll_interval_seconds: float = Field(
        default=5.0, gt=0, le=300, description="Status poll interval per pending task"
    )
    poll_max_backoff_seconds: float = Field(
        default=60.0, gt=0, le=3600, description="Back-off cap after poll failures"
    )
    poll_timeout_seconds: float = Field(
        default=10.0, gt=0, le=120, description="Timeout for a single status poll"
    )
    poll_rate_limit_per_second: int = Field(
        default=5, ge=1, le=100, description="Status polls allowed per second"
    )
    max_concurrent_polls: int = Field(
        default=4, ge=1, le=50, description="Maximum status polls in flight"
    )

    # Local Cache
    cache_dir: Path = Field(
        default=Path(".beatstudio-cache"),
        description="Directory holding persisted item caches",
    )
    cache_namespace: str = Field(
        default="generated-items-v1", description="Cache namespace (format version)"
    )
    cache_ttl_hours: int = Field(
        default=24, ge=1, le=168, description="Cache entry time-to-live in hours"
    )

    # CORS Configuration
    cors_origins: list[str] = Field(
        default=["*"], description="Allowed CORS origins (comma-separated)"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=False, description="Enable JSON logging for production"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def apply_environment_rules(self) -> "Settings":
        """Disable debug in production and reload outside development."""
        if self.environment == Environment.PRODUCTION:
            self.debug = False
        if self.environment != Environment.DEVELOPMENT:
            self.reload = False
        return self

    def get_environment_display(self) -> str:
        """Get human-readable environment name."""
        return self.environment.value.title()

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    def callback_url(self) -> str:
        """Absolute URL the generation service should push completions to."""
        return f"{self.callback_base_url.rstrip('/')}/api/v1/callbacks/generation"

    def get_cors_config(self) -> dict[str, Any]:
        """Get CORS configuration."""
        if self.is_production():
            # Restrictive CORS for production
            return {
                "allow_origins": [o for o in self.cors_origins if o != "*"],
                "allow_credentials": True,
                "allow_methods": ["GET", "POST", "DELETE"],
                "allow_headers": ["*"],
            }
        return {
            "allow_origins": self.cors_origins,
            "allow_credentials": True,
            "allow_methods": ["*"],
            "allow_headers": ["*"],
        }


# Global settings instance
settings = Settings()


def configure_structlog() -> None:
    """Initialize structlog with clean, readable logging."""
    import logging
    import sys

    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        force=True,
        format="%(message)s",
    )
    logging.root.setLevel(level)

    if settings.log_json:
        renderer: Any = structlog.processors.JSONRenderer()
        timestamper = structlog.processors.TimeStamper(fmt="iso")
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=20,
            level_styles={
                "debug": "\033[36m",  # cyan
                "info": "\033[32m",  # green
                "warning": "\033[33m",  # yellow
                "error": "\033[31m",  # red
            },
        )
        timestamper = structlog.processors.TimeStamper(fmt="%H:%M:%S")

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            timestamper,
            structlog.stdlib.add_log_level,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
