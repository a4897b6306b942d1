"""
Letter Dispatch Core - Configuration Management

Centralized configuration for environment variables, CORS, and deployment settings.
This module ensures:
- No hardcoded secrets
- Dispatch, polling and storage paths are tunable per environment
- Environment-specific settings (dev/staging/prod)
"""

from pathlib import Path
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./letters.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg:// in production)"
    )
    DATABASE_ECHO: bool = Field(default=False)

    # ==================== STORAGE ====================
    UPLOADS_DIR: str = Field(
        default=str(BACKEND_DIR / "uploads"),
        description="Root directory for uploaded assets"
    )
    SIGNATURE_DIR: str = Field(
        default="",
        description="Signature image directory (defaults to UPLOADS_DIR/signature)"
    )
    EMAIL_HISTORY_DIR: str = Field(
        default="",
        description="Flat-file email audit directory (defaults to UPLOADS_DIR/email-history)"
    )

    # ==================== LETTERS ====================
    ORGANIZATION_NAME: str = Field(
        default="Collabera Talent Solutions Pvt. Ltd",
        description="Value of the {CompanyName} system placeholder"
    )

    # ==================== EMAIL ====================
    EMAIL_API_KEY: str = Field(
        default="",
        description="Resend API key"
    )
    EMAIL_FROM_ADDRESS: str = Field(
        default="",
        description="Default sender address"
    )
    EMAIL_PROVIDER: str = Field(default="resend")
    EMAIL_WEBHOOK_SECRET: str = Field(
        default="",
        description="Shared secret expected in X-Webhook-Secret (disabled when empty)"
    )

    # ==================== DISPATCH ====================
    DISPATCH_WORKERS: int = Field(
        default=4,
        description="Number of background dispatch workers"
    )
    DISPATCH_QUEUE_SIZE: int = Field(
        default=100,
        description="Maximum queued dispatch units before new jobs are rejected"
    )
    DISPATCH_TIMEOUT_SECONDS: float = Field(
        default=300.0,
        description="Wall-clock limit for one dispatch, including PDF rendering"
    )

    # ==================== STATUS POLLING ====================
    POLL_INTERVAL_SECONDS: float = Field(
        default=10.0,
        description="Provider status poll interval (0 disables the background poller)"
    )
    POLL_BATCH_SIZE: int = Field(
        default=50,
        description="Maximum jobs reconciled per poll cycle"
    )
    QUEUED_RETRY_SECONDS: float = Field(
        default=300.0,
        description="Age after which capacity-queued jobs are submitted again"
    )

    # ==================== NOTIFICATIONS ====================
    NOTIFICATION_QUEUE_SIZE: int = Field(
        default=100,
        description="Per-subscriber buffer before events are dropped"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Letter Dispatch Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def signature_dir(self) -> Path:
        return Path(self.SIGNATURE_DIR) if self.SIGNATURE_DIR else Path(self.UPLOADS_DIR) / "signature"

    @property
    def email_history_dir(self) -> Path:
        if self.EMAIL_HISTORY_DIR:
            return Path(self.EMAIL_HISTORY_DIR)
        return Path(self.UPLOADS_DIR) / "email-history"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Production: Only specified origins
        Development/Staging: Include localhost origins
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:4200",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.EMAIL_API_KEY:
            errors.append("EMAIL_API_KEY is required")
        if not self.EMAIL_FROM_ADDRESS:
            errors.append("EMAIL_FROM_ADDRESS is required")
        if self.DISPATCH_WORKERS < 1:
            errors.append("DISPATCH_WORKERS must be at least 1")
        if self.DISPATCH_TIMEOUT_SECONDS <= 0:
            errors.append("DISPATCH_TIMEOUT_SECONDS must be positive")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")
            if self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL cannot be SQLite in production")
            if not self.EMAIL_WEBHOOK_SECRET:
                errors.append("EMAIL_WEBHOOK_SECRET is required in production")
            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-User-Id",
        ],
        "expose_headers": ["X-Request-ID", "Content-Disposition"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("EMAIL_WEBHOOK_SECRET", settings.EMAIL_WEBHOOK_SECRET, "Webhook secret validation disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "Not set"
        else:
            status["variables"][name] = "Set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
