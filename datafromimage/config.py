"""
Configuration management for the datafromimage service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseSettings):
    """Stripe payment processor configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: str = Field(default="", description="Stripe secret API key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_...)")
    currency: str = Field(default="usd", min_length=3, max_length=3)
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum age of a webhook signature timestamp",
    )
    request_timeout_seconds: int = Field(default=30, ge=1, le=120)

    @property
    def is_configured(self) -> bool:
        """Checkout needs the secret key; the webhook needs the signing secret."""
        return bool(self.secret_key)


class IdentityConfig(BaseSettings):
    """
    Hosted identity provider configuration.

    Sign-in (magic-link email) is handled entirely by the provider. This
    service only verifies access tokens against the provider's user endpoint.
    """

    model_config = SettingsConfigDict(
        env_prefix="IDENTITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str = Field(default="", description="Identity provider base URL")
    anon_key: str = Field(default="", description="Public project key sent as 'apikey'")
    timeout_seconds: float = Field(default=5.0, gt=0.0, le=30.0)
    cache_ttl_seconds: int = Field(default=300, ge=0, le=3600)
    cache_max_size: int = Field(default=1000, ge=1)

    @property
    def user_endpoint(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1/user"


class VisionConfig(BaseSettings):
    """
    Vision model configuration for text extraction.

    Security: API keys are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="VISION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="OpenAI API key")
    base_url: str | None = Field(default=None, description="Override for OpenAI-compatible gateways")
    model_name: str = Field(default="gpt-4o")
    max_tokens: int = Field(default=1500, ge=100, le=8000)
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    timeout_seconds: int = Field(default=60, ge=1, le=180)

    @field_validator("api_key")
    @classmethod
    def validate_api_key_security(cls, v: str) -> str:
        """Reject obvious placeholders so the service reports itself as unconfigured."""
        if not v:
            return ""

        placeholder_patterns = ["your-api-key-here", "example", "dummy"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning("VISION_API_KEY appears to be a placeholder - extraction disabled")
            return ""

        return v

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


class DatabaseConfig(BaseSettings):
    """Account datastore configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    path: str = Field(default="./data/datafromimage.db")
    busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="How long a writer waits for a competing write lock",
    )


class BillingConfig(BaseSettings):
    """Credit accounting configuration."""

    model_config = SettingsConfigDict(env_prefix="BILLING_", extra="ignore")

    public_url: str = Field(
        default="http://localhost:3000",
        description="Public site URL used for checkout success/cancel redirects",
    )
    signup_credits: int = Field(
        default=5,
        ge=0,
        le=1000,
        description="Credits granted when an account is created at first sign-in",
    )
    credits_per_extraction: int = Field(default=1, ge=1, le=100)
    max_images_per_request: int = Field(default=10, ge=1, le=50)
    recent_transactions_limit: int = Field(default=5, ge=1, le=100)

    @field_validator("public_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    # Request size limits (DoS protection)
    max_request_body_size: int = Field(
        default=25 * 1024 * 1024,  # 25MB, a batch of base64 images
        ge=1024,
        description="Maximum request body size in bytes",
    )
    max_file_upload_size: int = Field(
        default=5 * 1024 * 1024,  # 5MB per decoded image
        ge=1024,
        description="Maximum decoded image size in bytes",
    )


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    # Allowed origins (comma-separated for multiple origins)
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed origins (* for all, ONLY for dev)",
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0, description="Preflight cache duration in seconds")

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        if self.allowed_headers == "*":
            return ["*"]
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    # JSON for production, console for development
    json_output: bool = Field(default=True)
    colorized: bool = Field(default=False, description="Only applies to console output")

    # Slow request logging thresholds (extraction calls a remote model, so these are generous)
    slow_request_warning_ms: float = Field(default=5000.0, ge=0.0)
    slow_request_error_ms: float = Field(default=20000.0, ge=0.0)

    # Service metadata (injected into all logs)
    service_name: str = Field(default="datafromimage")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")

    @field_validator("slow_request_error_ms")
    @classmethod
    def validate_thresholds(cls, v: float, info) -> float:
        """Ensure error threshold is greater than warning threshold."""
        warning = info.data.get("slow_request_warning_ms")
        if warning is not None and v <= warning:
            raise ValueError(
                f"slow_request_error_ms ({v}) must be > slow_request_warning_ms ({warning})"
            )
        return v


class RateLimitConfig(BaseSettings):
    """Per-account rate limits for the expensive endpoints."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", extra="ignore")

    enabled: bool = Field(default=True)
    checkout: str = Field(default="20/hour")
    extraction: str = Field(default="30/minute")


class Settings(BaseSettings):
    """Root configuration for the datafromimage service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.secret_key:
            logging.warning("STRIPE_SECRET_KEY not configured - checkout will be unavailable")

        if not self.stripe.webhook_secret:
            logging.warning(
                "STRIPE_WEBHOOK_SECRET not configured - every webhook will be rejected"
            )

        if not self.identity.url:
            logging.warning("IDENTITY_URL not configured - authenticated endpoints will fail")

        if not self.vision.has_api_key:
            logging.warning("VISION_API_KEY not configured - text extraction will fail")

        if self.stripe.secret_key.startswith("sk_live_") and self.logging.environment != "production":
            logging.warning(
                f"Live Stripe key configured in {self.logging.environment} environment"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
