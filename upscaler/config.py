"""
Application configuration using environment variables.
"""
import os
from functools import lru_cache
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Upscaler API"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./upscaler.db")

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:8080",
        "http://localhost:3000",
    ]

    # Auth provider (tokens are issued by the managed auth service)
    auth_jwt_secret: str = os.getenv("AUTH_JWT_SECRET", "")
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str = "authenticated"
    signup_bonus_credits: int = 100

    # Remote upscale endpoint
    stability_api_key: str = os.getenv("STABILITY_API_KEY", "")
    stability_api_url: str = "https://api.stability.ai/v2beta/stable-image/upscale/fast"
    upscale_timeout_seconds: float = 45.0
    max_image_bytes: int = 10 * 1024 * 1024
    default_output_format: str = "png"

    # Batch processing
    default_concurrency: int = 2
    max_concurrency: int = 3
    max_batch_images: int = 10
    batch_ttl_seconds: int = 3600  # idle batches are dropped after this
    batch_sweep_interval_seconds: float = 60.0

    # Payments
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance: int = 300  # seconds
    stripe_price_ids: Dict[str, str] = {}
    app_url: str = "http://localhost:8080"

    # Rate limiting
    batch_rate_limit: str = "30/minute"
    upscale_rate_limit: str = "10/minute"
    checkout_rate_limit: str = "5/minute"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def checkout_success_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/payment-success"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/payment-cancelled"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Validate auth secret on startup
settings = get_settings()
if settings.environment == "production" and not settings.auth_jwt_secret:
    raise ValueError(
        "AUTH_JWT_SECRET must be set in production! "
        "Copy the JWT secret from your auth provider's project settings."
    )
