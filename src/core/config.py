"""Application configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or inconsistent.

    Configuration errors are fatal at startup, never per-request.
    """


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="marketplace-cart-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(..., description="Supabase signing key JWK (JSON string) for JWT token verification")

    # Guest sessions
    session_cookie_name: str = Field(default="marketplace_guest", description="Guest session cookie name")
    session_cookie_max_age: int = Field(default=2592000, description="Guest session cookie max age in seconds (30 days)")
    session_cookie_secure: bool = Field(default=True, description="Use secure cookies (HTTPS only)")
    session_expiry_days: int = Field(default=30, description="Days until a guest session expires")

    # Stripe
    stripe_mode: Literal["test", "production"] = Field(default="test", description="Which Stripe key set is active")
    test_secret_key: str = Field(default="", description="Stripe secret API key used in test mode")
    test_webhook_secret: str = Field(default="", description="Stripe webhook signing secret used in test mode")
    production_secret_key: str = Field(default="", description="Stripe secret API key used in production mode")
    production_webhook_secret: str = Field(default="", description="Stripe webhook signing secret used in production mode")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (for frontend)")
    default_currency: str = Field(default="usd", description="ISO currency code for cart payments")

    # Webhook monitoring
    webhook_health_window_minutes: int = Field(default=60, ge=1, description="Trailing window for webhook health aggregates")
    admin_emails: str = Field(default="", description="Comma-separated emails allowed to use the webhook monitoring endpoints")

    # Realtime subscriptions
    realtime_max_attempts: int = Field(default=5, ge=1, description="Resubscribe attempts before giving up")
    realtime_backoff_min_seconds: float = Field(default=1.0, description="Initial resubscribe backoff")
    realtime_backoff_max_seconds: float = Field(default=30.0, description="Maximum resubscribe backoff")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def admin_emails_list(self) -> list[str]:
        """Parse admin emails string into a lowercased list."""
        return [email.strip().lower() for email in self.admin_emails.split(",") if email.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if the test key set is selected."""
        return self.stripe_mode == "test"

    def _mode_secret(self, suffix: str) -> str:
        name = f"{self.stripe_mode}_{suffix}"
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"Missing {name.upper()} environment variable")
        return value

    @property
    def stripe_secret_key(self) -> str:
        """Stripe secret key for the active mode.

        Raises:
            ConfigurationError: If the key for the active mode is not set.
        """
        return self._mode_secret("secret_key")

    @property
    def stripe_webhook_secret(self) -> str:
        """Stripe webhook signing secret for the active mode.

        Raises:
            ConfigurationError: If the secret for the active mode is not set.
        """
        return self._mode_secret("webhook_secret")

    def validate_stripe(self) -> None:
        """Check that the active Stripe key set is complete and consistent.

        A live key in test mode (or a test key in production mode) is
        rejected so a misconfigured deployment never charges real cards
        against test data, or the other way round.

        Raises:
            ConfigurationError: If a secret is missing or the key prefix
                contradicts the selected mode.
        """
        secret_key = self.stripe_secret_key
        self._mode_secret("webhook_secret")

        if self.stripe_mode == "test" and secret_key.startswith("sk_live_"):
            raise ConfigurationError("STRIPE_MODE is 'test' but TEST_SECRET_KEY is a live key")
        if self.stripe_mode == "production" and secret_key.startswith("sk_test_"):
            raise ConfigurationError("STRIPE_MODE is 'production' but PRODUCTION_SECRET_KEY is a test key")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
