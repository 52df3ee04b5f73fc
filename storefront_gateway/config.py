"""
Configuration module for the Storefront Session Gateway.

This module uses Pydantic Settings to load and validate environment variables
for the OAuth2 identity provider, the signed session cookie, and the
downstream application the gateway fronts.

Environment variables are loaded from .env file or system environment.
Settings are read once per process and are immutable afterwards.
"""

from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SESSION_MAX_AGE_MS = 24 * 60 * 60 * 1000  # 24 hours


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the OAuth2 client, session cookies, and the
    downstream application is defined here.
    """

    # =========================================================================
    # OAuth2 Identity Provider Configuration
    # =========================================================================

    OAUTH2_AUTH_URL: str = Field(
        ...,
        description="Authorization endpoint of the identity provider",
        min_length=1,
    )

    OAUTH2_TOKEN_URL: str = Field(
        ...,
        description="Token endpoint of the identity provider",
        min_length=1,
    )

    OAUTH2_CLIENT_ID: str = Field(
        ...,
        description="OAuth2 client ID registered with the identity provider",
        min_length=1,
    )

    OAUTH2_CLIENT_SECRET: str = Field(
        ...,
        description="OAuth2 client secret",
        min_length=1,
    )

    OAUTH2_REDIRECT_URL: str = Field(
        ...,
        description="Callback URL registered with the identity provider (e.g., https://shop.example.com/callback)",
        min_length=1,
    )

    OAUTH2_IDP_HOST_URL: str = Field(
        ...,
        description="Base URL of the identity provider, used for the logout endpoint (e.g., https://idp.example.com/)",
        min_length=1,
    )

    OAUTH2_USERINFO_URL: Optional[str] = Field(
        None,
        description="Optional userinfo endpoint used to load the profile after the code exchange",
    )

    OAUTH2_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for calls to the identity provider in seconds",
        gt=0,
        le=120,
    )

    OAUTH2_LOGOUT_REQUIRE_SUCCESS: bool = Field(
        default=False,
        description="Treat a non-2xx response from the logout endpoint as a failed logout",
    )

    # =========================================================================
    # Session Cookie Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        ...,
        description="Comma-separated session signing keys, newest first (the first key signs new cookies)",
        min_length=1,
    )

    SESSION_MAX_AGE_MS: int = Field(
        default=DEFAULT_SESSION_MAX_AGE_MS,
        description="Session cookie lifetime in milliseconds",
        gt=0,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="storefront-session",
        description="Name of the session cookie",
        min_length=1,
    )

    SESSION_HTTPS_ONLY: bool = Field(
        default=False,
        description="Set the Secure flag on the session cookie",
    )

    # =========================================================================
    # Downstream Application Configuration
    # =========================================================================

    DOWNSTREAM_URL: Optional[str] = Field(
        None,
        description="Base URL of the storefront rendering server (e.g., http://storefront:3000)",
    )

    DOWNSTREAM_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout for proxied downstream requests in seconds",
        gt=0,
    )

    # =========================================================================
    # Gateway Server Configuration
    # =========================================================================

    GATEWAY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the gateway server",
    )

    GATEWAY_PORT: int = Field(
        default=4000,
        description="Port to bind the gateway server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def session_keys(self) -> List[str]:
        """
        Parse SESSION_SECRET into the list of signing keys.

        Returns:
            Keys in priority order. The first key signs, all keys verify.
        """
        return [key.strip() for key in self.SESSION_SECRET.split(",") if key.strip()]

    @property
    def session_max_age_seconds(self) -> int:
        """Session lifetime in whole seconds (cookie Max-Age granularity)."""
        return max(1, self.SESSION_MAX_AGE_MS // 1000)

    @property
    def idp_logout_url(self) -> str:
        """Logout endpoint on the identity provider host."""
        return f"{self.OAUTH2_IDP_HOST_URL}logout"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SESSION_SECRET")
    @classmethod
    def validate_session_secret(cls, v: str) -> str:
        """
        Validate that SESSION_SECRET contains at least one non-empty key.

        Raises:
            ValueError: If no usable key is provided
        """
        if not [key for key in v.split(",") if key.strip()]:
            raise ValueError("SESSION_SECRET must contain at least one key")
        return v

    @field_validator(
        "OAUTH2_AUTH_URL",
        "OAUTH2_TOKEN_URL",
        "OAUTH2_REDIRECT_URL",
        "OAUTH2_IDP_HOST_URL",
    )
    @classmethod
    def validate_absolute_url(cls, v: str) -> str:
        """Identity provider URLs must be absolute http(s) URLs."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Expected an absolute http(s) URL, got: '{v}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
