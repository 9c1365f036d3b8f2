"""Configuration management for the classification spine.

This module uses Pydantic Settings to load configuration from environment
variables. All settings are validated on first access to catch configuration
errors early.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file.

    API keys and database credentials must never be hard-coded.
    """

    # Gemini API Configuration
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="Google Gemini API key; only required when the LLM gatekeeper runs"
    )

    # Supabase Configuration
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anonymous key"
    )
    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key (bypasses RLS for backend writes)"
    )

    # Gatekeeper Configuration
    gatekeeper_model: str = Field(
        default="gemini-2.0-flash",
        description="Gemini model used by the LLM gatekeeper"
    )
    gatekeeper_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timeout for one gatekeeper call; expiry routes to NEEDS_REVIEW"
    )

    # Batch Configuration
    batch_concurrency: int = Field(
        default=4,
        ge=1,
        le=50,
        description="Documents classified concurrently in a batch"
    )

    # Feature Flags
    shadow_routing_enabled: bool = Field(
        default=False,
        description="Log slot vs gatekeeper routing comparisons"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("gemini_api_key")
    @classmethod
    def validate_gemini_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Reject a GEMINI_API_KEY that is set but blank; absence is checked by the client."""
        if v is None:
            return None
        if not v.strip():
            raise ValueError(
                "GEMINI_API_KEY must be set in environment variables. "
                "Get your API key from https://ai.google.dev/"
            )
        return v.strip()

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that Supabase URL is present and uses https."""
        if not v or not v.strip():
            raise ValueError("SUPABASE_URL must be set in environment variables")

        url = v.strip()
        if not url.startswith("https://"):
            raise ValueError(
                "SUPABASE_URL must start with https:// "
                f"(got: {url[:20]}...)"
            )

        return url

    @field_validator("supabase_key")
    @classmethod
    def validate_supabase_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("SUPABASE_KEY must be set in environment variables")
        return v.strip()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() if isinstance(v, str) else v


@lru_cache
def get_settings() -> Settings:
    """Get cached Settings instance.

    Settings are loaded once and reused for the process lifetime. Tests call
    ``get_settings.cache_clear()`` after changing the environment.

    Raises:
        ValidationError: If required environment variables are missing or invalid
    """
    return Settings()
