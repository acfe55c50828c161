"""
Configuration module with strict validation.

Key principles:
- Only DATABASE_URL is required at startup
- Every daemon knob (batch sizes, delays, retry bounds) is configurable
- Safe defaults for all optional settings
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (REQUIRED)
    database_url: str = Field(
        ...,
        description="SQLAlchemy connection URL for the suspicion store"
    )

    # External collaborators
    identity_store_url: str = Field(
        default="http://localhost:8080/identitystore/api",
        description="Base URL of the identity store API"
    )

    search_provider_url: str = Field(
        default="http://localhost:8080/identitystore/api/duplicates",
        description="Base URL of the duplicate search provider"
    )

    http_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for calls to external collaborators"
    )

    client_code: str = Field(
        default="identity-quality",
        description="Client application code sent with merges and identity changes"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # Duplicate search retry
    search_max_retry: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum attempts against the duplicate search provider"
    )

    search_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Seconds to wait between two search attempts"
    )

    search_retry_backoff: float = Field(
        default=1.0,
        ge=1.0,
        le=10.0,
        description="Delay multiplier between attempts (1.0 = fixed delay)"
    )

    # Detection daemon
    duplicates_batch_size: int = Field(default=200, ge=1)
    duplicates_purge_size: int = Field(default=500, ge=0)
    duplicates_author_name: str = Field(default="IdentityDuplicatesDaemon")
    duplicates_interval_minutes: int = Field(default=60, ge=1)

    # Suspicion control daemon
    suspicion_control_delay: int = Field(
        default=600,
        ge=0,
        description="Seconds an action must wait before being processed"
    )
    suspicion_control_batch_size: int = Field(default=300, ge=1)
    suspicion_control_author_name: str = Field(default="SuspicionControlDaemon")
    suspicion_control_interval_minutes: int = Field(default=5, ge=1)
    duplicates_creation_rules: str = Field(
        default="",
        description="Comma separated rule codes checked after an identity creation"
    )
    duplicates_update_rules: str = Field(
        default="",
        description="Comma separated rule codes checked after an identity update"
    )

    # Resolution daemon
    resolution_rule_code: Optional[str] = Field(
        default=None,
        description="Code of the rule identifying strict duplicates"
    )
    resolution_suspicious_limit: int = Field(default=100, ge=1)
    resolution_min_certification_level: int = Field(default=500, ge=0)
    resolution_author_name: str = Field(default="IdentityDuplicatesResolutionDaemon")
    resolution_interval_minutes: int = Field(default=60, ge=1)

    # Suspicion store
    lock_duration_seconds: int = Field(
        default=3600,
        ge=1,
        description="Seconds after which a suspicion lock expires"
    )

    external_declaration_rule_code: str = Field(
        default="RG_EXTERNAL",
        description="Rule code used for suspicions declared without a rule"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    def creation_rule_codes(self) -> List[str]:
        """Rule codes to check when an identity is created."""
        return _split_codes(self.duplicates_creation_rules)

    def update_rule_codes(self) -> List[str]:
        """Rule codes to check when an identity is updated."""
        return _split_codes(self.duplicates_update_rules)


def _split_codes(raw: str) -> List[str]:
    return [code.strip() for code in raw.split(",") if code.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    Lazily loaded on first access; tests reset it with reset_settings().
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None
