"""Configuration management for the passkey gate service."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Only acceptable while interactive_mode is on.
DEV_SESSION_SECRET = "dev-passkey-secret-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Logging configuration
    log_level: str = "INFO"
    json_logs: bool = True

    # Interactive (development/enrollment) mode selects the mutable backend
    interactive_mode: bool = False

    # Session cookie
    session_secret: str = DEV_SESSION_SECRET
    session_cookie_name: str = "session"
    session_ttl_seconds: int = 60 * 60 * 24 * 7
    challenge_ttl_seconds: int = 300

    # Relying party
    rp_name: str = "Passkey Gate"
    rp_id: Optional[str] = None
    expected_origin: Optional[str] = None

    # Relational store (interactive mode)
    database_path: str = "data/app.db"

    # Supabase object storage
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    storage_bucket: str = "passkey-gate"

    # Log store
    log_root: str = "logs/"
    log_page_size: int = 50
    log_api_key: Optional[str] = None

    # Restricted backend
    enrolled_dataset_source: Literal["file", "object_store"] = "file"
    enrolled_dataset_path: str = "passkey-store/enrolled-v1.json"
    enrolled_snapshot_path: str = "passkey-store/enrolled-pending.json"
    restricted_write_policy: Literal["reject", "ignore", "persist"] = "reject"

    # Observability
    observability_enabled: bool = False
    otlp_endpoint: Optional[str] = None
    enable_console_export: bool = False

    @field_validator('log_root')
    @classmethod
    def validate_log_root(cls, v):
        if not v or v.startswith('/'):
            raise ValueError('LOG_ROOT must be a relative prefix such as "logs/"')
        return v if v.endswith('/') else v + '/'

    @field_validator('log_page_size', 'session_ttl_seconds', 'challenge_ttl_seconds')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError('must be a positive integer')
        return v

    @model_validator(mode="after")
    def validate_session_secret(self):
        if not self.session_secret:
            raise ValueError('SESSION_SECRET must not be empty')
        if not self.interactive_mode and self.session_secret == DEV_SESSION_SECRET:
            raise ValueError(
                'SESSION_SECRET must be set when INTERACTIVE_MODE is disabled'
            )
        return self

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
