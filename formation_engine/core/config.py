import os
from decimal import Decimal
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_ENCRYPTION_KEY = "dev-formation-key-do-not-use-in-production-4c1e9a7b"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Configuration
    api_v1_prefix: str = Field(default="/api/v1")
    api_title: str = Field(default="Formation Engine API")
    api_version: str = Field(default="1.0.0")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    # Environment (for conditional validation)
    environment: str = Field(default="development")

    # Sessions
    # Agent-driven sessions are short lived, local CLI sessions can be resumed for weeks.
    session_ttl_hours: int = Field(default=24)
    local_session_ttl_days: int = Field(default=30)
    cleanup_after_days: int = Field(default=90)
    backup_retention_days: int = Field(default=30)
    max_backups_per_session: int = Field(default=5)

    # Storage backend: memory | file | redis
    storage_backend: str = Field(default="memory")
    storage_dir: Path = Field(default=Path.home() / ".formation" / "sessions")
    redis_url: str = Field(default="redis://localhost:6379")
    redis_key_prefix: str = Field(default="formation")

    # Encryption of sensitive session fields
    encryption_key: str = Field(default=DEV_ENCRYPTION_KEY)

    # Collaborators
    name_check_api_url: str = Field(default="http://localhost:8101")
    name_check_api_key: str = Field(default="")
    name_check_timeout: float = Field(default=5.0)
    name_check_retry_base_delay: float = Field(default=1.0)
    name_check_retry_max_delay: float = Field(default=5.0)

    document_api_url: str = Field(default="http://localhost:8102")
    document_api_key: str = Field(default="")
    document_timeout: float = Field(default=30.0)
    document_retry_base_delay: float = Field(default=2.0)
    document_retry_max_delay: float = Field(default=10.0)

    filing_api_url: str = Field(default="http://localhost:8103")
    filing_api_key: str = Field(default="")
    filing_timeout: float = Field(default=60.0)
    filing_retry_base_delay: float = Field(default=2.0)
    filing_retry_max_delay: float = Field(default=10.0)

    payment_api_url: str = Field(default="http://localhost:8104")
    payment_api_key: str = Field(default="")
    payment_timeout: float = Field(default=30.0)
    payment_retry_base_delay: float = Field(default=2.0)
    payment_retry_max_delay: float = Field(default=10.0)

    retry_max_attempts: int = Field(default=3)
    retry_multiplier: float = Field(default=2.0)

    # Pricing
    service_fee: Decimal = Field(default=Decimal("99"))
    expedite_fee: Decimal = Field(default=Decimal("50"))

    # Certificate review
    review_deadline_seconds: float = Field(default=600.0)
    review_host: str = Field(default="127.0.0.1")
    review_port: int = Field(default=3456)
    review_open_browser: bool = Field(default=True)

    @model_validator(mode="after")
    def validate_production_encryption_key(self):
        """Ensure ENCRYPTION_KEY is explicitly set in production"""
        if self.environment == "production":
            env_key = os.getenv("ENCRYPTION_KEY")
            if not env_key or env_key == DEV_ENCRYPTION_KEY:
                raise ValueError(
                    "ENCRYPTION_KEY must be explicitly set via environment variable in production. "
                    "Generate one with: openssl rand -hex 32"
                )
        return self

    @model_validator(mode="after")
    def validate_storage_backend(self):
        if self.storage_backend not in ("memory", "file", "redis"):
            raise ValueError(
                f"STORAGE_BACKEND must be one of memory, file, redis (got {self.storage_backend!r})"
            )
        return self


settings = Settings()
