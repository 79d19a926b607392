"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROBE_PREFIXES = "173.252.,69.171.,31.13.,66.220.,157.240.,204.15.,69.63."


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "LeadLink"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    base_url: str = "http://localhost:8000"
    whatsapp_base_url: str = "https://wa.me"

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "leadlink"
    postgres_password: str = "leadlink_dev"
    postgres_db: str = "leadlink"
    database_url: Optional[str] = None  # Full async URL, overrides postgres_*

    # Kommo CRM
    kommo_domain: str = ""
    kommo_access_token: str = ""
    kommo_timeout_seconds: float = 10.0
    kommo_max_retries: int = 3
    kommo_retry_base_delay: float = 1.0  # seconds, multiplied by attempt number

    # Kommo custom field ids (lead fields)
    kommo_field_utm_source: Optional[int] = None
    kommo_field_utm_medium: Optional[int] = None
    kommo_field_utm_campaign: Optional[int] = None
    kommo_field_utm_content: Optional[int] = None
    kommo_field_utm_term: Optional[int] = None
    kommo_field_fbclid: Optional[int] = None

    # Click deduplication
    dedup_same_subject_enabled: bool = True
    dedup_same_subject_window_seconds: int = 60
    dedup_same_caller_enabled: bool = False
    dedup_same_caller_window_seconds: int = 300
    dedup_click_token_enabled: bool = True
    dedup_recent_success_enabled: bool = True
    dedup_recent_success_window_seconds: int = 86400
    dedup_record_duplicates: bool = False

    # Automated traffic (comma-separated prefixes or CIDR blocks)
    probe_ip_prefixes: str = DEFAULT_PROBE_PREFIXES

    # Webhook reconciliation
    reconcile_window_seconds: int = 900  # 15 minutes
    reconcile_match_phone: bool = False

    # Security
    webhook_secret: str = ""  # Shared key for the Kommo webhook, empty disables the check
    rate_limit_enabled: bool = True
    rate_limit_redirect: str = "60/minute"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # text | json

    @property
    def postgres_url(self) -> str:
        """Build PostgreSQL async connection URL."""
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def sqlalchemy_url(self) -> str:
        """Database URL actually used by the engine."""
        return self.database_url or self.postgres_url

    @property
    def kommo_base_url(self) -> Optional[str]:
        """Kommo API v4 base URL, None when the domain is not configured."""
        if not self.kommo_domain:
            return None
        return f"https://{self.kommo_domain}/api/v4"

    @property
    def kommo_configured(self) -> bool:
        return bool(self.kommo_domain and self.kommo_access_token)

    @property
    def probe_prefixes(self) -> List[str]:
        """Parsed list of automated-traffic address prefixes."""
        return [item.strip() for item in self.probe_ip_prefixes.split(",") if item.strip()]

    @property
    def kommo_field_ids(self) -> dict:
        """Mapping of click attribute -> Kommo custom field id (configured ones only)."""
        fields = {
            "utm_source": self.kommo_field_utm_source,
            "utm_medium": self.kommo_field_utm_medium,
            "utm_campaign": self.kommo_field_utm_campaign,
            "utm_content": self.kommo_field_utm_content,
            "utm_term": self.kommo_field_utm_term,
            "fbclid": self.kommo_field_fbclid,
        }
        return {name: field_id for name, field_id in fields.items() if field_id}

    def validate_production_settings(self) -> None:
        """
        Validate critical settings for production deployment.
        Raises ValueError if any critical settings are using default/insecure values.
        """
        if self.environment == "production":
            errors = []

            if not self.database_url and (
                not self.postgres_password or self.postgres_password == "leadlink_dev"
            ):
                errors.append("POSTGRES_PASSWORD must be set to a secure value in production")

            if not self.kommo_configured:
                errors.append("KOMMO_DOMAIN and KOMMO_ACCESS_TOKEN must be set in production")

            if not self.webhook_secret:
                errors.append("WEBHOOK_SECRET should be set for the Kommo webhook in production")

            if errors:
                raise ValueError(
                    "Production configuration validation failed:\n" +
                    "\n".join(f"  - {error}" for error in errors)
                )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
