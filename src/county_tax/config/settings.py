"""Configuration settings for the county tax pipeline."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Flat settings read from environment variables (or a .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bill.com invoicing API
    billcom_api_url: str = Field(
        default="https://api.bill.com/api", validation_alias="BILLCOM_API_URL"
    )
    # Only sync needs these; BillcomClient refuses to log in without them
    billcom_dev_key: SecretStr | None = Field(default=None, validation_alias="BILLCOM_DEV_KEY")
    billcom_username: str | None = Field(default=None, validation_alias="BILLCOM_USERNAME")
    billcom_password: SecretStr | None = Field(default=None, validation_alias="BILLCOM_PASSWORD")
    billcom_org_id: str | None = Field(default=None, validation_alias="BILLCOM_ORG_ID")
    billcom_timeout: float = Field(default=30.0, validation_alias="BILLCOM_TIMEOUT")
    billcom_max_retries: int = Field(default=3, validation_alias="BILLCOM_MAX_RETRIES")
    # Bill.com drops sessions after 35 idle minutes
    billcom_session_minutes: int = Field(default=30, validation_alias="BILLCOM_SESSION_MINUTES")

    # US Census geocoder
    geocoder_url: str = Field(
        default="https://geocoding.geo.census.gov/geocoder", validation_alias="GEOCODER_URL"
    )
    geocoder_benchmark: str = Field(
        default="Public_AR_Current", validation_alias="GEOCODER_BENCHMARK"
    )
    geocoder_vintage: str = Field(default="Current_Current", validation_alias="GEOCODER_VINTAGE")
    geocoder_timeout: float = Field(default=30.0, validation_alias="GEOCODER_TIMEOUT")
    geocoder_max_retries: int = Field(default=2, validation_alias="GEOCODER_MAX_RETRIES")
    geocoder_min_interval: float = Field(
        default=0.2, validation_alias="GEOCODER_MIN_INTERVAL",
        description="Minimum seconds between geocoder requests (5 req/sec)",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./county_tax.db", validation_alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")

    # Tax rules
    state_tax_rate: Decimal = Field(default=Decimal("0.0475"), validation_alias="STATE_TAX_RATE")
    default_county_tax_rate: Decimal = Field(
        default=Decimal("0.02"), validation_alias="DEFAULT_COUNTY_TAX_RATE"
    )
    home_state: str = Field(default="NC", validation_alias="HOME_STATE")

    # Pipeline behaviour
    sync_page_size: int = Field(default=999, validation_alias="SYNC_PAGE_SIZE")
    calculation_batch_size: int = Field(default=20, validation_alias="CALCULATION_BATCH_SIZE")
    run_stale_after_minutes: int = Field(default=360, validation_alias="RUN_STALE_AFTER_MINUTES")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
