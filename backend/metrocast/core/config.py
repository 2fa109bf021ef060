"""Application configuration.

Environment variables are loaded from .env file and can be overridden.
All settings have sensible defaults for local development against the
Greater Portland Metro feeds.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _valkey_alias(env_name: str) -> AliasChoices:
    """Support both VALKEY_* and REDIS_* env var names for compatibility."""
    redis_name = env_name.replace("VALKEY_", "REDIS_")
    return AliasChoices(redis_name, env_name)


def _split_csv(value: Any) -> list[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value) if value else []


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # Infrastructure
    # ==========================================================================

    environment: str = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Deployment environment: 'development', 'staging', or 'production'.",
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    valkey_url: str = Field(
        default="valkey://localhost:6379/0",
        validation_alias=_valkey_alias("VALKEY_URL"),
    )
    valkey_connect_timeout_seconds: float = Field(
        default=10.0,
        validation_alias=_valkey_alias("VALKEY_CONNECT_TIMEOUT_SECONDS"),
        gt=0,
    )

    # ==========================================================================
    # Feeds
    # ==========================================================================

    gtfs_timezone: str = Field(default="America/New_York", alias="GTFS_TIMEZONE")
    gtfs_static_url: str = Field(
        default="https://gtfs.gptd.cadavl.com/GPTD/GTFS/GTFS_GPTD.zip",
        alias="GTFS_STATIC_URL",
    )
    gtfs_rt_vehicle_positions_url: str = Field(
        default=(
            "https://gtfsrt.gptd.cadavl.com/ProfilGtfsRt2_0RSProducer-GPTD/"
            "VehiclePosition.pb"
        ),
        alias="GTFS_RT_VEHICLE_POSITIONS_URL",
    )
    gtfs_rt_trip_updates_url: str = Field(
        default=(
            "https://gtfsrt.gptd.cadavl.com/ProfilGtfsRt2_0RSProducer-GPTD/"
            "TripUpdate.pb"
        ),
        alias="GTFS_RT_TRIP_UPDATES_URL",
    )
    gtfs_rt_alerts_url: str = Field(
        default=(
            "https://gtfsrt.gptd.cadavl.com/ProfilGtfsRt2_0RSProducer-GPTD/Alert.pb"
        ),
        alias="GTFS_RT_ALERTS_URL",
    )
    gtfs_rt_timeout_seconds: float = Field(
        default=5.0, alias="GTFS_RT_TIMEOUT_SECONDS", gt=0
    )
    gtfs_static_download_timeout_seconds: float = Field(
        default=300.0, alias="GTFS_STATIC_DOWNLOAD_TIMEOUT_SECONDS", gt=0
    )
    gtfs_static_download_attempts: int = Field(
        default=3, alias="GTFS_STATIC_DOWNLOAD_ATTEMPTS", ge=1
    )
    gtfs_static_download_backoff_seconds: float = Field(
        default=2.0, alias="GTFS_STATIC_DOWNLOAD_BACKOFF_SECONDS", ge=0
    )

    # ==========================================================================
    # Job cadence (seconds)
    # ==========================================================================

    feed_jobs_enabled: bool = Field(default=True, alias="FEED_JOBS_ENABLED")
    vehicle_positions_interval_seconds: float = Field(
        default=1.0, alias="VEHICLE_POSITIONS_INTERVAL_SECONDS", gt=0
    )
    trip_updates_interval_seconds: float = Field(
        default=1.0, alias="TRIP_UPDATES_INTERVAL_SECONDS", gt=0
    )
    alerts_interval_seconds: float = Field(
        default=3600.0, alias="ALERTS_INTERVAL_SECONDS", gt=0
    )
    static_schedule_interval_seconds: float = Field(
        default=600.0, alias="STATIC_SCHEDULE_INTERVAL_SECONDS", gt=0
    )
    retention_cleanup_interval_seconds: float = Field(
        default=86400.0, alias="RETENTION_CLEANUP_INTERVAL_SECONDS", gt=0
    )

    # ==========================================================================
    # Schedule materialization and retention
    # ==========================================================================

    schedule_horizon_days: int = Field(
        default=3, alias="SCHEDULE_HORIZON_DAYS", ge=0, le=14
    )
    retention_days: int = Field(default=3, alias="RETENTION_DAYS", ge=1)

    # ==========================================================================
    # Stop names
    # ==========================================================================

    hub_destinations: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["PULSE"], alias="HUB_DESTINATIONS"
    )
    stop_name_overrides: Annotated[dict[str, str] | None, NoDecode] = Field(
        default=None,
        alias="STOP_NAME_OVERRIDES",
        description="JSON object of stop_id -> display name. Uses the built-in table when unset.",
    )

    # ==========================================================================
    # Read API
    # ==========================================================================

    arrivals_lookback_minutes: int = Field(
        default=10, alias="ARRIVALS_LOOKBACK_MINUTES", ge=0, le=120
    )
    arrivals_default_limit: int = Field(
        default=20, alias="ARRIVALS_DEFAULT_LIMIT", ge=1, le=100
    )

    # ==========================================================================
    # Static data change notification
    # ==========================================================================

    static_data_webhook_url: str | None = Field(
        default=None, alias="STATIC_DATA_WEBHOOK_URL"
    )
    static_data_webhook_token: str | None = Field(
        default=None, alias="STATIC_DATA_WEBHOOK_TOKEN"
    )

    # ==========================================================================
    # CORS
    # ==========================================================================

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        alias="CORS_ALLOW_ORIGINS",
    )

    # ==========================================================================
    # OpenTelemetry (optional)
    # ==========================================================================

    otel_enabled: bool = Field(default=False, alias="OTEL_ENABLED")
    otel_service_name: str = Field(default="metrocast", alias="OTEL_SERVICE_NAME")
    otel_service_version: str = Field(default="0.1.0", alias="OTEL_SERVICE_VERSION")
    otel_exporter_otlp_endpoint: str = Field(
        default="http://jaeger:4317", alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    otel_exporter_otlp_headers: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_HEADERS"
    )

    # ==========================================================================
    # Pydantic Settings Config
    # ==========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # Validators
    # ==========================================================================

    @field_validator("hub_destinations", mode="before")
    @classmethod
    def parse_hub_destinations(cls, value: Any) -> list[str]:
        """Parse comma-separated hub destination labels."""
        return _split_csv(value)

    @field_validator("stop_name_overrides", mode="before")
    @classmethod
    def parse_stop_name_overrides(cls, value: Any) -> dict[str, str] | None:
        """Accept a JSON object string or a mapping."""
        if value is None or value == "":
            return None
        if isinstance(value, str):
            parsed = json.loads(value)
            if not isinstance(parsed, dict):
                raise ValueError("STOP_NAME_OVERRIDES must be a JSON object")
            return {str(k): str(v) for k, v in parsed.items()}
        return dict(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: Any) -> list[str]:
        """Parse comma-separated CORS origins, rejecting wildcard '*'."""
        parsed = _split_csv(value)
        if "*" in parsed:
            raise ValueError(
                "Wildcard CORS origin '*' is not allowed. "
                "Specify explicit origins like 'http://localhost:3000'."
            )
        return parsed

    @field_validator("gtfs_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Reject timezone names the tz database does not know."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_production_security(self) -> "Settings":
        """Require a token whenever the webhook is used in production."""
        if (
            self.environment.lower() == "production"
            and self.static_data_webhook_url
            and not self.static_data_webhook_token
        ):
            raise ValueError(
                "STATIC_DATA_WEBHOOK_TOKEN must be set when a webhook URL is "
                "configured in production."
            )
        return self

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.gtfs_timezone)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
