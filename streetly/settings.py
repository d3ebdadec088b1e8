"""Deployment settings loaded from the environment (or a .env file)."""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from streetly.models.config import TrackingConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STREETLY_",
        env_file=".env",
        extra="ignore",
    )

    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_KEY", "STREETLY_GEMINI_API_KEY"),
    )
    oracle_model: str = "gemini-1.5-flash"
    oracle_base_url: str = "https://generativelanguage.googleapis.com"
    oracle_temperature: float = 0.7
    oracle_max_output_tokens: int = 500
    oracle_timeout_seconds: float = 10.0

    db_path: str = ":memory:"
    log_level: str = "INFO"

    # Tunable matching policy
    proximity_threshold_feet: float = 50.0
    reconcile_interval_seconds: float = 120.0
    active_within_minutes: int = 60

    def tracking_config(self) -> TrackingConfig:
        return TrackingConfig(
            proximity_threshold_feet=self.proximity_threshold_feet,
            reconcile_interval_seconds=self.reconcile_interval_seconds,
            active_within_minutes=self.active_within_minutes,
        )
