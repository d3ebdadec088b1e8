"""Tracking configuration — engine tunables."""

from pydantic import BaseModel, Field


class TrackingConfig(BaseModel):
    """Configuration for a TrackingSession and the stages it drives."""

    proximity_threshold_feet: float = Field(default=50.0, gt=0)
    min_distance_meters: float = Field(default=5.0, ge=0)
    bbox_margin_degrees: float = Field(default=0.003, gt=0)
    active_within_minutes: int = Field(default=60, gt=0)
    reconcile_interval_seconds: float = Field(default=120.0, gt=0)
    reconcile_lookback_hours: int = Field(default=24, gt=0)
    notified_capacity: int = Field(default=100, ge=1)
    max_concurrent_evaluations: int = Field(default=4, ge=1)
    event_buffer_size: int = Field(default=100, ge=1)   # oldest events dropped past this
