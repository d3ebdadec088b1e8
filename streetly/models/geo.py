"""Geographic primitives — GPS readings and coarse search boxes."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Coordinate(BaseModel):
    """A point-in-time GPS reading."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: Optional[float] = Field(default=None, ge=0)


class BoundingBox(BaseModel):
    """Axis-aligned lat/lon box used as a server-side pre-filter."""

    model_config = ConfigDict(frozen=True)

    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    @classmethod
    def around(
        cls,
        origin: Coordinate,
        lat_margin: float,
        lon_margin: Optional[float] = None,
    ) -> "BoundingBox":
        """Box centred on origin, clamped to valid coordinate ranges."""
        if lon_margin is None:
            lon_margin = lat_margin
        return cls(
            min_latitude=max(-90.0, origin.latitude - lat_margin),
            max_latitude=min(90.0, origin.latitude + lat_margin),
            min_longitude=max(-180.0, origin.longitude - lon_margin),
            max_longitude=min(180.0, origin.longitude + lon_margin),
        )

    def contains(self, point: Coordinate) -> bool:
        return (
            self.min_latitude <= point.latitude <= self.max_latitude
            and self.min_longitude <= point.longitude <= self.max_longitude
        )
