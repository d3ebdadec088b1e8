"""
Candidate Finder — coarse discovery of other active users around a position.

The bounding box is deliberately generous: it only has to contain every user
inside the proximity threshold. The exact check happens in ProximityFilter.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from streetly.geo.distance import METERS_PER_DEGREE_LAT, feet_to_meters
from streetly.models.geo import BoundingBox, Coordinate
from streetly.models.profile import CandidateUser
from streetly.store.base import ProfileStore

logger = logging.getLogger(__name__)

# Longitude degrees shrink towards the poles; stop widening past this latitude.
_MAX_WIDENING_LATITUDE = 89.0


class CandidateFinder:
    """Queries the profile store for recently active users near an origin."""

    def __init__(
        self,
        profiles: ProfileStore,
        margin_degrees: float = 0.003,
        threshold_feet: float = 50.0,
    ):
        self.profiles = profiles
        self.margin_degrees = margin_degrees
        self.threshold_feet = threshold_feet

    def bounding_box(self, origin: Coordinate) -> BoundingBox:
        """
        Box of at least `margin_degrees` per side, widened when the threshold
        itself would not fit (large thresholds, high latitudes).
        """
        threshold_m = feet_to_meters(self.threshold_feet)
        lat_needed = threshold_m / METERS_PER_DEGREE_LAT
        cos_lat = math.cos(math.radians(min(abs(origin.latitude), _MAX_WIDENING_LATITUDE)))
        lon_needed = lat_needed / cos_lat

        lat_margin = max(self.margin_degrees, lat_needed * 2)
        lon_margin = max(self.margin_degrees, lon_needed * 2)
        return BoundingBox.around(origin, lat_margin, lon_margin)

    async def find_candidates(
        self,
        origin: Coordinate,
        exclude_user_id: str,
        active_since: timedelta,
        current_time: Optional[datetime] = None,
    ) -> List[CandidateUser]:
        """
        Users inside the coarse box, seen within `active_since`.
        Empty list when nothing matches; StoreFailure propagates to the caller.
        """
        if current_time is None:
            current_time = datetime.utcnow()

        box = self.bounding_box(origin)
        candidates = await self.profiles.query_nearby(
            box=box,
            seen_after=current_time - active_since,
            exclude_user_id=exclude_user_id,
        )
        logger.debug(
            "Found %d coarse candidates around (%.6f, %.6f)",
            len(candidates), origin.latitude, origin.longitude,
        )
        return candidates
