"""Proximity Filter — exact distance check over coarse candidates."""

from typing import List, Sequence, Tuple

from streetly.geo.distance import distance_feet
from streetly.models.geo import Coordinate
from streetly.models.profile import CandidateUser


class ProximityFilter:
    """
    Keeps candidates within `threshold_feet` of the origin, boundary inclusive.
    Pure and order-preserving; candidates without a location are skipped.
    """

    def __init__(self, threshold_feet: float = 50.0):
        self.threshold_feet = threshold_feet

    def filter(
        self, origin: Coordinate, candidates: Sequence[CandidateUser]
    ) -> List[Tuple[CandidateUser, float]]:
        retained = []
        for candidate in candidates:
            location = candidate.last_known_location
            if location is None:
                continue
            feet = distance_feet(origin, location)
            if feet <= self.threshold_feet:
                retained.append((candidate, feet))
        return retained
