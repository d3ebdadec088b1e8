"""
Store collaborator contracts.

All durability lives behind these protocols. Implementations translate their
driver errors into StoreFailure, and a duplicate pair insert into
DuplicateKeyError; per-call atomicity is the store's job, not the engine's.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from streetly.models.geo import BoundingBox, Coordinate
from streetly.models.match import MatchRecord
from streetly.models.profile import CandidateUser, UserProfile


class ProfileStore(Protocol):
    """User profiles and their last known location."""

    async def get_profile(self, user_id: str) -> Optional[UserProfile]: ...

    async def save_profile(self, profile: UserProfile) -> None: ...

    async def update_location(
        self, user_id: str, location: Coordinate, seen_at: datetime
    ) -> None: ...

    async def query_nearby(
        self,
        box: BoundingBox,
        seen_after: datetime,
        exclude_user_id: str,
    ) -> List[CandidateUser]: ...


class MatchStore(Protocol):
    """Match records, unique per unordered pair."""

    async def find_pair(self, user_id_a: str, user_id_b: str) -> Optional[MatchRecord]: ...

    async def create_match(
        self,
        user_id_a: str,
        user_id_b: str,
        compatibility_score: float,
        reasoning: str,
        location: Optional[Coordinate] = None,
    ) -> MatchRecord: ...

    async def list_matches_for_user(
        self, user_id: str, since: Optional[datetime] = None
    ) -> List[MatchRecord]: ...
