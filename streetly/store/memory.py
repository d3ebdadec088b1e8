"""
In-memory store — both store protocols in one process-local object.

Used for tests and embedding. The pair-uniqueness check and the insert run
without an intervening await, so concurrent create_match calls for the same
pair behave like a database unique constraint.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from streetly.errors import DuplicateKeyError
from streetly.models.geo import BoundingBox, Coordinate
from streetly.models.match import MatchRecord, pair_key
from streetly.models.profile import CandidateUser, UserProfile
from streetly.store.profiles import normalize_profile, profile_blob


class _UserRow:
    def __init__(self, user_id: str, name: str, blob: Any, age: Optional[int] = None):
        self.user_id = user_id
        self.name = name
        self.blob = blob
        self.age = age
        self.location: Optional[Coordinate] = None
        self.last_seen_at: Optional[datetime] = None

    def profile(self) -> UserProfile:
        return normalize_profile(self.user_id, self.name, self.blob, self.age)


class InMemoryStore:
    """Profile and match store backed by dictionaries."""

    def __init__(self):
        self._users: Dict[str, _UserRow] = {}
        self._matches: Dict[Tuple[str, str], MatchRecord] = {}

    # --- Profiles ---

    def put_user(
        self,
        user_id: str,
        name: str,
        blob: Any = None,
        age: Optional[int] = None,
        location: Optional[Coordinate] = None,
        last_seen_at: Optional[datetime] = None,
    ) -> None:
        """Insert a raw user row, blob stored as given."""
        row = _UserRow(user_id, name, blob, age)
        existing = self._users.get(user_id)
        if existing is not None and location is None:
            row.location, row.last_seen_at = existing.location, existing.last_seen_at
        if location is not None:
            row.location = location
            row.last_seen_at = last_seen_at or datetime.utcnow()
        self._users[user_id] = row

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        row = self._users.get(user_id)
        return row.profile() if row else None

    async def save_profile(self, profile: UserProfile) -> None:
        self.put_user(profile.user_id, profile.name, profile_blob(profile), profile.age)

    async def update_location(
        self, user_id: str, location: Coordinate, seen_at: datetime
    ) -> None:
        row = self._users.get(user_id)
        if row is None:
            row = _UserRow(user_id, "", None)
            self._users[user_id] = row
        row.location = location
        row.last_seen_at = seen_at

    async def query_nearby(
        self,
        box: BoundingBox,
        seen_after: datetime,
        exclude_user_id: str,
    ) -> List[CandidateUser]:
        return [
            CandidateUser(
                user_id=row.user_id,
                profile=row.profile(),
                last_known_location=row.location,
                last_seen_at=row.last_seen_at,
            )
            for row in self._users.values()
            if row.user_id != exclude_user_id
            and row.location is not None
            and row.last_seen_at is not None
            and row.last_seen_at >= seen_after
            and box.contains(row.location)
        ]

    # --- Matches ---

    async def find_pair(self, user_id_a: str, user_id_b: str) -> Optional[MatchRecord]:
        return self._matches.get(pair_key(user_id_a, user_id_b))

    async def create_match(
        self,
        user_id_a: str,
        user_id_b: str,
        compatibility_score: float,
        reasoning: str,
        location: Optional[Coordinate] = None,
    ) -> MatchRecord:
        key = pair_key(user_id_a, user_id_b)
        if key in self._matches:
            raise DuplicateKeyError(*key)
        record = MatchRecord(
            match_id=f"match_{uuid4().hex[:12]}",
            user_id_a=key[0],
            user_id_b=key[1],
            compatibility_score=compatibility_score,
            reasoning=reasoning,
            location=location,
            created_at=datetime.utcnow(),
        )
        self._matches[key] = record
        return record

    async def list_matches_for_user(
        self, user_id: str, since: Optional[datetime] = None
    ) -> List[MatchRecord]:
        records = [
            r for r in self._matches.values()
            if r.involves(user_id) and (since is None or r.created_at >= since)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def count_matches(self) -> int:
        return len(self._matches)
