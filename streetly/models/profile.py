"""Profiles — the snapshot a compatibility evaluation is run against."""

from datetime import datetime
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from streetly.models.geo import Coordinate


class UserProfile(BaseModel):
    """Self-contained user snapshot. Built fresh from store data per evaluation."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    age: Optional[int] = Field(default=None, ge=0)
    bio: str = ""
    interests: FrozenSet[str] = frozenset()


class CandidateUser(BaseModel):
    """A nearby-user row pulled from the store. Valid for one scan only."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    profile: UserProfile
    last_known_location: Optional[Coordinate] = None   # rows without a fix are dropped by the filter
    last_seen_at: datetime


class NearbyCandidate(BaseModel):
    """What the UI layer is told about a user inside the proximity threshold."""

    user_id: str
    name: str
    distance_feet: float
