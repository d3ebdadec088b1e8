"""Session state and the events a running session publishes."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from streetly.models.match import MatchRecord
from streetly.models.profile import NearbyCandidate


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"   # only distinguishes start-time failures from a clean stop
    ACTIVE = "active"


class ScanEventKind(str, Enum):
    CANDIDATES_FOUND = "candidates_found"
    MATCH_FOUND = "match_found"


class ScanEvent(BaseModel):
    """One item of the consumer-facing event sequence."""

    kind: ScanEventKind
    candidates: List[NearbyCandidate] = []
    match: Optional[MatchRecord] = None
    counterpart_name: Optional[str] = None
    emitted_at: datetime = Field(default_factory=datetime.utcnow)
