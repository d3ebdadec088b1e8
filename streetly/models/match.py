"""Match models — oracle decisions, durable match records, evaluation outcomes."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from streetly.models.geo import Coordinate
from streetly.models.profile import UserProfile


def pair_key(user_id_a: str, user_id_b: str) -> Tuple[str, str]:
    """Canonical, order-independent identity of a pair."""
    return (user_id_a, user_id_b) if user_id_a <= user_id_b else (user_id_b, user_id_a)


class MatchDecision(BaseModel):
    """
    Oracle output. `is_match` is authoritative; the engine never derives it
    from `compatibility_score`.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    is_match: bool = Field(default=False, alias="isMatch")
    compatibility_score: float = Field(default=0.0, alias="compatibilityScore")
    reasoning: str = "No reasoning provided"
    common_interests: List[str] = Field(default_factory=list, alias="commonInterests")

    @field_validator("compatibility_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(1.0, max(0.0, value))


class MatchRecord(BaseModel):
    """
    Store-owned record of an accepted pairing. At most one exists per
    unordered pair; the engine never updates or deletes one.
    """

    model_config = ConfigDict(frozen=True)

    match_id: str
    user_id_a: str
    user_id_b: str
    compatibility_score: float = Field(ge=0, le=1)
    reasoning: str
    location: Optional[Coordinate] = None
    created_at: datetime

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user_id_a, self.user_id_b)

    def counterpart_of(self, user_id: str) -> str:
        return self.user_id_b if self.user_id_a == user_id else self.user_id_a


class MatchView(BaseModel):
    """A match with both sides resolved for display."""

    record: MatchRecord
    user_a: Optional[UserProfile] = None
    user_b: Optional[UserProfile] = None


class OutcomeKind(str, Enum):
    ALREADY_LINKED = "already_linked"
    NO_MATCH = "no_match"
    NEW_MATCH = "new_match"


class MatchOutcome(BaseModel):
    """Result of evaluating one candidate."""

    kind: OutcomeKind
    candidate_id: str
    score: Optional[float] = None
    record: Optional[MatchRecord] = None
    decision: Optional[MatchDecision] = None
    duplicate_rejected: bool = False        # store refused a racing insert for this pair

    @classmethod
    def already_linked(
        cls,
        candidate_id: str,
        record: Optional[MatchRecord] = None,
        duplicate_rejected: bool = False,
    ) -> "MatchOutcome":
        return cls(
            kind=OutcomeKind.ALREADY_LINKED,
            candidate_id=candidate_id,
            record=record,
            duplicate_rejected=duplicate_rejected,
        )

    @classmethod
    def no_match(cls, candidate_id: str, decision: MatchDecision) -> "MatchOutcome":
        return cls(
            kind=OutcomeKind.NO_MATCH,
            candidate_id=candidate_id,
            score=decision.compatibility_score,
            decision=decision,
        )

    @classmethod
    def new_match(
        cls, candidate_id: str, record: MatchRecord, decision: MatchDecision
    ) -> "MatchOutcome":
        return cls(
            kind=OutcomeKind.NEW_MATCH,
            candidate_id=candidate_id,
            score=record.compatibility_score,
            record=record,
            decision=decision,
        )
