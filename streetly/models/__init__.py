"""Streetly engine data models."""

from streetly.models.config import TrackingConfig
from streetly.models.geo import BoundingBox, Coordinate
from streetly.models.match import (
    MatchDecision,
    MatchOutcome,
    MatchRecord,
    MatchView,
    OutcomeKind,
    pair_key,
)
from streetly.models.profile import CandidateUser, NearbyCandidate, UserProfile
from streetly.models.session import ScanEvent, ScanEventKind, SessionState

__all__ = [
    "BoundingBox",
    "CandidateUser",
    "Coordinate",
    "MatchDecision",
    "MatchOutcome",
    "MatchRecord",
    "MatchView",
    "NearbyCandidate",
    "OutcomeKind",
    "ScanEvent",
    "ScanEventKind",
    "SessionState",
    "TrackingConfig",
    "UserProfile",
    "pair_key",
]
