"""
Match Evaluator — decides and persists a match for one nearby candidate.

Behavioral Contract:
- The existing-link check for a pair always happens before the oracle call
  and before any persistence attempt for that pair
- The oracle's `is_match` is authoritative; the score never overrides it
- Persistence goes through the store's idempotent create; a duplicate-pair
  rejection means "already linked", not an error
- No retries and no per-candidate backoff: a failure propagates and the
  candidate is simply evaluated again on the next scan
- Idempotent by construction, not by locking: concurrent evaluations of the
  same pair are settled by the store's uniqueness constraint
"""

import logging
from typing import Optional

from streetly.errors import DuplicateKeyError
from streetly.models.geo import Coordinate
from streetly.models.match import MatchDecision, MatchOutcome
from streetly.models.profile import CandidateUser, UserProfile
from streetly.oracle.client import CompatibilityOracle, parse_decision
from streetly.store.base import MatchStore

logger = logging.getLogger(__name__)


class MatchEvaluator:
    """Runs check → oracle → persist for a single candidate."""

    def __init__(self, matches: MatchStore, oracle: CompatibilityOracle):
        self.matches = matches
        self.oracle = oracle

    async def decide(
        self, self_profile: UserProfile, other_profile: UserProfile
    ) -> MatchDecision:
        """Ask the oracle and parse its reply. OracleFailure propagates."""
        response = await self.oracle.score(self_profile, other_profile)
        return parse_decision(response)

    async def evaluate(
        self,
        self_profile: UserProfile,
        self_user_id: str,
        candidate: CandidateUser,
        origin_for_record: Optional[Coordinate] = None,
    ) -> MatchOutcome:
        """
        Evaluate one candidate.

        Raises StoreFailure or OracleFailure; the caller decides whether
        that aborts anything beyond this candidate.
        """
        # 1. Existing link short-circuits the oracle.
        existing = await self.matches.find_pair(self_user_id, candidate.user_id)
        if existing is not None:
            return MatchOutcome.already_linked(candidate.user_id, existing)

        # 2. Oracle decision.
        decision = await self.decide(self_profile, candidate.profile)

        # 3. Negative decision persists nothing.
        if not decision.is_match:
            logger.debug(
                "No match %s/%s (score %.2f)",
                self_user_id, candidate.user_id, decision.compatibility_score,
            )
            return MatchOutcome.no_match(candidate.user_id, decision)

        # 4. Idempotent create.
        try:
            record = await self.matches.create_match(
                user_id_a=self_user_id,
                user_id_b=candidate.user_id,
                compatibility_score=decision.compatibility_score,
                reasoning=decision.reasoning,
                location=origin_for_record,
            )
        except DuplicateKeyError:
            logger.info(
                "Match %s/%s already created elsewhere, ignoring duplicate",
                self_user_id, candidate.user_id,
            )
            return MatchOutcome.already_linked(candidate.user_id, duplicate_rejected=True)

        # 5. New record.
        logger.info(
            "New match %s between %s and %s (score %.2f)",
            record.match_id, self_user_id, candidate.user_id, record.compatibility_score,
        )
        return MatchOutcome.new_match(candidate.user_id, record, decision)
