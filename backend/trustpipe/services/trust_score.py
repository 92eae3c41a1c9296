"""
Trust score: a bounded, multi-component reputation score per user.

The score is recomputed from the latest pipeline signal plus the previous
component snapshot. A component with no new signal keeps its last value.
"""

import math
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from trustpipe.schemas.claim import FactCheck
from trustpipe.schemas.policy import PolicyDecision
from trustpipe.schemas.trust import TrustComponents, TrustHistoryEntry, TrustScore, ValueStats
from trustpipe.schemas.value import DiscussionQuality, ValueScore
from trustpipe.services.document_store import DocumentStore
from trustpipe.utils.locks import KeyedLocks
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

SCORE_WEIGHTS = {
    "quality": 0.4,
    "violations": 0.25,
    "engagement": 0.15,
    "consistency": 0.1,
    "trust": 0.1,
}

MIN_SCORE = 0
MAX_SCORE = 100
DEFAULT_QUALITY = 0.5
DEFAULT_ENGAGEMENT = 0.4


class TrustSignal(BaseModel):
    """New evidence from one pipeline run. Absent fields carry no signal."""
    value_score: Optional[ValueScore] = None
    policy_decision: Optional[PolicyDecision] = None
    discussion_quality: Optional[DiscussionQuality] = None
    fact_checks: Optional[List[FactCheck]] = None
    reason: str = "score_update"

    def is_empty(self) -> bool:
        return (self.value_score is None and self.policy_decision is None
                and self.discussion_quality is None and self.fact_checks is None)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quality_score(value_score: ValueScore) -> float:
    weighted = (value_score.epistemic * 0.3 + value_score.insight * 0.2 + value_score.practical * 0.2
                + value_score.relational * 0.2 + value_score.effort * 0.1)
    return _clamp(weighted)


def violation_penalty(policy_decision: Optional[PolicyDecision], fact_checks: Optional[List[FactCheck]]) -> float:
    penalty = 0.0
    if policy_decision is not None:
        if policy_decision.status == "blocked":
            penalty += 1.0
        elif policy_decision.status == "needs_review":
            penalty += 0.4

    false_claims = sum(1 for fc in fact_checks or [] if fc.verdict == "false" and fc.confidence > 0.7)
    if false_claims:
        penalty += min(1.0, false_claims * 0.25)

    return _clamp(penalty)


def engagement_score(discussion: DiscussionQuality) -> float:
    return _clamp((discussion.informativeness + discussion.reasoning_depth
                   + discussion.cross_perspective + discussion.civility) / 4)


def consistency_score(value_stats: Optional[ValueStats]) -> float:
    if value_stats is None:
        return 0.0
    return _clamp((value_stats.post_value_30d + value_stats.comment_value_30d) / 5)


def community_trust_score(policy_decision: Optional[PolicyDecision], has_recent_violations: bool) -> float:
    if policy_decision is not None and policy_decision.status == "blocked":
        return 0.0
    if has_recent_violations:
        return 0.3
    if policy_decision is not None and policy_decision.status == "needs_review":
        return 0.6
    return 1.0


def combine(quality: float, violations: float, engagement: float, consistency: float, trust: float) -> int:
    """Weighted sum of normalized components, scaled onto 0-100."""
    positive = (quality * SCORE_WEIGHTS["quality"] + engagement * SCORE_WEIGHTS["engagement"]
                + consistency * SCORE_WEIGHTS["consistency"] + trust * SCORE_WEIGHTS["trust"])
    net = positive - violations * SCORE_WEIGHTS["violations"]
    normalized = _clamp(net, -0.25, 0.75)
    scaled = (normalized + 0.25) * (MAX_SCORE - MIN_SCORE)
    return int(_clamp(_round_half_up(scaled), MIN_SCORE, MAX_SCORE))


def _components(quality: float, violations: float, engagement: float, consistency: float,
                trust: float) -> TrustComponents:
    def percent(value: float) -> int:
        return int(_clamp(_round_half_up(value * 100), 0, 100))

    return TrustComponents(
        quality_history=percent(quality),
        violation_history=percent(violations),
        engagement_quality=percent(engagement),
        consistency=percent(consistency),
        community_trust=percent(trust),
    )


def initial_trust_score(value_stats: Optional[ValueStats], now: Optional[datetime] = None) -> TrustScore:
    """Baseline score for a user without one."""
    consistency = consistency_score(value_stats)
    return TrustScore(
        score=combine(DEFAULT_QUALITY, 0.0, DEFAULT_ENGAGEMENT, consistency, 1.0),
        components=_components(DEFAULT_QUALITY, 0.0, DEFAULT_ENGAGEMENT, consistency, 1.0),
        history=[],
        last_updated=now or utcnow(),
    )


def compute_trust_score(
    previous: TrustScore,
    signal: TrustSignal,
    value_stats: Optional[ValueStats],
    history_limit: int = 20,
    now: Optional[datetime] = None,
) -> TrustScore:
    """
    Recompute a trust score from new signal and the previous snapshot.

    Args:
        previous: Current trust score
        signal: New evidence from this run
        value_stats: Current ledger aggregates for the user
        history_limit: Maximum number of history entries kept
        now: Timestamp for the new entry

    Returns:
        New TrustScore with the entry prepended to a capped history
    """
    now = now or utcnow()
    last = previous.components

    if signal.value_score is not None:
        quality = quality_score(signal.value_score)
    else:
        quality = last.quality_history / 100

    if signal.discussion_quality is not None:
        engagement = engagement_score(signal.discussion_quality)
    else:
        engagement = last.engagement_quality / 100

    has_violation_signal = signal.policy_decision is not None or signal.fact_checks is not None
    if has_violation_signal:
        violations = violation_penalty(signal.policy_decision, signal.fact_checks)
    else:
        violations = last.violation_history / 100

    if has_violation_signal:
        trust = community_trust_score(signal.policy_decision, violations > 0.4)
    else:
        trust = last.community_trust / 100

    consistency = consistency_score(value_stats)

    score = combine(quality, violations, engagement, consistency, trust)
    entry = TrustHistoryEntry(score=score, delta=score - previous.score, reason=signal.reason, date=now)

    return TrustScore(
        score=score,
        components=_components(quality, violations, engagement, consistency, trust),
        history=([entry] + list(previous.history))[:history_limit],
        last_updated=now,
    )


class TrustScoreService:
    """Loads, recomputes and stores per-user trust scores."""

    def __init__(self, store: DocumentStore, history_limit: int = 20,
                 now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.history_limit = history_limit
        self._now = now
        self._user_locks = KeyedLocks()

    def initialize(self, user_id: str) -> Optional[TrustScore]:
        """Set the baseline score once. Existing scores are left alone."""
        with self._user_locks.hold(user_id):
            user = self.store.get_user(user_id)
            if user is None:
                return None
            if user.trust_score is not None:
                return user.trust_score

            baseline = initial_trust_score(user.value_stats, now=self._now())
            self.store.update_user_fields(user_id, {"trust_score": baseline})
        logger.info("Trust score initialized", user_id=user_id, score=baseline.score)
        return baseline

    def update(self, user_id: str, signal: TrustSignal) -> Optional[TrustScore]:
        """
        Apply new signal to a user's trust score.

        Updates for one user are serialized; each one reads the score the
        previous one stored.

        Returns:
            The stored score, or None if the user does not exist
        """
        with self._user_locks.hold(user_id):
            return self._update(user_id, signal)

    def _update(self, user_id: str, signal: TrustSignal) -> Optional[TrustScore]:
        user = self.store.get_user(user_id)
        if user is None:
            logger.warning("Skipping trust update for unknown user", user_id=user_id)
            return None

        previous = user.trust_score or initial_trust_score(user.value_stats, now=self._now())
        if signal.is_empty():
            if user.trust_score is None:
                self.store.update_user_fields(user_id, {"trust_score": previous})
            return previous

        updated = compute_trust_score(previous, signal, user.value_stats,
                                      history_limit=self.history_limit, now=self._now())
        self.store.update_user_fields(user_id, {"trust_score": updated})

        logger.info("Trust score updated",
                    user_id=user_id,
                    score=updated.score,
                    delta=updated.history[0].delta,
                    reason=signal.reason)
        return updated
