"""
Contribution ledger: append-only value events and the per-user aggregates
derived from them.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from trustpipe.schemas.claim import Claim
from trustpipe.schemas.content import CommentDocument, PostDocument
from trustpipe.schemas.ledger import ContributionRecord
from trustpipe.schemas.trust import ValueStats
from trustpipe.schemas.value import ContributionVector, ValueScore
from trustpipe.services.document_store import DocumentStore
from trustpipe.utils.locks import KeyedLocks
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

ROLLING_WINDOW = timedelta(days=30)
MAX_DOMAIN_LENGTH = 100


def dominant_domain(domains: Iterable[Optional[str]]) -> Optional[str]:
    """Most frequent domain, ties going to the first seen."""
    counts = Counter(domain.lower() for domain in domains if domain)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def ledger_domain(domain: Optional[str]) -> str:
    """Lowercased domain label fitting the ledger column."""
    return (domain or "general").strip().lower()[:MAX_DOMAIN_LENGTH] or "general"


class ContributionLedger:
    """
    Records scored contributions and recomputes rolling and lifetime stats.

    Writes are idempotent per user + contribution type + source id, so the
    same post or comment can be recorded any number of times.
    """

    def __init__(self, store: DocumentStore, now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._now = now
        self._user_locks = KeyedLocks()

    def record_post_value(self, post: PostDocument, value_score: ValueScore, claims: List[Claim]) -> bool:
        """
        Record a post's value for its author.

        Returns:
            True if a new ledger row was written
        """
        domain = ledger_domain(dominant_domain(claim.domain for claim in claims) or post.topic)
        written = self.store.add_contribution(ContributionRecord(
            user_id=post.author_id,
            contribution_type="post",
            value=value_score.total,
            domain=domain,
            source_id=post.id,
            post_id=post.id,
            created_at=self._now(),
        ))
        if not written:
            logger.info("Post contribution already recorded", post_id=post.id, user_id=post.author_id)
            return False

        logger.info("Post contribution recorded", post_id=post.id, user_id=post.author_id, value=value_score.total)
        self.recalc_value_stats(post.author_id)
        return True

    def record_comment_value(self, comment: CommentDocument, contribution: ContributionVector,
                             domain: Optional[str] = None) -> bool:
        """Record a comment's contribution for its author."""
        written = self.store.add_contribution(ContributionRecord(
            user_id=comment.author_id,
            contribution_type="comment",
            value=contribution.total,
            domain=ledger_domain(domain),
            source_id=comment.id,
            post_id=comment.post_id,
            comment_id=comment.id,
            created_at=self._now(),
        ))
        if not written:
            logger.info("Comment contribution already recorded", comment_id=comment.id, user_id=comment.author_id)
            return False

        logger.info("Comment contribution recorded", comment_id=comment.id, user_id=comment.author_id,
                    value=contribution.total)
        self.recalc_value_stats(comment.author_id)
        return True

    def recalc_value_stats(self, user_id: str) -> Optional[ValueStats]:
        """
        Recompute a user's value stats from the ledger and store them.

        Recomputes for one user are serialized so the last write always sees
        every row committed before it.

        Returns:
            The new stats, or None if the user does not exist
        """
        with self._user_locks.hold(user_id):
            return self._recalc_value_stats(user_id)

    def _recalc_value_stats(self, user_id: str) -> Optional[ValueStats]:
        now = self._now()
        rolling = self.store.sum_contributions(user_id, since=now - ROLLING_WINDOW)
        lifetime = self.store.sum_contributions(user_id)

        stats = ValueStats(
            post_value_30d=rolling.get("post", 0.0),
            comment_value_30d=rolling.get("comment", 0.0),
            lifetime_post_value=lifetime.get("post", 0.0),
            lifetime_comment_value=lifetime.get("comment", 0.0),
            last_updated=now,
        )

        if self.store.get_user(user_id) is None:
            logger.warning("Skipping value stats for unknown user", user_id=user_id)
            return None

        self.store.update_user_fields(user_id, {"value_stats": stats})
        return stats
