"""
Side effects that follow a scored pipeline result: ledger writes and trust
score recomputation. They never affect the pipeline's return value; every
failure is logged and dropped.
"""

import contextvars
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from trustpipe.schemas.claim import Claim, FactCheck
from trustpipe.schemas.content import CommentDocument, PostDocument
from trustpipe.schemas.policy import PolicyDecision
from trustpipe.schemas.value import ContributionVector, DiscussionQuality, ValueScore
from trustpipe.services.ledger import ContributionLedger
from trustpipe.services.trust_score import TrustScoreService, TrustSignal
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)

Step = Tuple[str, Callable[[], object]]


class SideEffectDispatcher:
    """
    Runs post-pipeline side effects on a small thread pool, or inline.

    Steps of one dispatch run in order inside a single task, each isolated so a
    failing ledger write does not stop the trust update.
    """

    def __init__(self, ledger: ContributionLedger, trust_service: TrustScoreService,
                 inline: bool = False, max_workers: int = 2) -> None:
        self.ledger = ledger
        self.trust_service = trust_service
        self.inline = inline
        self._executor: Optional[ThreadPoolExecutor] = None
        if not inline:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="side-effects")

    def dispatch(self, content_id: str, steps: List[Step]) -> List[Future]:
        """
        Run a sequence of side-effect steps.

        Args:
            content_id: Post or comment the steps belong to, for logs
            steps: (name, callable) pairs

        Returns:
            Futures callers may wait on; they never raise
        """
        if not steps:
            return []

        if self.inline:
            future: Future = Future()
            future.set_result(self._run_steps(content_id, steps))
            return [future]

        return [self._executor.submit(contextvars.copy_context().run, self._run_steps, content_id, steps)]

    def dispatch_post_effects(self, post: PostDocument, claims: List[Claim], fact_checks: List[FactCheck],
                              policy: Optional[PolicyDecision], value_score: Optional[ValueScore],
                              discussion: Optional[DiscussionQuality] = None) -> List[Future]:
        """Queue the ledger write and trust update for a processed post."""
        steps: List[Step] = []
        if value_score is not None:
            steps.append(("record_post_value", lambda: self.ledger.record_post_value(post, value_score, claims)))

        if value_score is not None or policy is not None or fact_checks:
            signal = TrustSignal(
                value_score=value_score,
                policy_decision=policy,
                discussion_quality=discussion,
                fact_checks=fact_checks or None,
                reason="post_value_update",
            )
            steps.append(("update_trust_score", lambda: self.trust_service.update(post.author_id, signal)))

        return self.dispatch(post.id, steps)

    def dispatch_comment_effects(self, comment: CommentDocument, contribution: Optional[ContributionVector],
                                 domain: Optional[str], policy: Optional[PolicyDecision],
                                 fact_checks: List[FactCheck], post: Optional[PostDocument],
                                 post_value_score: Optional[ValueScore],
                                 discussion: Optional[DiscussionQuality]) -> List[Future]:
        """Queue the comment's ledger write and trust updates for both authors."""
        steps: List[Step] = []
        if contribution is not None:
            steps.append(("record_comment_value",
                          lambda: self.ledger.record_comment_value(comment, contribution, domain)))

        comment_signal = TrustSignal(
            value_score=ValueScore.from_contribution(contribution) if contribution is not None else None,
            policy_decision=policy,
            fact_checks=fact_checks or None,
            reason="comment_value_update",
        )
        if not comment_signal.is_empty():
            steps.append(("update_commenter_trust",
                          lambda: self.trust_service.update(comment.author_id, comment_signal)))

        if post is not None and (post_value_score is not None or discussion is not None):
            post_signal = TrustSignal(value_score=post_value_score, discussion_quality=discussion,
                                      reason="discussion_update")
            steps.append(("update_post_author_trust",
                          lambda: self.trust_service.update(post.author_id, post_signal)))

        return self.dispatch(comment.id, steps)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _run_steps(self, content_id: str, steps: List[Step]) -> int:
        failures = 0
        for name, step in steps:
            try:
                step()
            except Exception as e:
                failures += 1
                logger.error("Side effect failed", content_id=content_id, side_effect=name, error=str(e))
        logger.info("Side effects processed", content_id=content_id, steps=len(steps), failures=failures)
        return failures
