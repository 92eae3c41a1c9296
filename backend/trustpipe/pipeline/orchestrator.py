"""
Pipeline orchestrator for posts and comments.

Runs risk triage, claim extraction, fact-check verification, policy evaluation,
discussion analysis and value scoring in order, persisting progress after each
step so an interrupted run resumes from what is already stored. Reposts and
quotes reuse the verification work of the post they point at.
"""

import contextvars
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from trustpipe.agents.base_agent import ClaudeClient
from trustpipe.agents.claim_extractor import ClaimExtractorAgent
from trustpipe.agents.errors import AgentAuthenticationError
from trustpipe.agents.fact_checker import FactCheckerAgent
from trustpipe.agents.risk_triage import RiskTriageAgent
from trustpipe.agents.scoring import (
    DiscussionAnalyzer,
    DiscussionQualityAgent,
    Explainer,
    ExplainerAgent,
    ValueScorer,
    ValueScoringAgent,
)
from trustpipe.config import PipelineConfig, Settings
from trustpipe.schemas.claim import Claim, FactCheck
from trustpipe.schemas.content import CommentDocument, PostDocument, has_complete_fact_check_data
from trustpipe.schemas.pipeline import SweepReport
from trustpipe.schemas.policy import PolicyDecision
from trustpipe.services.document_store import DELETE_FIELD, DocumentNotFoundError, DocumentStore
from trustpipe.services.ledger import ContributionLedger
from trustpipe.services.policy_engine import evaluate_policy
from trustpipe.services.serper_service import SerperService
from trustpipe.services.side_effects import SideEffectDispatcher
from trustpipe.services.trust_score import TrustScoreService
from trustpipe.utils.logger import bind_run_context, clear_run_context, get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

IN_FLIGHT_STATUSES = ("pending", "in_progress")


def inherited_fields(original: PostDocument) -> Dict[str, Any]:
    """Fields a repost copies from its completed original."""
    fields: Dict[str, Any] = {}
    if original.claims:
        fields["claims"] = original.claims
    if original.fact_checks:
        fields["fact_checks"] = original.fact_checks
    if original.fact_check_status:
        fields["fact_check_status"] = original.fact_check_status
    return fields


def _status_fields(status: str, now: datetime) -> Dict[str, Any]:
    if status == "completed":
        return {"processing_status": DELETE_FIELD, "processing_started_at": DELETE_FIELD}
    if status == "in_progress":
        return {"processing_status": status, "processing_started_at": now}
    return {"processing_status": status}


class PipelineOrchestrator:
    """
    Drives one pipeline run per post or comment.

    Stages that can fail on their own are wrapped so a failure leaves its field
    unset and later stages carry on with partial data. Only an unexpected error
    outside those stages marks the document failed.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: PipelineConfig,
        risk_triage: RiskTriageAgent,
        claim_extractor: ClaimExtractorAgent,
        fact_checker: FactCheckerAgent,
        value_scorer: Optional[ValueScorer] = None,
        explainer: Optional[Explainer] = None,
        discussion_analyzer: Optional[DiscussionAnalyzer] = None,
        side_effects: Optional[SideEffectDispatcher] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.risk_triage = risk_triage
        self.claim_extractor = claim_extractor
        self.fact_checker = fact_checker
        self.value_scorer = value_scorer
        self.explainer = explainer
        self.discussion_analyzer = discussion_analyzer
        self.side_effects = side_effects
        self._now = now

    @classmethod
    def from_settings(cls, settings: Settings, store: DocumentStore,
                      config: Optional[PipelineConfig] = None) -> "PipelineOrchestrator":
        """
        Wire the orchestrator and its collaborators from process settings.

        Args:
            settings: Process settings (API keys, models)
            store: Document store to read and write through
            config: Pipeline configuration; built from settings when omitted

        Returns:
            Ready-to-use orchestrator
        """
        config = config or PipelineConfig.from_settings(settings)
        text_client = ClaudeClient.text_client(settings)
        vision_client = ClaudeClient.vision_client(settings)
        search = SerperService(settings.serper_api_key)

        trust_service = TrustScoreService(store, history_limit=config.trust_history_limit)
        side_effects = SideEffectDispatcher(
            ContributionLedger(store), trust_service, inline=config.run_side_effects_inline
        )

        return cls(
            store=store,
            config=config,
            risk_triage=RiskTriageAgent(text_client, config, vision_client),
            claim_extractor=ClaimExtractorAgent(text_client, config, vision_client),
            fact_checker=FactCheckerAgent(text_client, config, vision_client, search_service=search),
            value_scorer=ValueScoringAgent(text_client, config),
            explainer=ExplainerAgent(text_client, config),
            discussion_analyzer=DiscussionQualityAgent(text_client, config),
            side_effects=side_effects,
        )

    # Entry points

    def on_post_created(self, post: PostDocument) -> PostDocument:
        """
        Handle a newly created post.

        Stores the post as pending if it is not stored yet. A repost of a
        completed original inherits at once, a repost of an in-flight original
        waits as pending, and everything else runs the full pipeline.
        """
        if self.store.get_post(post.id) is None:
            post = self.store.create_post(post)
        return self.process_post(post)

    def process_post(self, post: PostDocument) -> PostDocument:
        """
        Run the post pipeline.

        Args:
            post: Post to process; its stored state is the starting point

        Returns:
            The enriched post as stored after the run

        Raises:
            DocumentNotFoundError: If the post was never stored
        """
        if self.store.get_post(post.id) is None:
            raise DocumentNotFoundError(f"Post {post.id} not found")

        run_id = bind_run_context(post.id, "post")
        try:
            logger.info("Processing post", post_id=post.id, run_id=run_id)
            return self._process_post(post)
        except Exception as e:
            logger.error("Post pipeline failed", post_id=post.id, error=str(e))
            return self._mark_failed(post.id, self.store.update_post_fields, post)
        finally:
            clear_run_context()

    def process_comment(self, comment: CommentDocument) -> CommentDocument:
        """
        Run the comment pipeline and refresh the parent post's value.

        Args:
            comment: Stored comment to process

        Returns:
            The enriched comment as stored after the run

        Raises:
            DocumentNotFoundError: If the comment was never stored
        """
        if self.store.get_comment(comment.id) is None:
            raise DocumentNotFoundError(f"Comment {comment.id} not found")

        run_id = bind_run_context(comment.id, "comment")
        try:
            logger.info("Processing comment", comment_id=comment.id, post_id=comment.post_id, run_id=run_id)
            return self._process_comment(comment)
        except Exception as e:
            logger.error("Comment pipeline failed", comment_id=comment.id, error=str(e))
            return self._mark_failed(comment.id, self.store.update_comment_fields, comment)
        finally:
            clear_run_context()

    def sync_reposts_from_original(self, original_id: str) -> int:
        """
        Copy a completed original's verification data to its waiting reposts.

        Each repost is updated independently; one failure does not stop the rest.

        Returns:
            Number of reposts brought to completed
        """
        original = self.store.get_post(original_id)
        if original is None or not has_complete_fact_check_data(original):
            return 0

        targets = [
            repost for repost in self.store.list_reposts_of(original_id)
            if repost.processing_status == "pending" or not has_complete_fact_check_data(repost)
        ]
        if not targets:
            return 0

        logger.info("Syncing reposts from original", original_id=original_id, count=len(targets))

        synced = 0
        workers = min(self.config.sweep_max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="repost-sync") as executor:
            futures = {
                executor.submit(contextvars.copy_context().run, self._inherit, repost.id, original): repost.id
                for repost in targets
            }
            for future, repost_id in futures.items():
                try:
                    future.result()
                    synced += 1
                except Exception as e:
                    logger.error("Repost sync failed", repost_id=repost_id, original_id=original_id, error=str(e))

        logger.info("Repost sync complete", original_id=original_id, synced=synced, total=len(targets))
        return synced

    def run_sweep(self, limit: Optional[int] = None) -> SweepReport:
        """
        Reprocess posts and comments stuck outside the completed state.

        Picks up pending reposts whose original has completed or no longer
        exists, pending posts
        older than the stale window, failed posts and comments, and
        in_progress posts started longer ago than the stale window.

        Args:
            limit: Maximum documents taken from each query

        Returns:
            SweepReport with processed, skipped and failed counts
        """
        limit = limit or self.config.sweep_batch_size
        stale_before = self._now() - timedelta(minutes=self.config.stale_after_minutes)
        report = SweepReport()

        jobs: Dict[str, Tuple[str, Any]] = {}

        for post in self.store.query_posts("processing_status", "==", "pending", limit=limit).items:
            if post.repost_of_id:
                original = self.store.get_post(post.repost_of_id)
                # A missing original is handled by process_post as a new post
                if original is not None and not has_complete_fact_check_data(original):
                    report.skipped += 1
                    continue
            elif post.created_at is None or post.created_at >= stale_before:
                report.skipped += 1
                continue
            jobs[post.id] = ("post", post)

        for post in self.store.query_posts("processing_status", "==", "failed", limit=limit).items:
            jobs.setdefault(post.id, ("post", post))

        stale = self.store.query_posts("processing_started_at", "<", stale_before,
                                       equals={"processing_status": "in_progress"}, limit=limit)
        for post in stale.items:
            jobs.setdefault(post.id, ("post", post))

        for comment in self.store.list_comments_by_status("failed", limit=limit):
            jobs.setdefault(comment.id, ("comment", comment))

        if not jobs:
            logger.info("Sweep found nothing to process", skipped=report.skipped)
            return report

        logger.info("Sweep started", candidates=len(jobs), skipped=report.skipped)

        workers = min(self.config.sweep_max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweep") as executor:
            futures = {
                executor.submit(contextvars.copy_context().run, self._sweep_one, kind, doc): doc_id
                for doc_id, (kind, doc) in jobs.items()
            }
            for future, doc_id in futures.items():
                try:
                    status = future.result()
                except Exception as e:
                    logger.error("Sweep item failed", content_id=doc_id, error=str(e))
                    status = "failed"
                if status == "failed":
                    report.failed += 1
                    report.failed_ids.append(doc_id)
                else:
                    report.processed += 1

        logger.info("Sweep complete", processed=report.processed, skipped=report.skipped, failed=report.failed)
        return report

    # Post pipeline

    def _process_post(self, post: PostDocument) -> PostDocument:
        original: Optional[PostDocument] = None
        if post.repost_of_id:
            shortcut, original = self._resolve_repost(post)
            if shortcut is not None:
                return shortcut

        current = self._save_post(post.id, {}, "in_progress")

        subject = current
        if original is not None and not current.has_content:
            subject = current.model_copy(update={"text": original.text, "image_ref": original.image_ref})

        claims: List[Claim] = list(current.claims or [])
        fact_checks: List[FactCheck] = list(current.fact_checks or [])

        # Step 1: triage, skipped when claims are already stored
        needs_verification = True
        if not claims:
            precheck = self._safe_execute("risk triage", lambda: self.risk_triage.process(subject))
            if precheck is not None:
                needs_verification = precheck.needs_fact_check
                logger.info("Risk triage result",
                            needs_fact_check=precheck.needs_fact_check,
                            risk_level=precheck.risk_level,
                            risk_score=precheck.risk_score,
                            used_llm=precheck.used_llm)

        if not needs_verification:
            current = self._save_post(post.id, {"fact_check_status": "clean"}, "in_progress")

        # Step 2: claims, plus verdict reuse for quotes of completed posts
        quoted: Optional[PostDocument] = None
        own_claims: List[Claim] = []
        if needs_verification and not claims:
            if current.quote_of_id:
                quoted = self._safe_execute("quoted post lookup", lambda: self.store.get_post(current.quote_of_id))

            if quoted is not None and has_complete_fact_check_data(quoted):
                own_claims = self._safe_execute("claim extraction",
                                                lambda: self.claim_extractor.process(subject)) or []
                claims = own_claims + list(quoted.claims or [])
            else:
                claims = self._safe_execute("claim extraction",
                                            lambda: self.claim_extractor.process(subject, quoted)) or []
                quoted = None

            if claims:
                current = self._save_post(post.id, {"claims": claims}, "in_progress")

        # Step 3: verify only claims without a stored fact check
        if needs_verification and claims:
            checked = {fc.claim_id for fc in fact_checks}
            missing = [claim for claim in claims if claim.id not in checked]
            if missing:
                if quoted is not None:
                    new_checks = self._safe_execute("fact check", lambda: self.fact_checker.process_with_reuse(
                        subject, own_claims, list(quoted.claims or []), list(quoted.fact_checks or [])))
                else:
                    new_checks = self._safe_execute("fact check",
                                                    lambda: self.fact_checker.process(subject, missing))
                if new_checks:
                    known = {fc.claim_id for fc in fact_checks}
                    fact_checks = fact_checks + [fc for fc in new_checks if fc.claim_id not in known]
                    current = self._save_post(post.id, {"fact_checks": fact_checks}, "in_progress")
            else:
                logger.info("Reusing stored fact checks", count=len(fact_checks))

        # Step 4: discussion
        discussion = None
        if self.discussion_analyzer is not None:
            comments = self._safe_execute("comment lookup", lambda: self.store.list_comments_for_post(post.id))
            if comments:
                discussion = self._safe_execute("discussion analysis",
                                                lambda: self.discussion_analyzer.analyze(current, comments))
        thread_quality = discussion.thread_quality if discussion is not None else None

        # Step 5: policy
        policy = evaluate_policy(claims, fact_checks)
        current = self._save_post(post.id, {"fact_check_status": policy.status}, "in_progress")
        logger.info("Policy decision", status=policy.status, escalate=policy.escalate_to_human)

        # Step 6: value and explanation
        value_score = None
        explanation = None
        if self.value_scorer is not None and not self.config.skip_value_scoring:
            value_score = self._safe_execute("value scoring", lambda: self.value_scorer.score(
                current, claims, fact_checks, discussion))
            if value_score is not None and self.explainer is not None:
                explanation = self._safe_execute("explanation", lambda: self.explainer.explain(
                    current, value_score, claims, fact_checks, thread_quality))

        final = self._save_post(post.id, {
            "value_score": value_score,
            "value_explanation": explanation,
            "discussion_quality": thread_quality,
        }, "completed")
        logger.info("Post pipeline complete",
                    claims=len(claims),
                    fact_checks=len(fact_checks),
                    fact_check_status=final.fact_check_status)

        if not final.repost_of_id:
            self._safe_execute("repost sync", lambda: self.sync_reposts_from_original(post.id))

        if self.side_effects is not None:
            self._safe_execute("side effect dispatch", lambda: self.side_effects.dispatch_post_effects(
                final, claims, fact_checks, policy, value_score, thread_quality))

        return final

    def _resolve_repost(self, post: PostDocument) -> Tuple[Optional[PostDocument], Optional[PostDocument]]:
        """
        Decide how a repost is handled.

        Returns:
            (finished document or None, original or None). A finished document
            ends the run; otherwise the repost goes through the pipeline.
        """
        original = self.store.get_post(post.repost_of_id)

        if original is None:
            if post.claims:
                logger.warning("Original missing, keeping inherited data", original_id=post.repost_of_id)
                return self._save_post(post.id, {}, "completed"), None
            logger.warning("Original missing, processing repost as a new post", original_id=post.repost_of_id)
            return None, None

        if has_complete_fact_check_data(original):
            logger.info("Inheriting fact checks from original", original_id=original.id)
            return self._inherit(post.id, original), original

        if original.processing_status in IN_FLIGHT_STATUSES:
            logger.info("Original still processing, repost left pending",
                        original_id=original.id, original_status=original.processing_status)
            return self._save_post(post.id, {}, "pending"), original

        logger.info("Original incomplete, processing repost independently",
                    original_id=original.id, original_status=original.processing_status)
        return None, original

    def _inherit(self, repost_id: str, original: PostDocument) -> PostDocument:
        return self._save_post(repost_id, inherited_fields(original), "completed")

    # Comment pipeline

    def _process_comment(self, comment: CommentDocument) -> CommentDocument:
        post = self.store.get_post(comment.post_id)
        if post is None:
            raise DocumentNotFoundError(f"Post {comment.post_id} not found for comment {comment.id}")

        current = self._save_comment(comment.id, {}, "in_progress")
        claims: List[Claim] = list(current.claims or [])
        fact_checks: List[FactCheck] = list(current.fact_checks or [])

        needs_verification = True
        if not claims:
            precheck = self._safe_execute("risk triage", lambda: self.risk_triage.process(current))
            if precheck is not None:
                needs_verification = precheck.needs_fact_check

        if not needs_verification:
            current = self._save_comment(comment.id, {"fact_check_status": "clean"}, "in_progress")
        elif not claims:
            claims = self._safe_execute("claim extraction", lambda: self.claim_extractor.process(current)) or []
            if claims:
                current = self._save_comment(comment.id, {"claims": claims}, "in_progress")

        if needs_verification and claims:
            checked = {fc.claim_id for fc in fact_checks}
            missing = [claim for claim in claims if claim.id not in checked]
            if missing:
                new_checks = self._safe_execute("fact check", lambda: self.fact_checker.process(current, missing))
                if new_checks:
                    fact_checks = fact_checks + new_checks
                    current = self._save_comment(comment.id, {"fact_checks": fact_checks}, "in_progress")

        policy = evaluate_policy(claims, fact_checks)
        current = self._save_comment(comment.id, {"fact_check_status": policy.status}, "in_progress")

        # Thread analysis attributes a role and contribution to this comment
        discussion = None
        if self.discussion_analyzer is not None:
            comments = self._safe_execute("comment lookup", lambda: self.store.list_comments_for_post(post.id))
            if comments:
                discussion = self._safe_execute("discussion analysis",
                                                lambda: self.discussion_analyzer.analyze(post, comments))
        thread_quality = discussion.thread_quality if discussion is not None else None
        insight = discussion.comment_insights.get(comment.id) if discussion is not None else None

        comment_fields: Dict[str, Any] = {}
        if insight is not None:
            comment_fields = {"discussion_role": insight.role, "value_contribution": insight.contribution}

        post_value = self._refresh_parent_value(post, claims, fact_checks, discussion, thread_quality)

        final = self._save_comment(comment.id, comment_fields, "completed")
        logger.info("Comment pipeline complete",
                    claims=len(claims),
                    fact_check_status=final.fact_check_status,
                    role=final.discussion_role)

        if self.side_effects is not None:
            self._safe_execute("side effect dispatch", lambda: self.side_effects.dispatch_comment_effects(
                final,
                insight.contribution if insight is not None else None,
                post.topic,
                policy,
                fact_checks,
                post,
                post_value,
                thread_quality,
            ))

        return final

    def _refresh_parent_value(self, post: PostDocument, comment_claims: List[Claim],
                              comment_fact_checks: List[FactCheck], discussion, thread_quality):
        """Rescore the parent post with the thread's claims and discussion."""
        value_score = None
        explanation = None
        if self.value_scorer is not None and not self.config.skip_value_scoring:
            all_claims = list(post.claims or []) + comment_claims
            all_checks = list(post.fact_checks or []) + comment_fact_checks
            value_score = self._safe_execute("parent value scoring", lambda: self.value_scorer.score(
                post, all_claims, all_checks, discussion))
            if value_score is not None and self.explainer is not None:
                explanation = self._safe_execute("parent explanation", lambda: self.explainer.explain(
                    post, value_score, all_claims, all_checks, thread_quality))

        updates = {
            "value_score": value_score,
            "value_explanation": explanation,
            "discussion_quality": thread_quality,
        }
        if any(value is not None for value in updates.values()):
            self._safe_execute("parent post update", lambda: self.store.update_post_fields(post.id, updates))
        return value_score

    # Helpers

    def _sweep_one(self, kind: str, doc: Any) -> Optional[str]:
        if kind == "comment":
            return self.process_comment(doc).processing_status
        return self.process_post(doc).processing_status

    def _save_post(self, post_id: str, fields: Dict[str, Any], status: str) -> PostDocument:
        return self.store.update_post_fields(post_id, {**fields, **_status_fields(status, self._now())})

    def _save_comment(self, comment_id: str, fields: Dict[str, Any], status: str) -> CommentDocument:
        return self.store.update_comment_fields(comment_id, {**fields, **_status_fields(status, self._now())})

    def _mark_failed(self, doc_id: str, update: Callable[[str, Dict[str, Any]], Any], doc: Any) -> Any:
        try:
            return update(doc_id, _status_fields("failed", self._now()))
        except Exception as e:
            logger.error("Could not mark document failed", content_id=doc_id, error=str(e))
            return doc.model_copy(update={"processing_status": "failed"})

    def _safe_execute(self, label: str, fn: Callable[[], Any]) -> Any:
        """Run one stage, logging and returning None on failure."""
        try:
            return fn()
        except AgentAuthenticationError as e:
            logger.critical(f"Stage {label} failed on authentication", stage=label, auth_error=True, error=str(e))
        except Exception as e:
            logger.error(f"Stage {label} failed", stage=label, error=str(e))
        return None
