"""
End-to-end tests for the PipelineOrchestrator with scripted agent replies.
"""

from datetime import timedelta
from typing import Any, Dict
from unittest.mock import Mock, patch

import pytest

from trustpipe.agents.claim_extractor import ClaimExtractionPayload, ClaimExtractorAgent, RawClaim
from trustpipe.agents.fact_checker import FactCheckerAgent, FactCheckPayload
from trustpipe.agents.risk_triage import PreCheckPayload, RiskTriageAgent
from trustpipe.agents.scoring import (
    CommentInsightPayload,
    DiscussionPayload,
    DiscussionQualityAgent,
    ExplainerAgent,
    ExplanationPayload,
    ThreadQualityPayload,
    ValueDimensions,
    ValuePayload,
    ValueScoringAgent,
)
from trustpipe.config import PipelineConfig
from trustpipe.pipeline.orchestrator import PipelineOrchestrator
from trustpipe.schemas.content import UserDocument
from trustpipe.services.document_store import DocumentNotFoundError, DocumentStore
from trustpipe.services.ledger import ContributionLedger
from trustpipe.services.side_effects import SideEffectDispatcher
from trustpipe.services.trust_score import TrustScoreService
from trustpipe.utils.timeutil import utcnow

VACCINE_TEXT = "Study shows 90% of people got sick from the vaccine in 2023"
OPINION_TEXT = "I think the new policy is great"


@pytest.fixture
def replies() -> Dict[str, Any]:
    """Agent replies keyed by output schema name."""
    return {
        "PreCheckPayload": PreCheckPayload(needs_fact_check=True, confidence=0.9, reasoning="Factual"),
        "ClaimExtractionPayload": ClaimExtractionPayload(claims=[RawClaim(
            text=VACCINE_TEXT, type="fact", domain="health", risk_level="high", confidence=0.9,
        )]),
        "FactCheckPayload": FactCheckPayload(
            verdict="false",
            confidence=0.85,
            evidence=[{"source": "CDC", "url": "https://www.cdc.gov/vaccine-safety", "snippet": "No such study"}],
        ),
        "ValuePayload": ValuePayload(
            scores=ValueDimensions(epistemic=0.8, insight=0.6, practical=0.5, relational=0.5, effort=0.4),
            confidence=0.7,
            drivers=["Clear statement"],
        ),
        "ExplanationPayload": ExplanationPayload(summary="Your post is clear but cites a debunked study."),
        "DiscussionPayload": DiscussionPayload(
            thread_quality=ThreadQualityPayload(informativeness=0.8, civility=0.9, reasoning_depth=0.6,
                                                cross_perspective=0.5, summary="Constructive thread"),
            comment_insights=[CommentInsightPayload(comment_id="comment-1", role="evidence", epistemic=0.9,
                                                    insight=0.7, practical=0.4, relational=0.6, effort=0.8)],
        ),
    }


@pytest.fixture
def scripted_client(fake_client: Mock, replies: Dict[str, Any]) -> Mock:
    def generate(prompt, system_prompt, output_schema):
        reply = replies[output_schema.__name__]
        if isinstance(reply, Exception):
            raise reply
        return reply

    fake_client.generate.side_effect = generate
    return fake_client


def schemas_called(client: Mock) -> list:
    return [call.args[2].__name__ for call in client.generate.call_args_list]


@pytest.fixture
def orchestrator(store: DocumentStore, scripted_client: Mock, pipeline_config: PipelineConfig) -> PipelineOrchestrator:
    for user_id in ("user-1", "user-2", "user-3"):
        store.create_user(UserDocument(id=user_id))

    side_effects = SideEffectDispatcher(
        ContributionLedger(store), TrustScoreService(store), inline=pipeline_config.run_side_effects_inline
    )
    return PipelineOrchestrator(
        store=store,
        config=pipeline_config,
        risk_triage=RiskTriageAgent(scripted_client, pipeline_config),
        claim_extractor=ClaimExtractorAgent(scripted_client, pipeline_config),
        fact_checker=FactCheckerAgent(scripted_client, pipeline_config),
        value_scorer=ValueScoringAgent(scripted_client, pipeline_config),
        explainer=ExplainerAgent(scripted_client, pipeline_config),
        discussion_analyzer=DiscussionQualityAgent(scripted_client, pipeline_config),
        side_effects=side_effects,
    )


class TestPostPipeline:
    """Test process_post and on_post_created for plain posts."""

    def test_opinion_skips_fact_check(self, orchestrator: PipelineOrchestrator, scripted_client: Mock,
                                      make_post) -> None:
        result = orchestrator.on_post_created(make_post(text=OPINION_TEXT))

        assert result.processing_status is None
        assert result.processing_started_at is None
        assert result.fact_check_status == "clean"
        assert result.claims is None
        assert "ClaimExtractionPayload" not in schemas_called(scripted_client)
        assert "FactCheckPayload" not in schemas_called(scripted_client)
        assert result.value_score is not None

    def test_false_high_risk_claim_blocks(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                          make_post) -> None:
        result = orchestrator.on_post_created(make_post(text=VACCINE_TEXT))

        assert result.processing_status is None
        assert len(result.claims) == 1
        claim = result.claims[0]
        assert (claim.type, claim.domain, claim.risk_level) == ("fact", "health", "high")
        assert result.fact_checks[0].verdict == "false"
        assert result.fact_checks[0].evidence[0].url == "https://www.cdc.gov/vaccine-safety"
        assert result.fact_check_status == "blocked"
        # False verdict caps the epistemic dimension
        assert result.value_score.epistemic <= 0.1
        assert result.value_explanation == "Your post is clear but cites a debunked study."
        assert store.get_post("post-1") == result

    def test_side_effects_update_ledger_and_trust(self, orchestrator: PipelineOrchestrator,
                                                  store: DocumentStore, make_post) -> None:
        orchestrator.on_post_created(make_post(text=OPINION_TEXT))

        rows = store.list_contributions("user-1")
        assert [row.source_id for row in rows] == ["post-1"]
        user = store.get_user("user-1")
        assert user.value_stats.post_value_30d == pytest.approx(rows[0].value)
        assert user.trust_score.history[0].reason == "post_value_update"

    def test_failed_side_effects_do_not_fail_pipeline(self, orchestrator: PipelineOrchestrator,
                                                      make_post) -> None:
        with patch.object(orchestrator.side_effects.ledger, "record_post_value",
                          side_effect=RuntimeError("ledger down")):
            result = orchestrator.on_post_created(make_post(text=OPINION_TEXT))

        assert result.processing_status is None

    def test_stage_failure_leaves_field_absent(self, orchestrator: PipelineOrchestrator,
                                               replies: Dict[str, Any], make_post) -> None:
        replies["ValuePayload"] = RuntimeError("scorer crashed")

        with patch.object(orchestrator.fact_checker, "process", side_effect=RuntimeError("pool exploded")):
            result = orchestrator.on_post_created(make_post(text=VACCINE_TEXT))

        assert result.processing_status is None
        assert len(result.claims) == 1
        assert result.fact_checks is None
        assert result.fact_check_status == "needs_review"
        assert result.value_score is None

    def test_unexpected_error_marks_failed(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                           make_post) -> None:
        with patch("trustpipe.pipeline.orchestrator.evaluate_policy", side_effect=RuntimeError("boom")):
            result = orchestrator.on_post_created(make_post(text=VACCINE_TEXT))

        assert result.processing_status == "failed"
        stored = store.get_post("post-1")
        assert stored.processing_status == "failed"
        # Progress made before the failure is kept
        assert len(stored.claims) == 1

    def test_resume_verifies_only_unchecked_claims(self, orchestrator: PipelineOrchestrator,
                                                   store: DocumentStore, scripted_client: Mock,
                                                   make_post, make_claim, make_fact_check) -> None:
        claims = [make_claim("post-1-claim-1", "Inflation hit 9% last year"),
                  make_claim("post-1-claim-2", "The vaccine was approved in 2020")]
        store.create_post(make_post(text="Inflation hit 9% last year. The vaccine was approved in 2020.",
                                    claims=claims, fact_checks=[make_fact_check("post-1-claim-1", "true")]),
                          initial_status="in_progress")

        result = orchestrator.process_post(store.get_post("post-1"))

        called = schemas_called(scripted_client)
        assert "PreCheckPayload" not in called
        assert "ClaimExtractionPayload" not in called
        assert called.count("FactCheckPayload") == 1
        assert [fc.claim_id for fc in result.fact_checks] == ["post-1-claim-1", "post-1-claim-2"]
        assert [claim.id for claim in result.claims] == ["post-1-claim-1", "post-1-claim-2"]

    def test_missing_post_raises(self, orchestrator: PipelineOrchestrator, make_post) -> None:
        with pytest.raises(DocumentNotFoundError):
            orchestrator.process_post(make_post("never-stored"))


class TestReposts:
    """Test repost inheritance and syncing."""

    def test_repost_of_completed_post_inherits_without_agent_calls(
            self, orchestrator: PipelineOrchestrator, scripted_client: Mock, make_post) -> None:
        original = orchestrator.on_post_created(make_post(text=VACCINE_TEXT))
        scripted_client.generate.reset_mock()

        repost = orchestrator.on_post_created(make_post("repost-1", repost_of_id="post-1", author_id="user-3"))

        assert repost.processing_status is None
        assert repost.claims == original.claims
        assert repost.fact_checks == original.fact_checks
        assert repost.fact_check_status == "blocked"
        scripted_client.generate.assert_not_called()

    def test_repost_of_pending_post_waits_then_syncs(self, orchestrator: PipelineOrchestrator,
                                                     store: DocumentStore, make_post) -> None:
        store.create_post(make_post(text=VACCINE_TEXT))

        waiting = orchestrator.on_post_created(make_post("repost-1", repost_of_id="post-1", author_id="user-3"))
        assert waiting.processing_status == "pending"
        assert waiting.claims is None

        original = orchestrator.process_post(store.get_post("post-1"))

        synced = store.get_post("repost-1")
        assert synced.processing_status is None
        assert synced.claims == original.claims
        assert synced.fact_checks == original.fact_checks
        assert synced.fact_check_status == original.fact_check_status

    def test_sync_skips_incomplete_original(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                            make_post) -> None:
        store.create_post(make_post(text=VACCINE_TEXT))
        store.create_post(make_post("repost-1", repost_of_id="post-1"))
        assert orchestrator.sync_reposts_from_original("post-1") == 0

    def test_sync_isolates_failures(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                    make_post) -> None:
        store.create_post(make_post(text="done", fact_check_status="clean"), initial_status=None)
        store.create_post(make_post("repost-1", repost_of_id="post-1"))
        store.create_post(make_post("repost-2", repost_of_id="post-1"))

        real_update = store.update_post_fields

        def flaky_update(post_id, fields):
            if post_id == "repost-1":
                raise RuntimeError("write conflict")
            return real_update(post_id, fields)

        with patch.object(store, "update_post_fields", side_effect=flaky_update):
            assert orchestrator.sync_reposts_from_original("post-1") == 1

        assert store.get_post("repost-2").processing_status is None
        assert store.get_post("repost-1").processing_status == "pending"

    def test_repost_of_failed_original_is_processed_independently(
            self, orchestrator: PipelineOrchestrator, store: DocumentStore, scripted_client: Mock,
            make_post) -> None:
        store.create_post(make_post(text=VACCINE_TEXT), initial_status="failed")

        repost = orchestrator.on_post_created(make_post("repost-1", repost_of_id="post-1", author_id="user-3"))

        assert repost.processing_status is None
        assert repost.claims[0].id == "repost-1-claim-1"
        assert "ClaimExtractionPayload" in schemas_called(scripted_client)


class TestQuotes:
    """Test verdict reuse for quoting posts."""

    def test_quote_reuses_matching_verdict(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                           scripted_client: Mock, replies: Dict[str, Any],
                                           make_post, make_claim, make_fact_check) -> None:
        store.create_post(make_post(
            "post-0",
            text="Vaccines cause autism",
            claims=[make_claim("post-0-claim-1", "Vaccines cause autism", domain="health")],
            fact_checks=[make_fact_check("post-0-claim-1", "false", 0.9)],
            fact_check_status="blocked",
        ), initial_status=None)
        replies["ClaimExtractionPayload"] = ClaimExtractionPayload(claims=[RawClaim(
            text="vaccines cause autism", type="fact", domain="health", confidence=0.8,
        )])

        result = orchestrator.on_post_created(make_post(
            text="Vaccines cause autism. Everyone needs to hear this.", quote_of_id="post-0",
        ))

        assert [claim.id for claim in result.claims] == ["post-1-claim-1", "post-0-claim-1"]
        own_check = result.fact_checks[0]
        assert own_check.claim_id == "post-1-claim-1"
        assert (own_check.verdict, own_check.confidence) == ("false", 0.9)
        assert result.fact_check_status == "blocked"
        assert "FactCheckPayload" not in schemas_called(scripted_client)


class TestCommentPipeline:
    """Test process_comment."""

    def test_comment_enriches_comment_and_parent(self, orchestrator: PipelineOrchestrator,
                                                 store: DocumentStore, make_post, make_comment) -> None:
        store.create_post(make_post(text="What do people think about the new vaccine data?"))
        comment = store.create_comment(make_comment(text=VACCINE_TEXT))

        result = orchestrator.process_comment(comment)

        assert result.processing_status is None
        assert result.claims[0].id == "comment-1-claim-1"
        assert result.fact_check_status == "blocked"
        assert result.discussion_role == "evidence"
        assert result.value_contribution.epistemic == 0.9

        post = store.get_post("post-1")
        assert post.value_score is not None
        assert post.discussion_quality.summary == "Constructive thread"

        assert [row.source_id for row in store.list_contributions("user-2")] == ["comment-1"]
        assert store.get_user("user-2").trust_score.history[0].reason == "comment_value_update"
        assert store.get_user("user-1").trust_score.history[0].reason == "discussion_update"

    def test_comment_failure_marks_failed(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                          make_post, make_comment) -> None:
        store.create_post(make_post())
        comment = store.create_comment(make_comment(text=VACCINE_TEXT))

        with patch("trustpipe.pipeline.orchestrator.evaluate_policy", side_effect=RuntimeError("boom")):
            result = orchestrator.process_comment(comment)

        assert result.processing_status == "failed"
        assert store.get_comment("comment-1").processing_status == "failed"


class TestSweep:
    """Test run_sweep."""

    def test_sweep_reprocesses_stuck_posts(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                           make_post) -> None:
        store.create_post(make_post("orig-done", text="done", fact_check_status="clean"), initial_status=None)
        store.create_post(make_post("repost-ready", repost_of_id="orig-done"))
        store.create_post(make_post("orig-pending", text=VACCINE_TEXT))
        store.create_post(make_post("repost-waiting", repost_of_id="orig-pending"))
        store.create_post(make_post("failed-post", text=OPINION_TEXT), initial_status="failed")
        store.create_post(make_post("stale-post", text=OPINION_TEXT), initial_status="in_progress")
        store.update_post_fields("stale-post", {"processing_started_at": utcnow() - timedelta(hours=1)})

        report = orchestrator.run_sweep()

        assert (report.processed, report.skipped, report.failed) == (3, 2, 0)
        for post_id in ("repost-ready", "failed-post", "stale-post"):
            assert store.get_post(post_id).processing_status is None
        assert store.get_post("repost-waiting").processing_status == "pending"
        assert store.get_post("orig-pending").processing_status == "pending"

    def test_sweep_retries_failed_comments(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                           make_post, make_comment) -> None:
        store.create_post(make_post(), initial_status=None)
        store.create_comment(make_comment(text=OPINION_TEXT), initial_status="failed")

        report = orchestrator.run_sweep()

        assert report.processed == 1
        assert store.get_comment("comment-1").processing_status is None

    def test_sweep_counts_failures(self, orchestrator: PipelineOrchestrator, store: DocumentStore,
                                   make_post) -> None:
        store.create_post(make_post(text=OPINION_TEXT), initial_status="failed")

        with patch("trustpipe.pipeline.orchestrator.evaluate_policy", side_effect=RuntimeError("boom")):
            report = orchestrator.run_sweep()

        assert report.failed == 1
        assert report.failed_ids == ["post-1"]

    def test_sweep_processes_repost_of_deleted_original(self, orchestrator: PipelineOrchestrator,
                                                        store: DocumentStore, make_post) -> None:
        store.create_post(make_post("repost-1", repost_of_id="deleted-post", author_id="user-3"))

        report = orchestrator.run_sweep()

        assert (report.processed, report.skipped) == (1, 0)
        repost = store.get_post("repost-1")
        assert repost.processing_status is None
        assert repost.fact_check_status == "clean"

    def test_empty_sweep(self, orchestrator: PipelineOrchestrator) -> None:
        report = orchestrator.run_sweep()
        assert (report.processed, report.skipped, report.failed) == (0, 0, 0)
