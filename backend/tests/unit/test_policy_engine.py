"""
Tests for the policy engine.
"""

import itertools

import pytest

from trustpipe.services.policy_engine import evaluate_policy


class TestEvaluatePolicy:
    """Test evaluate_policy."""

    def test_no_claims_is_clean(self) -> None:
        decision = evaluate_policy([], [])
        assert decision.status == "clean"
        assert decision.reasons == ["No extractable claims"]
        assert not decision.escalate_to_human

    def test_all_true_is_clean(self, make_claim, make_fact_check) -> None:
        claims = [make_claim("c1", "Water boils at 100C at sea level")]
        decision = evaluate_policy(claims, [make_fact_check("c1", "true", 0.95)])
        assert decision.status == "clean"
        assert decision.reasons == ["All claims verified."]

    def test_missing_fact_check_needs_review(self, make_claim) -> None:
        decision = evaluate_policy([make_claim("c1", "Something happened")], [])
        assert decision.status == "needs_review"
        assert decision.escalate_to_human
        assert "lacks verification" in decision.reasons[0]

    @pytest.mark.parametrize("verdict", ["unknown", "mixed"])
    def test_uncertain_verdicts_need_review(self, make_claim, make_fact_check, verdict: str) -> None:
        decision = evaluate_policy([make_claim("c1", "x")], [make_fact_check("c1", verdict, 0.9)])
        assert decision.status == "needs_review"

    def test_false_with_high_confidence_blocks(self, make_claim, make_fact_check) -> None:
        claims = [make_claim("c1", "Study shows 90% of people got sick from the vaccine in 2023")]
        decision = evaluate_policy(claims, [make_fact_check("c1", "false", 0.85)])
        assert decision.status == "blocked"
        assert decision.escalate_to_human

    def test_false_with_low_confidence_is_clean(self, make_claim, make_fact_check) -> None:
        decision = evaluate_policy([make_claim("c1", "x")], [make_fact_check("c1", "false", 0.7)])
        assert decision.status == "clean"

    def test_blocking_claim_wins_in_any_order(self, make_claim, make_fact_check) -> None:
        claims = [make_claim("c1", "a"), make_claim("c2", "b"), make_claim("c3", "c"), make_claim("c4", "d")]
        checks = [
            make_fact_check("c1", "true", 0.9),
            make_fact_check("c2", "unknown", 0.3),
            make_fact_check("c3", "mixed", 0.6),
            make_fact_check("c4", "false", 0.9),
        ]
        for ordering in itertools.permutations(claims):
            assert evaluate_policy(list(ordering), checks).status == "blocked"

    def test_one_reason_per_problem_claim(self, make_claim, make_fact_check) -> None:
        claims = [make_claim("c1", "a"), make_claim("c2", "b"), make_claim("c3", "c")]
        checks = [make_fact_check("c1", "true"), make_fact_check("c2", "unknown")]
        decision = evaluate_policy(claims, checks)
        assert decision.status == "needs_review"
        assert len(decision.reasons) == 2
