"""
Tests for the ClaimExtractorAgent and the heuristic fallback.
"""

from unittest.mock import Mock

import pytest

from trustpipe.agents.claim_extractor import (
    ClaimExtractionPayload,
    ClaimExtractorAgent,
    RawClaim,
    claim_id_for,
    heuristic_claims,
    to_claim,
)
from trustpipe.agents.errors import AgentAuthenticationError, AgentProcessingError
from trustpipe.config import PipelineConfig
from trustpipe.schemas.claim import MAX_CLAIM_LENGTH

VACCINE_TEXT = "Study shows 90% of people got sick from the vaccine in 2023"


def payload(*claims: dict) -> ClaimExtractionPayload:
    return ClaimExtractionPayload(claims=[RawClaim(**claim) for claim in claims])


class TestHeuristicClaims:
    """Test the deterministic fallback extractor."""

    def test_empty_input_yields_nothing(self) -> None:
        assert heuristic_claims("post-1", "", None) == []
        assert heuristic_claims("post-1", "   ", None) == []

    def test_image_only_yields_placeholder(self) -> None:
        claims = heuristic_claims("post-1", "", "https://cdn.example.com/meme.png")

        assert len(claims) == 1
        assert claims[0].id == "post-1-heuristic-image"
        assert claims[0].risk_level == "medium"
        assert claims[0].confidence == 0.2

    def test_takes_first_three_sentences(self) -> None:
        text = ("Inflation hit 9% last year. Prices are rising everywhere! Is that true? "
                "My rent doubled since then. Ok.")
        claims = heuristic_claims("post-1", text)

        assert [claim.id for claim in claims] == ["post-1-heuristic-1", "post-1-heuristic-2", "post-1-heuristic-3"]
        assert claims[0].domain == "finance"
        assert claims[0].risk_level == "medium"
        assert claims[0].confidence == 0.35

    def test_first_person_is_experience(self) -> None:
        claims = heuristic_claims("c-1", "My doctor told me to rest for a week.")
        assert claims[0].type == "experience"
        assert claims[0].domain == "health"

    def test_short_text_is_kept_whole(self) -> None:
        claims = heuristic_claims("c-1", "Wow.")
        assert len(claims) == 1
        assert claims[0].text == "Wow."

    def test_long_sentence_is_truncated(self) -> None:
        claims = heuristic_claims("p", "a" * 500)
        assert len(claims[0].text) <= MAX_CLAIM_LENGTH


class TestClaimNormalization:
    """Test id assignment and label coercion."""

    def test_claim_id_uses_token_or_ordinal(self) -> None:
        assert claim_id_for("post-1", "vaccine-stat", 0) == "post-1-vaccine-stat"
        assert claim_id_for("post-1", None, 1) == "post-1-claim-2"
        assert claim_id_for("post-1", "  ", 0) == "post-1-claim-1"

    def test_unknown_labels_fall_back(self) -> None:
        claim = to_claim("p", RawClaim(text="x happened", type="Rumor", domain="Sports", risk_level="EXTREME",
                                       confidence="very"), 0)
        assert claim.type == "fact"
        assert claim.domain == "general"
        assert claim.risk_level == "low"
        assert claim.confidence == 0.0

    def test_labels_are_case_insensitive(self) -> None:
        claim = to_claim("p", RawClaim(text="x", type="FACT", domain="Health", risk_level="High", confidence=1.4), 0)
        assert (claim.type, claim.domain, claim.risk_level, claim.confidence) == ("fact", "health", "high", 1.0)


class TestClaimExtractorAgent:
    """Test the ClaimExtractorAgent."""

    @pytest.fixture
    def agent(self, fake_client: Mock, pipeline_config: PipelineConfig) -> ClaimExtractorAgent:
        return ClaimExtractorAgent(fake_client, pipeline_config)

    def test_empty_content_yields_no_claims(self, agent: ClaimExtractorAgent, make_post) -> None:
        assert agent.process(make_post(text="")) == []
        agent.client.generate.assert_not_called()

    def test_extracts_typed_claims(self, agent: ClaimExtractorAgent, make_post) -> None:
        agent.client.generate.return_value = payload(
            {"text": VACCINE_TEXT, "type": "fact", "domain": "health", "risk_level": "high", "confidence": 0.9}
        )

        claims = agent.process(make_post(text=VACCINE_TEXT))

        assert len(claims) == 1
        assert claims[0].id == "post-1-claim-1"
        assert (claims[0].type, claims[0].domain, claims[0].risk_level) == ("fact", "health", "high")

    def test_empty_reply_triggers_strict_retry(self, agent: ClaimExtractorAgent, make_post) -> None:
        agent.client.generate.side_effect = [
            payload({"text": ""}, {"text": "   "}),
            payload({"text": "Inflation hit 9% last year", "domain": "finance"}),
        ]

        claims = agent.process(make_post(text="Inflation hit 9% last year"))

        assert [claim.text for claim in claims] == ["Inflation hit 9% last year"]
        assert agent.client.generate.call_count == 2
        strict_prompt = agent.client.generate.call_args_list[1].args[0]
        assert "non-empty" in strict_prompt

    def test_heuristic_after_two_empty_replies(self, agent: ClaimExtractorAgent, make_post) -> None:
        agent.client.generate.return_value = payload()

        claims = agent.process(make_post(text="The city council approved the new budget yesterday."))

        assert len(claims) == 1
        assert claims[0].id == "post-1-heuristic-1"

    @pytest.mark.parametrize("error", [AgentAuthenticationError("bad key"), AgentProcessingError("garbled")])
    def test_agent_errors_use_heuristic(self, agent: ClaimExtractorAgent, make_post, error: Exception) -> None:
        agent.client.generate.side_effect = error

        claims = agent.process(make_post(text="The city council approved the new budget yesterday."))

        assert len(claims) == 1
        assert claims[0].confidence == 0.35

    def test_unavailable_agent_uses_heuristic(self, unavailable_client: Mock, pipeline_config: PipelineConfig,
                                              make_post) -> None:
        agent = ClaimExtractorAgent(unavailable_client, pipeline_config)

        claims = agent.process(make_post(text="", image_ref="https://cdn.example.com/meme.png"))

        assert [claim.id for claim in claims] == ["post-1-heuristic-image"]

    def test_quoted_post_is_included_in_prompt(self, agent: ClaimExtractorAgent, make_post) -> None:
        agent.client.generate.return_value = payload({"text": "Vaccines cause autism"})
        quoted = make_post("post-0", text="Vaccines cause autism")

        agent.process(make_post(text="This is nonsense."), quoted=quoted)

        prompt = agent.client.generate.call_args.args[0]
        assert "QUOTED POST" in prompt
        assert "Vaccines cause autism" in prompt
        assert "This is nonsense." in prompt

    def test_fallback_uses_quoted_content_when_own_is_empty(self, unavailable_client: Mock,
                                                             pipeline_config: PipelineConfig, make_post) -> None:
        agent = ClaimExtractorAgent(unavailable_client, pipeline_config)
        quoted = make_post("post-0", text="Vaccines cause autism in children.")

        claims = agent.process(make_post(text=""), quoted=quoted)

        assert claims[0].id == "post-1-heuristic-1"
        assert claims[0].text == "Vaccines cause autism in children."

    def test_image_uses_vision_client(self, fake_client: Mock, fake_vision_client: Mock,
                                      pipeline_config: PipelineConfig, make_post) -> None:
        fake_vision_client.generate_with_image.return_value = payload({"text": "Sales grew 40% in 2023"})
        agent = ClaimExtractorAgent(fake_client, pipeline_config, fake_vision_client)

        claims = agent.process(make_post(text="", image_ref="https://cdn.example.com/chart.png"))

        assert claims[0].text == "Sales grew 40% in 2023"
        prompt = fake_vision_client.generate_with_image.call_args.args[0]
        assert "only an image" in prompt
