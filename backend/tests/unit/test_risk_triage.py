"""
Tests for the RiskTriageAgent and its heuristic score.
"""

from unittest.mock import Mock

import pytest

from trustpipe.agents.errors import AgentAuthenticationError, AgentProcessingError
from trustpipe.agents.risk_triage import (
    PreCheckPayload,
    RiskTriageAgent,
    calculate_risk_score,
    detect_signals,
    risk_level_for,
)
from trustpipe.config import PipelineConfig

MIDDLE_BAND_TEXT = "The new bridge downtown opened to traffic in 2021 after delays."


class TestRiskScore:
    """Test the deterministic heuristic."""

    def test_statistical_health_claim_is_high_risk(self) -> None:
        score = calculate_risk_score("Study shows 90% of people got sick from the vaccine in 2023")
        assert score == pytest.approx(0.75)
        assert risk_level_for(score) == "high"

    def test_short_opinion_is_low_risk(self) -> None:
        score = calculate_risk_score("I think the new policy is great")
        assert score == pytest.approx(0.15)
        assert risk_level_for(score) == "low"

    def test_topic_and_entities_raise_score(self) -> None:
        plain = calculate_risk_score(MIDDLE_BAND_TEXT)
        with_topic = calculate_risk_score(MIDDLE_BAND_TEXT, topic="Finance", entities=["Election Board"])
        assert with_topic == pytest.approx(plain + 0.35 + 0.15)

    def test_score_is_clamped(self) -> None:
        text = ("According to doctors, a study shows 75% of covid vaccine patients saw guaranteed returns "
                "on investment in 2022, and scientists say billions were lost. ") * 3
        assert calculate_risk_score(text, topic="health", semantic_topics=["finance"],
                                    entities=["politics"], image_ref="img.png") == 1.0

    def test_signals(self) -> None:
        signals = detect_signals("I think 40% of voters will vote", topic="politics", image_ref="x.png")
        assert {"stats_or_numbers", "high_risk_keywords", "high_risk_topic", "has_image",
                "opinion_marker"} <= set(signals)


class TestRiskTriageAgent:
    """Test the RiskTriageAgent decisions."""

    @pytest.fixture
    def agent(self, fake_client: Mock, pipeline_config: PipelineConfig) -> RiskTriageAgent:
        return RiskTriageAgent(fake_client, pipeline_config)

    def test_empty_content_is_skipped(self, agent: RiskTriageAgent, make_post) -> None:
        result = agent.process(make_post(text="   "))

        assert not result.needs_fact_check
        assert result.confidence == 1.0
        agent.client.generate.assert_not_called()

    def test_opinion_is_skipped_without_llm(self, agent: RiskTriageAgent, make_post) -> None:
        result = agent.process(make_post(text="I think the new policy is great"))

        assert not result.needs_fact_check
        assert result.risk_level == "low"
        assert result.content_type == "opinion"
        assert not result.used_llm
        agent.client.generate.assert_not_called()

    def test_high_risk_is_verified_without_llm(self, agent: RiskTriageAgent, make_post) -> None:
        result = agent.process(make_post(text="Study shows 90% of people got sick from the vaccine in 2023"))

        assert result.needs_fact_check
        assert result.risk_level == "high"
        assert result.content_type == "factual"
        agent.client.generate.assert_not_called()

    def test_middle_band_uses_llm_decision(self, agent: RiskTriageAgent, make_post) -> None:
        agent.client.generate.return_value = PreCheckPayload(
            needs_fact_check=False, confidence=0.9, reasoning="Local news, low stakes", content_type="news"
        )

        result = agent.process(make_post(text=MIDDLE_BAND_TEXT))

        assert not result.needs_fact_check
        assert result.used_llm
        assert result.content_type == "news"
        assert result.risk_level == "medium"

    def test_low_confidence_skip_is_overridden(self, agent: RiskTriageAgent, make_post) -> None:
        agent.client.generate.return_value = PreCheckPayload(
            needs_fact_check=False, confidence=0.5, reasoning="Probably fine"
        )

        result = agent.process(make_post(text=MIDDLE_BAND_TEXT))

        assert result.needs_fact_check
        assert "overridden" in result.reasoning

    def test_unavailable_agent_defaults_to_verification(self, unavailable_client: Mock,
                                                        pipeline_config: PipelineConfig, make_post) -> None:
        result = RiskTriageAgent(unavailable_client, pipeline_config).process(make_post(text=MIDDLE_BAND_TEXT))

        assert result.needs_fact_check
        assert result.confidence == 0.5
        unavailable_client.generate.assert_not_called()

    @pytest.mark.parametrize("error", [AgentAuthenticationError("bad key"), AgentProcessingError("garbled")])
    def test_agent_errors_fail_open(self, agent: RiskTriageAgent, make_post, error: Exception) -> None:
        agent.client.generate.side_effect = error

        result = agent.process(make_post(text=MIDDLE_BAND_TEXT))

        assert result.needs_fact_check
        assert result.confidence == 0.3

    def test_image_goes_to_vision_client(self, fake_client: Mock, fake_vision_client: Mock,
                                         pipeline_config: PipelineConfig, make_post) -> None:
        fake_vision_client.generate_with_image.return_value = PreCheckPayload(
            needs_fact_check=True, confidence=0.8, reasoning="Infographic with statistics"
        )
        agent = RiskTriageAgent(fake_client, pipeline_config, fake_vision_client)

        result = agent.process(make_post(text="Look at this", image_ref="https://cdn.example.com/chart.png"))

        assert result.needs_fact_check
        assert result.used_llm
        fake_vision_client.generate_with_image.assert_called_once()
        fake_client.generate.assert_not_called()

    def test_comment_is_triaged_like_a_post(self, agent: RiskTriageAgent, make_comment) -> None:
        result = agent.process(make_comment(text="Study shows 90% of people got sick from the vaccine in 2023"))
        assert result.needs_fact_check
