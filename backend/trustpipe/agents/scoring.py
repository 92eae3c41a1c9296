"""
Value scoring, explanation and discussion analysis.

The pipeline depends only on the ValueScorer, Explainer and DiscussionAnalyzer
interfaces; the Claude-backed agents below are the implementations shipped
with the worker.
"""

from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, field_validator

from trustpipe.agents.base_agent import BaseAgent
from trustpipe.schemas.claim import Claim, FactCheck
from trustpipe.schemas.content import CommentDocument, PostDocument
from trustpipe.schemas.value import (
    CommentInsight,
    ContributionVector,
    DiscussionAnalysis,
    DiscussionQuality,
    ValueScore,
)
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

VALUE_WEIGHTS = {
    "epistemic": 0.35,
    "insight": 0.25,
    "practical": 0.2,
    "relational": 0.1,
    "effort": 0.1,
}
FALSE_EPISTEMIC_CAP = 0.1
DISCUSSION_ROLES = ("question", "answer", "evidence", "opinion", "moderation", "other")


class ValueScorer(Protocol):
    def score(self, post: PostDocument, claims: List[Claim], fact_checks: List[FactCheck],
              discussion: Optional[DiscussionAnalysis]) -> Optional[ValueScore]:
        ...


class Explainer(Protocol):
    def explain(self, post: PostDocument, value_score: ValueScore, claims: List[Claim],
                fact_checks: List[FactCheck], discussion: Optional[DiscussionQuality]) -> Optional[str]:
        ...


class DiscussionAnalyzer(Protocol):
    def analyze(self, post: PostDocument, comments: List[CommentDocument]) -> Optional[DiscussionAnalysis]:
        ...


def _clamp(value: Any, default: float = 0.5) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def weighted_total(vector: Dict[str, float]) -> float:
    return _clamp(sum(vector[name] * weight for name, weight in VALUE_WEIGHTS.items()))


def apply_fact_check_penalty(vector: Dict[str, float], fact_checks: List[FactCheck]) -> Dict[str, float]:
    """Cap epistemic value at 0.1 on any false verdict, halve it on a mixed one."""
    verdicts = {fc.verdict for fc in fact_checks}
    penalized = dict(vector)
    if "false" in verdicts:
        penalized["epistemic"] = min(penalized["epistemic"], FALSE_EPISTEMIC_CAP)
    elif "mixed" in verdicts:
        penalized["epistemic"] = penalized["epistemic"] / 2
    return penalized


class ValueDimensions(BaseModel):
    epistemic: Any = 0.5
    insight: Any = 0.5
    practical: Any = 0.5
    relational: Any = 0.5
    effort: Any = 0.5

    def as_vector(self) -> Dict[str, float]:
        return {name: _clamp(getattr(self, name)) for name in VALUE_WEIGHTS}


class ValuePayload(BaseModel):
    scores: ValueDimensions
    confidence: Any = 0.7
    drivers: List[str] = []


class ExplanationPayload(BaseModel):
    summary: str


class CommentInsightPayload(BaseModel):
    comment_id: str
    role: str = "other"
    epistemic: Any = 0.5
    insight: Any = 0.5
    practical: Any = 0.5
    relational: Any = 0.5
    effort: Any = 0.5

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, value):
        role = str(value or "").strip().lower()
        return role if role in DISCUSSION_ROLES else "other"


class ThreadQualityPayload(BaseModel):
    informativeness: Any = 0.5
    civility: Any = 0.5
    reasoning_depth: Any = 0.5
    cross_perspective: Any = 0.5
    summary: str = ""


class DiscussionPayload(BaseModel):
    thread_quality: ThreadQualityPayload
    comment_insights: List[CommentInsightPayload] = []


def _summarize_for_prompt(post: PostDocument, claims: List[Claim], fact_checks: List[FactCheck],
                          discussion: Optional[DiscussionQuality]) -> str:
    if claims:
        risky = sum(1 for claim in claims if claim.risk_level != "low")
        claim_summary = f"{len(claims)} claims ({risky} medium/high risk)."
    else:
        claim_summary = "No explicit extracted claims."

    if fact_checks:
        fact_summary = "; ".join(f"{fc.verdict} ({fc.confidence:.2f}) on claim {fc.claim_id}" for fc in fact_checks[:5])
    else:
        fact_summary = "Fact checks pending."

    if discussion is not None:
        discussion_summary = (f"Discussion quality -> inform:{discussion.informativeness:.2f}, "
                              f"civility:{discussion.civility:.2f}, reasoning:{discussion.reasoning_depth:.2f}, "
                              f"perspective:{discussion.cross_perspective:.2f}")
    else:
        discussion_summary = "No discussion data yet."

    return "\n".join([f'Post text: """{post.text[:700]}"""', claim_summary, fact_summary, discussion_summary])


class ValueScoringAgent(BaseAgent):
    """Scores a post on five value dimensions and derives a weighted total."""

    def process(self, post: PostDocument, claims: List[Claim], fact_checks: List[FactCheck],
                discussion: Optional[DiscussionAnalysis] = None) -> Optional[ValueScore]:
        return self.score(post, claims, fact_checks, discussion)

    def score(self, post: PostDocument, claims: List[Claim], fact_checks: List[FactCheck],
              discussion: Optional[DiscussionAnalysis]) -> Optional[ValueScore]:
        """
        Score a post.

        Returns:
            ValueScore, or None when the agent is unavailable

        Raises:
            AgentProcessingError: If the agent call fails
        """
        if not self.client.is_available():
            return None

        thread_quality = discussion.thread_quality if discussion is not None else None
        scored_comments = len(discussion.comment_insights) if discussion is not None else 0
        prompt = f"""You are scoring post value for a social network.

Dimensions (0-1 each):
- Epistemic: factual rigor and correctness.
- Insight: novelty, synthesis, non-obvious perspective.
- Practical: actionable guidance or clear takeaways.
- Relational: healthy discourse, empathy, constructive tone.
- Effort: depth of work, sourcing, structure.

Input summary:
{_summarize_for_prompt(post, claims, fact_checks, thread_quality)}
{scored_comments} scored comments

Instructions:
- Base scores on provided evidence only.
- Reward posts with true, high-confidence claims and penalize misinformation.
- Return "scores", "confidence" and a short list of "drivers"."""

        payload = self._call_with_retry("score_value", prompt, "You are a value scoring agent.", ValuePayload)

        vector = apply_fact_check_penalty(payload.scores.as_vector(), fact_checks)
        value_score = ValueScore(
            **vector,
            total=weighted_total(vector),
            confidence=_clamp(payload.confidence, 0.7),
            updated_at=utcnow(),
            drivers=[driver for driver in payload.drivers if driver.strip()] or None,
        )
        logger.info(f"[{self.agent_name}] Post scored", post_id=post.id, total=round(value_score.total, 3))
        return value_score


class ExplainerAgent(BaseAgent):
    """Writes a short explanation of a post's value score."""

    def process(self, post: PostDocument, value_score: ValueScore, claims: List[Claim],
                fact_checks: List[FactCheck], discussion: Optional[DiscussionQuality] = None) -> Optional[str]:
        return self.explain(post, value_score, claims, fact_checks, discussion)

    def explain(self, post: PostDocument, value_score: ValueScore, claims: List[Claim],
                fact_checks: List[FactCheck], discussion: Optional[DiscussionQuality]) -> Optional[str]:
        if not self.client.is_available():
            return fallback_explanation(value_score, claims, fact_checks, discussion)

        checks = ", ".join(f"{fc.claim_id}:{fc.verdict}" for fc in fact_checks) or "none"
        prompt = f"""You are writing a short explanation for why a social post received its value score.

Post text: \"\"\"{post.text[:700]}\"\"\"
Value vector: epistemic={value_score.epistemic:.2f}, insight={value_score.insight:.2f}, practical={value_score.practical:.2f}, relational={value_score.relational:.2f}, effort={value_score.effort:.2f}
Total score: {value_score.total:.2f} (confidence {value_score.confidence:.2f})
Claims analyzed: {len(claims)}
Fact checks: {checks}
Discussion summary: {discussion.summary if discussion is not None else 'No discussion yet'}

Instructions:
- Be concise (max 3 sentences).
- Reference the strongest positive driver first.
- Mention any concerns if verdicts were mixed or false.
- Address the author directly and avoid jargon."""

        try:
            payload = self._call_with_retry("explain_value", prompt, "You are a value explanation writer.",
                                            ExplanationPayload)
        except Exception as e:
            logger.warning(f"[{self.agent_name}] Explanation failed, using fallback", post_id=post.id, error=str(e))
            return fallback_explanation(value_score, claims, fact_checks, discussion)

        return payload.summary.strip() or fallback_explanation(value_score, claims, fact_checks, discussion)


def fallback_explanation(value_score: ValueScore, claims: List[Claim], fact_checks: List[FactCheck],
                         discussion: Optional[DiscussionQuality]) -> str:
    verified = sum(1 for fc in fact_checks if fc.verdict == "true")
    parts = [
        f"Epistemic {value_score.epistemic:.2f} driven by {verified} verified claims.",
        f"Insight {value_score.insight:.2f} from {len(claims)} extracted claims.",
    ]
    if discussion is not None:
        parts.append(f"Discussion quality {discussion.informativeness:.2f} with civility {discussion.civility:.2f}.")
    return " ".join(parts)


class DiscussionQualityAgent(BaseAgent):
    """Rates a comment thread and attributes a role and value to each comment."""

    def process(self, post: PostDocument, comments: List[CommentDocument]) -> Optional[DiscussionAnalysis]:
        return self.analyze(post, comments)

    def analyze(self, post: PostDocument, comments: List[CommentDocument]) -> Optional[DiscussionAnalysis]:
        """
        Analyze a thread.

        Returns:
            DiscussionAnalysis, or None without comments or an available agent
        """
        if not comments or not self.client.is_available():
            return None

        lines = []
        for comment in comments[:50]:
            indent = "  " * min(comment.depth, 10)
            lines.append(f"{indent}[{comment.id}] (author {comment.author_id}): {comment.text[:400]}")

        prompt = f"""Assess the discussion under this post.

Post: \"\"\"{post.text[:700]}\"\"\"

Comments (indented by reply depth):
{chr(10).join(lines)}

Return:
- thread_quality: informativeness, civility, reasoning_depth, cross_perspective (0-1 each) and a one-sentence summary
- comment_insights: one entry per comment with comment_id, role (question, answer, evidence, opinion, moderation, other) and epistemic, insight, practical, relational, effort (0-1 each)"""

        payload = self._call_with_retry("analyze_discussion", prompt, "You are a discussion quality analyst.",
                                        DiscussionPayload)

        known = {comment.id for comment in comments}
        insights: Dict[str, CommentInsight] = {}
        for item in payload.comment_insights:
            if item.comment_id not in known:
                continue
            vector = {name: _clamp(getattr(item, name)) for name in VALUE_WEIGHTS}
            insights[item.comment_id] = CommentInsight(
                role=item.role,
                contribution=ContributionVector(**vector, total=weighted_total(vector)),
            )

        quality = payload.thread_quality
        return DiscussionAnalysis(
            thread_quality=DiscussionQuality(
                informativeness=_clamp(quality.informativeness),
                civility=_clamp(quality.civility),
                reasoning_depth=_clamp(quality.reasoning_depth),
                cross_perspective=_clamp(quality.cross_perspective),
                summary=quality.summary,
            ),
            comment_insights=insights,
        )
