"""
Risk triage agent: decides whether a post or comment needs verification.

A deterministic heuristic score settles clear cases; the middle band is sent
to a cheap LLM gate. Ambiguous content is verified, never silently skipped.
"""

import re
from typing import List, Optional

from pydantic import BaseModel, field_validator

from trustpipe.agents.base_agent import BaseAgent
from trustpipe.agents.errors import AgentAuthenticationError
from trustpipe.schemas.content import ContentUnit
from trustpipe.schemas.pipeline import PreCheckResult
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)

HIGH_RISK_TOPICS = [
    "health", "medical", "finance", "money", "invest", "stocks",
    "economy", "politics", "election", "science",
]
HIGH_RISK_KEYWORDS = [
    "vaccine", "treatment", "cancer", "covid", "virus", "pandemic", "inflation", "recession",
    "investment", "returns", "guaranteed", "election", "vote", "fraud", "war", "nuclear",
]
STAT_INDICATORS = [
    re.compile(r"\d+%"),
    re.compile(r"\d+ out of \d+"),
    re.compile(r"\d{4}"),
    re.compile(r"\b(million|billion|trillion)\b", re.IGNORECASE),
]
AUTHORITY_INDICATORS = [
    re.compile(r"according to", re.IGNORECASE),
    re.compile(r"study shows", re.IGNORECASE),
    re.compile(r"research indicates", re.IGNORECASE),
    re.compile(r"experts? (say|claim)", re.IGNORECASE),
    re.compile(r"scientists", re.IGNORECASE),
    re.compile(r"doctors", re.IGNORECASE),
]
OPINION_INDICATORS = [
    re.compile(r"^i think", re.IGNORECASE),
    re.compile(r"^i believe", re.IGNORECASE),
    re.compile(r"^in my opinion", re.IGNORECASE),
    re.compile(r"^i feel", re.IGNORECASE),
    re.compile(r"just my opinion", re.IGNORECASE),
    re.compile(r"personally", re.IGNORECASE),
]

BASE_SCORE = 0.2
HIGH_RISK_THRESHOLD = 0.7
LOW_RISK_THRESHOLD = 0.3
ELEVATED_RISK_THRESHOLD = 0.35
LLM_SKIP_MIN_CONFIDENCE = 0.7

SYSTEM_PROMPT = """You are a content classification agent. Decide whether a social media post or comment contains factual claims that need verification.

NEEDS FACT-CHECK (needs_fact_check=true):
- Statistics, numbers, percentages, dates
- Claims about public figures, companies or events
- Health, medical, financial or scientific claims
- News-like assertions, or claims citing studies, experts or research

NO FACT-CHECK NEEDED (needs_fact_check=false):
- Pure opinions ("I think...", "In my opinion...")
- Personal experiences, questions without embedded claims
- Jokes, greetings, small talk, emotional expressions

When uncertain, choose needs_fact_check=true."""


class PreCheckPayload(BaseModel):
    """Structured reply of the LLM gate."""
    needs_fact_check: bool = True
    confidence: float = 0.5
    reasoning: str = ""
    content_type: str = "other"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value):
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.5


def _contains_any(text: str, patterns: List[re.Pattern]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _contains_keyword(text: str, keywords: List[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def calculate_risk_score(text: str, topic: Optional[str] = None, semantic_topics: Optional[List[str]] = None,
                         entities: Optional[List[str]] = None, image_ref: Optional[str] = None) -> float:
    """
    Deterministic content risk score in [0, 1].

    Args:
        text: Body text
        topic: Optional topic hint
        semantic_topics: Optional topic labels
        entities: Optional named entities
        image_ref: Optional image reference

    Returns:
        Clamped risk score
    """
    lowered = (text or "").lower()
    topics = [(topic or "").lower()] + [(t or "").lower() for t in semantic_topics or []]
    score = BASE_SCORE

    if any(_contains_keyword(t, HIGH_RISK_TOPICS) for t in topics if t):
        score += 0.35
    if any(_contains_keyword((e or "").lower(), HIGH_RISK_TOPICS) for e in entities or []):
        score += 0.15
    if _contains_any(lowered, STAT_INDICATORS):
        score += 0.2
    if _contains_any(lowered, AUTHORITY_INDICATORS):
        score += 0.15
    if _contains_keyword(lowered, HIGH_RISK_KEYWORDS):
        score += 0.2

    length = len(text or "")
    if length > 200:
        score += 0.1
    if length < 40:
        score -= 0.05

    if image_ref and image_ref.strip():
        score += 0.05

    return round(max(0.0, min(1.0, score)), 4)


def detect_signals(text: str, topic: Optional[str] = None, image_ref: Optional[str] = None) -> List[str]:
    """Short labels describing why content looks risky, passed to the LLM gate."""
    lowered = (text or "").lower()
    signals = []
    if _contains_any(lowered, STAT_INDICATORS):
        signals.append("stats_or_numbers")
    if _contains_any(lowered, AUTHORITY_INDICATORS):
        signals.append("authority_cue")
    if _contains_keyword(lowered, HIGH_RISK_KEYWORDS):
        signals.append("high_risk_keywords")
    if topic and _contains_keyword(topic.lower(), HIGH_RISK_TOPICS):
        signals.append("high_risk_topic")
    if image_ref and image_ref.strip():
        signals.append("has_image")
    if _contains_any(lowered.strip(), OPINION_INDICATORS):
        signals.append("opinion_marker")
    if len(lowered.split()) >= 25:
        signals.append("long_text")
    return signals


def risk_level_for(score: float) -> str:
    if score > HIGH_RISK_THRESHOLD:
        return "high"
    if score < LOW_RISK_THRESHOLD:
        return "low"
    return "medium"


class RiskTriageAgent(BaseAgent):
    """
    Gatekeeper in front of claim extraction and fact-checking.

    Scores above the high-risk threshold are always verified, low scores
    without an image are skipped and marked clean, and everything in between
    goes to the LLM gate with a fail-open policy.
    """

    def process(self, content: ContentUnit) -> PreCheckResult:
        """
        Triage one content unit.

        Args:
            content: Post or comment to triage

        Returns:
            PreCheckResult with the decision and the heuristic risk score
        """
        text = content.text or ""
        image_ref = content.image_ref if content.image_ref and content.image_ref.strip() else None

        if not text.strip() and image_ref is None:
            return PreCheckResult(
                needs_fact_check=False,
                confidence=1.0,
                reasoning="No content to analyze",
                risk_score=0.0,
                risk_level="low",
            )

        topic = getattr(content, "topic", None)
        risk_score = calculate_risk_score(
            text,
            topic=topic,
            semantic_topics=getattr(content, "semantic_topics", None),
            entities=getattr(content, "entities", None),
            image_ref=image_ref,
        )
        signals = detect_signals(text, topic=topic, image_ref=image_ref)
        risk_level = risk_level_for(risk_score)

        logger.info(f"[{self.agent_name}] Heuristic risk computed",
                    content_id=content.id,
                    risk_score=risk_score,
                    signals=signals)

        if risk_score > HIGH_RISK_THRESHOLD:
            return PreCheckResult(
                needs_fact_check=True,
                confidence=risk_score,
                reasoning="Heuristic: high-risk content",
                risk_score=risk_score,
                risk_level=risk_level,
                content_type="factual",
                signals=signals,
            )

        if risk_score < LOW_RISK_THRESHOLD and image_ref is None:
            content_type = "opinion" if "opinion_marker" in signals else "other"
            return PreCheckResult(
                needs_fact_check=False,
                confidence=round(1.0 - risk_score, 4),
                reasoning="Heuristic: low-risk content",
                risk_score=risk_score,
                risk_level=risk_level,
                content_type=content_type,
                signals=signals,
            )

        return self._llm_gate(content, text, image_ref, risk_score, risk_level, signals)

    def _llm_gate(self, content: ContentUnit, text: str, image_ref: Optional[str],
                  risk_score: float, risk_level: str, signals: List[str]) -> PreCheckResult:
        base = {"risk_score": risk_score, "risk_level": risk_level, "signals": signals}

        if not self._client_for(image_ref is not None).is_available():
            logger.warning(f"[{self.agent_name}] Agent unavailable, defaulting to verification",
                           content_id=content.id)
            return PreCheckResult(needs_fact_check=True, confidence=0.5,
                                  reasoning="Agent unavailable, defaulting to verification", **base)

        prompt = f"Content ID: {content.id}\nAuthor: {content.author_id}"
        topic = getattr(content, "topic", None)
        if topic:
            prompt += f"\nTopic: {topic}"
        if signals:
            prompt += f"\nSignals: {', '.join(signals)}"
        if text.strip():
            prompt += f'\n\nText:\n"""\n{text}\n"""'
        if image_ref is not None:
            prompt += "\n\n(Image attached - consider any text or claims visible in the image)"
        prompt += "\n\nClassify the content and decide whether fact-checking is needed."

        try:
            payload = self._call_with_retry("pre_check", prompt, SYSTEM_PROMPT, PreCheckPayload, image_ref=image_ref)
        except AgentAuthenticationError as e:
            logger.critical(f"[{self.agent_name}] Authentication failed, defaulting to verification",
                            content_id=content.id, auth_error=True, error=str(e))
            return PreCheckResult(needs_fact_check=True, confidence=0.3,
                                  reasoning="Pre-check failed: authentication error", **base)
        except Exception as e:
            logger.error(f"[{self.agent_name}] Pre-check failed, defaulting to verification",
                         content_id=content.id, error=str(e))
            return PreCheckResult(needs_fact_check=True, confidence=0.3,
                                  reasoning=f"Pre-check failed: {e}", **base)

        needs_fact_check = payload.needs_fact_check
        reasoning = payload.reasoning or "Agent decision"

        if (not needs_fact_check and payload.confidence < LLM_SKIP_MIN_CONFIDENCE
                and risk_score >= ELEVATED_RISK_THRESHOLD):
            logger.info(f"[{self.agent_name}] Low-confidence skip overridden",
                        content_id=content.id,
                        agent_confidence=payload.confidence,
                        risk_score=risk_score)
            needs_fact_check = True
            reasoning = f"Low-confidence skip overridden by elevated risk: {reasoning}"

        return PreCheckResult(
            needs_fact_check=needs_fact_check,
            confidence=payload.confidence,
            reasoning=reasoning,
            content_type=payload.content_type or "other",
            used_llm=True,
            **base,
        )
