"""
Claim extraction agent: turns post or comment content into atomic, typed claims.

Content with text or an image always yields at least one claim. When the
agent returns nothing usable, a strict retry is made and then a local
sentence heuristic takes over.
"""

import re
from typing import Any, List, Optional

from pydantic import BaseModel, field_validator

from trustpipe.agents.base_agent import BaseAgent
from trustpipe.agents.errors import AgentAuthenticationError
from trustpipe.schemas.claim import (
    CLAIM_DOMAINS,
    CLAIM_TYPES,
    MAX_CLAIM_LENGTH,
    RISK_LEVELS,
    Claim,
    Evidence,
)
from trustpipe.schemas.content import ContentUnit
from trustpipe.services.source_quality import extract_url
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are a fact-focused claim extraction agent for a social platform.
Extract verifiable claims from the provided post. Split complex posts into atomic claims.

Rules:
- Keep each claim under 240 characters.
- Label each claim as fact, opinion, or experience.
- Detect the domain (health, finance, politics, technology, science, society, general).
- Assign risk level (low, medium, high) based on potential harm if incorrect.
- Estimate confidence 0-1 for how clear and verifiable the claim is.
- Provide any cited evidence snippets if mentioned (optional).
- If an image is provided, read ALL text in the image and extract claims from it as well as from the text.
- NEVER return an empty claims list when the input contains any statement.
- If uncertain, return a single claim that mirrors the input text with low confidence.
- If the content is a denial or controversy (e.g., "X is a scam"), still treat it as a claim."""

STRICT_SUFFIX = '\n\nIMPORTANT: Every claim must have a non-empty "text" field. Do not return empty strings.'

HEURISTIC_CONFIDENCE = 0.35
HEURISTIC_MAX_CLAIMS = 3
MIN_SENTENCE_LENGTH = 8

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_FIRST_PERSON = re.compile(r"\b(I|I'm|I've|my|me|mine)\b", re.IGNORECASE)

# Keyword families that mark a heuristic claim as medium risk, checked in order
_RISK_FAMILIES = [
    ("health", re.compile(r"health|medical|vaccin|virus|covid|cancer|disease|doctor", re.IGNORECASE)),
    ("finance", re.compile(r"financ|money|invest|stock|inflation|recession|crypto", re.IGNORECASE)),
    ("politics", re.compile(r"politic|election|vote|government|president|congress", re.IGNORECASE)),
]


class RawEvidence(BaseModel):
    source: str = ""
    url: Optional[str] = None
    snippet: str = ""
    quality: Any = None


class RawClaim(BaseModel):
    id: Optional[str] = None
    text: Optional[str] = ""
    type: Optional[str] = None
    domain: Optional[str] = None
    risk_level: Optional[str] = None
    confidence: Any = None
    evidence: Optional[List[RawEvidence]] = None

    @field_validator("type", "domain", "risk_level", mode="before")
    @classmethod
    def lowercase(cls, value):
        return str(value).strip().lower() if value is not None else None


class ClaimExtractionPayload(BaseModel):
    """Structured reply of the extraction agent."""
    claims: List[RawClaim] = []


def _clamp(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _truncate(text: str) -> str:
    text = text.strip()
    return text if len(text) <= MAX_CLAIM_LENGTH else text[:MAX_CLAIM_LENGTH - 3].rstrip() + "..."


def claim_id_for(unit_id: str, token: Optional[str], index: int) -> str:
    """Claim id from the unit id plus the agent's token, or the 1-based ordinal."""
    token = (token or "").strip()
    if token:
        return f"{unit_id}-{token}"
    return f"{unit_id}-claim-{index + 1}"


def to_claim(unit_id: str, raw: RawClaim, index: int) -> Claim:
    """Normalize one agent claim, coercing unknown labels to safe defaults."""
    evidence = None
    if raw.evidence:
        evidence = [
            Evidence(
                source=item.source or "Agent",
                url=item.url or extract_url(item.snippet),
                snippet=item.snippet or item.source,
                quality=_clamp(item.quality, 0.5),
            )
            for item in raw.evidence
            if item.source or item.snippet
        ]

    return Claim(
        id=claim_id_for(unit_id, raw.id, index),
        text=_truncate(raw.text or ""),
        type=raw.type if raw.type in CLAIM_TYPES else "fact",
        domain=raw.domain if raw.domain in CLAIM_DOMAINS else "general",
        risk_level=raw.risk_level if raw.risk_level in RISK_LEVELS else "low",
        confidence=_clamp(raw.confidence, 0.0),
        evidence=evidence,
        extracted_at=utcnow(),
    )


def heuristic_claims(unit_id: str, text: str, image_ref: Optional[str] = None) -> List[Claim]:
    """
    Deterministic fallback extraction.

    Takes the first sentences of at least eight characters. Image-only content
    yields one low-confidence placeholder claim.

    Args:
        unit_id: Id of the post or comment
        text: Body text
        image_ref: Optional image reference

    Returns:
        Claims; empty only when there is neither text nor image
    """
    text = (text or "").strip()
    if not text:
        if not image_ref:
            return []
        return [Claim(
            id=f"{unit_id}-heuristic-image",
            text="Image content requires analysis",
            type="fact",
            domain="general",
            risk_level="medium",
            confidence=0.2,
        )]

    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text)]
    sentences = [s for s in sentences if len(s) >= MIN_SENTENCE_LENGTH][:HEURISTIC_MAX_CLAIMS]
    if not sentences:
        sentences = [text]

    now = utcnow()
    claims = []
    for index, sentence in enumerate(sentences):
        domain, risk = "general", "low"
        for family, pattern in _RISK_FAMILIES:
            if pattern.search(sentence):
                domain, risk = family, "medium"
                break

        claims.append(Claim(
            id=f"{unit_id}-heuristic-{index + 1}",
            text=_truncate(sentence),
            type="experience" if _FIRST_PERSON.search(sentence) else "fact",
            domain=domain,
            risk_level=risk,
            confidence=HEURISTIC_CONFIDENCE,
            extracted_at=now,
        ))
    return claims


def _has_text(unit: Optional[ContentUnit]) -> bool:
    return unit is not None and bool((unit.text or "").strip())


def _has_image(unit: Optional[ContentUnit]) -> bool:
    return unit is not None and bool((unit.image_ref or "").strip())


class ClaimExtractorAgent(BaseAgent):
    """
    Extracts claims from a post or comment, plus an optional quoted unit.

    Uses the vision-capable client whenever an image is present.
    """

    def process(self, content: ContentUnit, quoted: Optional[ContentUnit] = None) -> List[Claim]:
        """
        Extract claims.

        Args:
            content: Post or comment to mine
            quoted: Optional quoted unit whose text and image are mined too

        Returns:
            List of claims; empty only when neither unit has text or an image
        """
        has_text, has_image = _has_text(content), _has_image(content)
        has_quoted_text, has_quoted_image = _has_text(quoted), _has_image(quoted)

        if not (has_text or has_image or has_quoted_text or has_quoted_image):
            return []

        image_ref = content.image_ref if has_image else (quoted.image_ref if has_quoted_image else None)

        if not self._client_for(image_ref is not None).is_available():
            logger.warning(f"[{self.agent_name}] Agent unavailable, using heuristic extraction",
                           content_id=content.id)
            return self._fallback(content, quoted)

        prompt = self._build_prompt(content, quoted, has_text, has_image, has_quoted_text, has_quoted_image)

        try:
            claims = self._run_extraction(content.id, prompt, image_ref, strict=False)
            if not claims:
                logger.warning(f"[{self.agent_name}] Retrying extraction with strict prompt", content_id=content.id)
                claims = self._run_extraction(content.id, prompt, image_ref, strict=True)
        except AgentAuthenticationError as e:
            logger.critical(f"[{self.agent_name}] Authentication failed, using heuristic extraction",
                            content_id=content.id, auth_error=True, error=str(e))
            return self._fallback(content, quoted)
        except Exception as e:
            logger.error(f"[{self.agent_name}] Agent error, using heuristic extraction",
                         content_id=content.id, error=str(e))
            return self._fallback(content, quoted)

        if not claims:
            logger.warning(f"[{self.agent_name}] No claims after strict retry, using heuristic extraction",
                           content_id=content.id,
                           has_text=has_text,
                           has_image=has_image,
                           has_quoted_text=has_quoted_text,
                           has_quoted_image=has_quoted_image)
            return self._fallback(content, quoted)

        logger.info(f"[{self.agent_name}] Extracted claims",
                    content_id=content.id,
                    count=len(claims),
                    sample=self._truncate_for_log(claims[0].text, 120))
        return claims

    def _run_extraction(self, unit_id: str, prompt: str, image_ref: Optional[str], strict: bool) -> List[Claim]:
        system_prompt = SYSTEM_PROMPT + STRICT_SUFFIX if strict else SYSTEM_PROMPT
        final_prompt = prompt + STRICT_SUFFIX if strict else prompt

        payload = self._call_with_retry("extract_claims", final_prompt, system_prompt,
                                        ClaimExtractionPayload, image_ref=image_ref)

        usable = [raw for raw in payload.claims if isinstance(raw.text, str) and raw.text.strip()]
        if payload.claims and not usable:
            logger.warning(f"[{self.agent_name}] Agent returned only empty claims",
                           content_id=unit_id, raw_count=len(payload.claims))
        return [to_claim(unit_id, raw, index) for index, raw in enumerate(usable)]

    def _fallback(self, content: ContentUnit, quoted: Optional[ContentUnit]) -> List[Claim]:
        claims = heuristic_claims(content.id, content.text, content.image_ref)
        if not claims and quoted is not None:
            claims = heuristic_claims(content.id, quoted.text, quoted.image_ref)
        return claims

    def _build_prompt(self, content: ContentUnit, quoted: Optional[ContentUnit], has_text: bool,
                      has_image: bool, has_quoted_text: bool, has_quoted_image: bool) -> str:
        prompt = f"Post ID: {content.id}\nAuthor: {content.author_id}"
        topic = getattr(content, "topic", None)
        if topic:
            prompt += f"\nTopic: {topic}"

        if quoted is not None and (has_quoted_text or has_quoted_image):
            prompt += ("\n\nThis is a QUOTED POST. Extract claims from BOTH the user's new text "
                       "AND the original quoted post's text.\n\nORIGINAL QUOTED POST:\n")
            prompt += f'"""{quoted.text}"""' if has_quoted_text else "(image only)"
            if has_text:
                prompt += f'\n\nUSER\'S NEW TEXT:\n"""\n{content.text}\n"""'
        elif has_text:
            prompt += f'\n\nText:\n"""\n{content.text}\n"""'

        if has_image:
            if has_text or has_quoted_text:
                prompt += ("\n\nAn image is attached to this post. Extract claims from BOTH the text above "
                           "AND any text or claims visible in the image.")
            else:
                prompt += ("\n\nThis post contains only an image. Read ALL text in the image (overlays, "
                           "captions, memes, infographics) and extract all verifiable claims from it.")
        elif has_quoted_image:
            prompt += "\n\nThe quoted post contains an image. Extract claims from any text visible in it as well."

        prompt += "\n\nExtract claims following the schema. Ignore emojis or filler text."
        return prompt
