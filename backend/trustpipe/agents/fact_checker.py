"""
AI agent for verifying extracted claims.
Resolves each claim to a verdict with graded evidence using Serper web search
plus Claude analysis, a plain Claude call, or a deterministic fallback.
"""

import contextvars
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from trustpipe.agents.base_agent import BaseAgent, ClaudeClient
from trustpipe.agents.errors import AgentAuthenticationError, AgentProcessingError
from trustpipe.config import PipelineConfig
from trustpipe.schemas.claim import VERDICTS, Claim, Evidence, FactCheck
from trustpipe.schemas.content import ContentUnit
from trustpipe.services.claim_matching import match_claims
from trustpipe.services.serper_service import SearchContext, SerperSearchError, SerperService
from trustpipe.services.source_quality import MIN_EVIDENCE_QUALITY, extract_url, score_source
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.25
FALLBACK_CAVEAT = "Automatic fallback: unable to verify claim"

SYSTEM_PROMPT = ("You are a rigorous fact-checking agent. Always cite credible sources. Avoid speculation. "
                 'If unsure, answer "unknown" and explain why.')

SEARCH_SYSTEM_PROMPT = ("You are a professional fact-checker analyzing web search results. Evaluate claims "
                        "objectively based on source quality and evidence strength. Only cite URLs that appear "
                        "in the search results.")


class RawEvidenceItem(BaseModel):
    source: str = ""
    url: Optional[str] = None
    snippet: str = ""


class FactCheckPayload(BaseModel):
    """Structured reply of the verification agent."""
    verdict: str = "unknown"
    confidence: Any = None
    evidence: List[RawEvidenceItem] = []
    caveats: List[str] = []

    @field_validator("verdict", mode="before")
    @classmethod
    def normalize_verdict(cls, value):
        verdict = str(value or "").strip().lower()
        return verdict if verdict in VERDICTS else "unknown"

    @field_validator("evidence", mode="before")
    @classmethod
    def coerce_evidence(cls, value):
        # Agents sometimes return bare strings or markdown links instead of objects
        if not isinstance(value, list):
            return []
        items = []
        for item in value:
            if isinstance(item, str):
                items.append({"source": "Web Search", "url": extract_url(item), "snippet": item})
            elif isinstance(item, dict):
                items.append(item)
        return items

    @field_validator("caveats", mode="before")
    @classmethod
    def coerce_caveats(cls, value):
        if not isinstance(value, list):
            return []
        return [str(caveat) for caveat in value if str(caveat).strip()]


def fallback_fact_check(claim: Claim) -> FactCheck:
    """Deterministic verdict used when every verification path has failed."""
    return FactCheck(
        id=f"{claim.id}-fallback",
        claim_id=claim.id,
        verdict="unknown",
        confidence=FALLBACK_CONFIDENCE,
        evidence=[],
        caveats=[FALLBACK_CAVEAT],
        checked_at=utcnow(),
    )


def grade_evidence(items: List[RawEvidenceItem], require_url: bool = False) -> List[Evidence]:
    """
    Score evidence from its URL domain, ignoring any agent-reported quality.

    Args:
        items: Raw evidence from the agent
        require_url: Drop items without a URL (web search results must cite one)

    Returns:
        Evidence with quality above the minimum threshold
    """
    graded = []
    for item in items:
        url = item.url or extract_url(item.snippet)
        if require_url and not url:
            continue
        quality = score_source(url)
        if quality <= MIN_EVIDENCE_QUALITY:
            continue
        graded.append(Evidence(
            source=item.source or "Web Search",
            url=url,
            snippet=item.snippet or item.source,
            quality=quality,
        ))
    return graded


def _confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.5


class FactCheckerAgent(BaseAgent):
    """
    AI agent that verifies claims against evidence.

    Each claim goes through web search plus analysis, then a plain structured
    call, then a fixed fallback verdict. Claims are verified concurrently on a
    bounded pool and results keep the input order.
    """

    def __init__(self, client: ClaudeClient, config: PipelineConfig,
                 vision_client: Optional[ClaudeClient] = None,
                 search_service: Optional[SerperService] = None) -> None:
        """
        Initialize the FactChecker agent.

        Args:
            client: Text-only Claude client
            config: Pipeline configuration
            vision_client: Optional vision-capable client (unused for verification)
            search_service: Serper service; web search is skipped when absent
        """
        super().__init__(client, config, vision_client)
        self.search_service = search_service

    def process(self, content: ContentUnit, claims: List[Claim]) -> List[FactCheck]:
        """
        Verify a list of claims.

        Args:
            content: Post or comment the claims came from
            claims: Claims to verify

        Returns:
            One FactCheck per claim, in claim order
        """
        if not claims:
            return []

        logger.info(f"[{self.agent_name}] Starting verification",
                    content_id=content.id,
                    claim_count=len(claims))

        workers = min(self.config.fact_check_max_workers, len(claims))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fact-check") as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, self.verify_claim, content, claim)
                for claim in claims
            ]
            fact_checks = [future.result() for future in futures]

        verdicts: Dict[str, int] = {}
        for fc in fact_checks:
            verdicts[fc.verdict] = verdicts.get(fc.verdict, 0) + 1
        logger.info(f"[{self.agent_name}] Complete: {len(fact_checks)} claims verified",
                    content_id=content.id,
                    verdicts=verdicts)
        return fact_checks

    def process_with_reuse(self, content: ContentUnit, own_claims: List[Claim],
                           reference_claims: List[Claim], reference_fact_checks: List[FactCheck]) -> List[FactCheck]:
        """
        Verify claims of a quoting post, reusing the quoted post's verdicts.

        Own claims that match a reference claim take its verdict under their own
        id. Reference claims keep their existing fact checks. Only the rest are
        verified.

        Args:
            content: The quoting post
            own_claims: Claims extracted from the quoting post's own text
            reference_claims: Claims of the quoted post
            reference_fact_checks: Fact checks of the quoted post

        Returns:
            Fact checks for own claims followed by reference claims
        """
        matches = match_claims(own_claims, reference_claims, reference_fact_checks,
                               threshold=self.config.similarity_threshold)
        existing = {fc.claim_id: fc for fc in reference_fact_checks}

        resolved: Dict[str, FactCheck] = {}
        to_verify: List[Claim] = []

        for claim in own_claims:
            match = matches.get(claim.id)
            if match is not None and match.fact_check is not None:
                resolved[claim.id] = match.fact_check.remapped_to(claim.id)
                logger.info(f"[{self.agent_name}] Reusing verdict from quoted claim",
                            claim_id=claim.id,
                            original_claim_id=match.original_claim.id,
                            similarity=round(match.similarity, 3))
            else:
                to_verify.append(claim)

        for claim in reference_claims:
            if claim.id in existing:
                resolved[claim.id] = existing[claim.id]
            else:
                to_verify.append(claim)

        for fact_check in self.process(content, to_verify):
            resolved[fact_check.claim_id] = fact_check

        return [resolved[claim.id] for claim in list(own_claims) + list(reference_claims) if claim.id in resolved]

    def verify_claim(self, content: ContentUnit, claim: Claim) -> FactCheck:
        """
        Verify a single claim.

        Never raises: every failure ends in the fallback verdict.
        """
        logger.info(f"[{self.agent_name}] Checking claim: {self._truncate_for_log(claim.text, 100)}",
                    claim_id=claim.id)

        if self.config.web_search_enabled and self.search_service is not None and self.search_service.is_available():
            try:
                return self._verify_with_search(content, claim)
            except AgentAuthenticationError as e:
                logger.critical(f"[{self.agent_name}] Authentication failed, using fallback verdict",
                                claim_id=claim.id, auth_error=True, error=str(e))
                return fallback_fact_check(claim)
            except Exception as e:
                logger.warning(f"[{self.agent_name}] Web search verification failed, trying direct verification",
                               claim_id=claim.id, error=str(e))

        if not self.client.is_available():
            logger.warning(f"[{self.agent_name}] Agent unavailable, using fallback verdict", claim_id=claim.id)
            return fallback_fact_check(claim)

        try:
            return self._verify_direct(content, claim)
        except AgentAuthenticationError as e:
            logger.critical(f"[{self.agent_name}] Authentication failed, using fallback verdict",
                            claim_id=claim.id, auth_error=True, error=str(e))
        except Exception as e:
            logger.error(f"[{self.agent_name}] Claim verification failed, using fallback verdict",
                         claim_id=claim.id, error=str(e))
        return fallback_fact_check(claim)

    def _verify_with_search(self, content: ContentUnit, claim: Claim) -> FactCheck:
        try:
            search_context = self.search_service.search_for_claim(claim.text)
        except SerperSearchError as e:
            raise AgentProcessingError(f"Web search failed: {e}")

        if not search_context.snippets:
            raise AgentProcessingError("No search results found")

        prompt = self._build_prompt(content, claim, search_context)
        payload = self._call_with_retry("verify_with_search", prompt, SEARCH_SYSTEM_PROMPT, FactCheckPayload)

        cited = set(search_context.sources) | {s.url for s in search_context.snippets if s.url}
        evidence = [item for item in grade_evidence(payload.evidence, require_url=True) if item.url in cited]
        return self._to_fact_check(claim, payload, evidence)

    def _verify_direct(self, content: ContentUnit, claim: Claim) -> FactCheck:
        prompt = self._build_prompt(content, claim)
        payload = self._call_with_retry("verify", prompt, SYSTEM_PROMPT, FactCheckPayload)
        return self._to_fact_check(claim, payload, grade_evidence(payload.evidence))

    def _to_fact_check(self, claim: Claim, payload: FactCheckPayload, evidence: List[Evidence]) -> FactCheck:
        fact_check = FactCheck(
            id=f"{claim.id}-fact-check",
            claim_id=claim.id,
            verdict=payload.verdict,
            confidence=_confidence(payload.confidence),
            evidence=evidence,
            caveats=payload.caveats,
            checked_at=utcnow(),
        )
        logger.info(f"[{self.agent_name}] Claim result: {fact_check.verdict.upper()} "
                    f"(confidence: {fact_check.confidence:.2f})",
                    claim_id=claim.id,
                    evidence_count=len(evidence))
        return fact_check

    def _build_prompt(self, content: ContentUnit, claim: Claim,
                      search_context: Optional[SearchContext] = None) -> str:
        has_text = bool((content.text or "").strip())
        prompt = ("You are a senior fact-checking analyst. Evaluate the following claim that appeared "
                  f"on a social platform.\n\nPost Context:\n- Post ID: {content.id}\n- Author ID: {content.author_id}")
        topic = getattr(content, "topic", None)
        if topic:
            prompt += f"\n- Topic: {topic}"
        if has_text:
            prompt += f'\n- Post text: """{content.text}"""'
        if content.image_ref:
            prompt += f"\n- An image is attached (image URL: {content.image_ref}). The claim may come from text in the image."

        prompt += f'\n\nClaim to verify: "{claim.text}"'

        if search_context is not None:
            prompt += f"\n\nSEARCH RESULTS:\n{search_context.format_for_prompt()}"
            prompt += "\n\nInstructions:\n- Base the verdict on the search results above and cite their URLs."
        else:
            prompt += "\n\nInstructions:\n- Cite specific credible sources with URLs where you can."

        prompt += ("\n- Verdict is one of true, false, mixed, unknown."
                   "\n- Give high confidence (0.7+) when sources clearly support or contradict the claim."
                   '\n- Only use "unknown" with low confidence (0.3-0.5) if no relevant information is found.'
                   "\n- Add caveats for missing context.")
        return prompt
