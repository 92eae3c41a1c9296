"""
Pydantic schemas for claims, evidence and fact-check results.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from trustpipe.utils.timeutil import utcnow

ClaimType = Literal["fact", "opinion", "experience"]
ClaimDomain = Literal["health", "finance", "politics", "technology", "science", "society", "general"]
RiskLevel = Literal["low", "medium", "high"]
Verdict = Literal["true", "false", "mixed", "unknown"]

CLAIM_TYPES = ("fact", "opinion", "experience")
CLAIM_DOMAINS = ("health", "finance", "politics", "technology", "science", "society", "general")
RISK_LEVELS = ("low", "medium", "high")
VERDICTS = ("true", "false", "mixed", "unknown")

MAX_CLAIM_LENGTH = 240


class Evidence(BaseModel):
    """A single piece of supporting or contradicting evidence."""
    source: str
    url: Optional[str] = None
    snippet: str = ""
    quality: float = Field(..., ge=0.0, le=1.0)


class Claim(BaseModel):
    """An atomic, typed, independently verifiable statement."""
    id: str
    text: str = Field(..., min_length=1, max_length=MAX_CLAIM_LENGTH)
    type: ClaimType
    domain: ClaimDomain = "general"
    risk_level: RiskLevel = "low"
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: Optional[List[Evidence]] = None
    extracted_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class FactCheck(BaseModel):
    """Verification outcome for exactly one claim."""
    id: str
    claim_id: str
    verdict: Verdict
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: List[Evidence] = []
    caveats: List[str] = []
    checked_at: datetime = Field(default_factory=utcnow)

    def remapped_to(self, claim_id: str) -> "FactCheck":
        """Copy this fact-check onto another claim id."""
        return self.model_copy(update={"id": f"{claim_id}-fact-check", "claim_id": claim_id})
