"""
Pydantic schemas for pipeline control flow: triage results, queue jobs and
sweep reports.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

RiskBand = Literal["low", "medium", "high"]
ContentType = Literal["post", "comment"]


class PreCheckResult(BaseModel):
    """Outcome of risk triage for one content unit."""
    needs_fact_check: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    risk_score: float = Field(0.0, ge=0.0, le=1.0)
    risk_level: RiskBand = "low"
    content_type: str = "other"
    signals: List[str] = []
    used_llm: bool = False


class ContentJob(BaseModel):
    """A queued request to run the pipeline for one post or comment."""
    content_type: ContentType
    content_id: str
    event: Literal["created", "retry"] = "created"


class SweepReport(BaseModel):
    """Counts from one periodic sweep."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: List[str] = []
    next_cursor: Optional[str] = None
