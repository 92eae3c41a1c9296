"""
Pydantic schemas for value scoring and discussion quality.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from trustpipe.utils.timeutil import utcnow

DiscussionRole = Literal["question", "answer", "evidence", "opinion", "moderation", "other"]


class ValueVector(BaseModel):
    """Five value dimensions, each in [0, 1]."""
    epistemic: float = Field(..., ge=0.0, le=1.0)
    insight: float = Field(..., ge=0.0, le=1.0)
    practical: float = Field(..., ge=0.0, le=1.0)
    relational: float = Field(..., ge=0.0, le=1.0)
    effort: float = Field(..., ge=0.0, le=1.0)


class ContributionVector(ValueVector):
    """Value vector with its aggregate, as attributed to a single comment."""
    total: float = Field(..., ge=0.0, le=1.0)


class ValueScore(ValueVector):
    """Composite value score of a post."""
    total: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    updated_at: datetime = Field(default_factory=utcnow)
    drivers: Optional[List[str]] = None

    @classmethod
    def from_contribution(cls, contribution: ContributionVector) -> "ValueScore":
        """Lift a comment contribution into a score usable for trust updates."""
        return cls(
            epistemic=contribution.epistemic,
            insight=contribution.insight,
            practical=contribution.practical,
            relational=contribution.relational,
            effort=contribution.effort,
            total=contribution.total,
            confidence=min(1.0, max(0.3, contribution.total)),
        )


class DiscussionQuality(BaseModel):
    """Thread-level discussion metrics."""
    informativeness: float = Field(..., ge=0.0, le=1.0)
    civility: float = Field(..., ge=0.0, le=1.0)
    reasoning_depth: float = Field(..., ge=0.0, le=1.0)
    cross_perspective: float = Field(..., ge=0.0, le=1.0)
    summary: str = ""


class CommentInsight(BaseModel):
    """Role and value attributed to one comment in its thread."""
    role: DiscussionRole = "other"
    contribution: ContributionVector


class DiscussionAnalysis(BaseModel):
    """Output of the discussion analyzer."""
    thread_quality: Optional[DiscussionQuality] = None
    comment_insights: Dict[str, CommentInsight] = {}
