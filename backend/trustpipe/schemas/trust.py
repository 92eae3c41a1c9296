"""
Pydantic schemas for per-user trust score and value aggregates.
"""

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from trustpipe.utils.timeutil import utcnow


class TrustComponents(BaseModel):
    """Labeled trust components, each 0-100."""
    quality_history: int = Field(..., ge=0, le=100)
    violation_history: int = Field(..., ge=0, le=100)
    engagement_quality: int = Field(..., ge=0, le=100)
    consistency: int = Field(..., ge=0, le=100)
    community_trust: int = Field(..., ge=0, le=100)


class TrustHistoryEntry(BaseModel):
    """One recomputation of the trust score."""
    score: int
    delta: int
    reason: str
    date: datetime = Field(default_factory=utcnow)


class TrustScore(BaseModel):
    """Bounded, historied reputation score. History is most-recent-first."""
    score: int = Field(..., ge=0, le=100)
    components: TrustComponents
    history: List[TrustHistoryEntry] = []
    last_updated: datetime = Field(default_factory=utcnow)


class ValueStats(BaseModel):
    """Rolling and lifetime contribution aggregates, recomputed from the ledger."""
    post_value_30d: float = 0.0
    comment_value_30d: float = 0.0
    lifetime_post_value: float = 0.0
    lifetime_comment_value: float = 0.0
    last_updated: datetime = Field(default_factory=utcnow)
