"""
Pydantic schemas for the content units the pipeline processes.

Both posts and comments satisfy the ContentUnit protocol, which is all that
risk triage, claim extraction and fact-check verification need to see.
"""

from datetime import datetime
from typing import List, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from trustpipe.schemas.claim import Claim, FactCheck
from trustpipe.schemas.policy import PolicyStatus
from trustpipe.schemas.trust import TrustScore, ValueStats
from trustpipe.schemas.value import ContributionVector, DiscussionQuality, DiscussionRole, ValueScore
from trustpipe.utils.timeutil import utcnow

ProcessingStatus = Literal["pending", "in_progress", "completed", "failed"]

MAX_COMMENT_DEPTH = 10


@runtime_checkable
class ContentUnit(Protocol):
    """Structural interface shared by posts and comments."""
    id: str
    author_id: str
    text: str
    image_ref: Optional[str]


class _Insights(BaseModel):
    """Fields written incrementally by the pipeline."""
    claims: Optional[List[Claim]] = None
    fact_checks: Optional[List[FactCheck]] = None
    fact_check_status: Optional[PolicyStatus] = None
    processing_status: Optional[ProcessingStatus] = None
    processing_started_at: Optional[datetime] = None


class PostDocument(_Insights):
    """A post as held by the document store."""
    id: str
    author_id: str
    text: str = ""
    image_ref: Optional[str] = None
    topic: Optional[str] = None
    semantic_topics: List[str] = []
    entities: List[str] = []
    repost_of_id: Optional[str] = None
    quote_of_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    value_score: Optional[ValueScore] = None
    value_explanation: Optional[str] = None
    discussion_quality: Optional[DiscussionQuality] = None

    @property
    def is_repost(self) -> bool:
        return self.repost_of_id is not None

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool(self.image_ref)


class CommentDocument(_Insights):
    """A comment on a post; replies point at their parent comment."""
    id: str
    post_id: str
    author_id: str
    text: str = ""
    image_ref: Optional[str] = None
    parent_comment_id: Optional[str] = None
    depth: int = Field(0, ge=0, le=MAX_COMMENT_DEPTH)
    created_at: datetime = Field(default_factory=utcnow)

    discussion_role: Optional[DiscussionRole] = None
    value_contribution: Optional[ContributionVector] = None

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool(self.image_ref)


class UserDocument(BaseModel):
    """A user record with its reputation state."""
    id: str
    handle: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    value_stats: Optional[ValueStats] = None
    trust_score: Optional[TrustScore] = None


def has_complete_fact_check_data(post: PostDocument) -> bool:
    """
    Check whether a post carries a finished fact-check result.

    A post is complete when its processing status has been cleared (or marked
    completed) and it carries either a policy status or fact checks for its
    claims.
    """
    if post.processing_status not in (None, "completed"):
        return False
    if post.fact_check_status is not None:
        return True
    return bool(post.claims) and bool(post.fact_checks)
