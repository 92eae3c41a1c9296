"""
SQLAlchemy models for posts and comments.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from trustpipe.db.database import Base, JSONType
from trustpipe.utils.timeutil import utcnow


class Post(Base):
    """
    Database model for a post.

    Pipeline output columns are nullable; a NULL processing_status means the
    pipeline finished successfully.
    """

    __tablename__ = "posts"

    id = Column(String(128), primary_key=True)
    author_id = Column(String(128), nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    image_ref = Column(Text, nullable=True)
    topic = Column(String(100), nullable=True)
    semantic_topics = Column(JSONType, nullable=True)
    entities = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    repost_of_id = Column(String(128), nullable=True, index=True)
    quote_of_id = Column(String(128), nullable=True, index=True)

    processing_status = Column(String(20), nullable=True, index=True)  # pending, in_progress, completed, failed
    processing_started_at = Column(DateTime, nullable=True)
    claims = Column(JSONType, nullable=True)
    fact_checks = Column(JSONType, nullable=True)
    fact_check_status = Column(String(20), nullable=True, index=True)  # clean, needs_review, blocked
    value_score = Column(JSONType, nullable=True)
    value_explanation = Column(Text, nullable=True)
    discussion_quality = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_posts_status_created", "processing_status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post(id={self.id}, author_id={self.author_id}, status={self.processing_status})>"


class Comment(Base):
    """
    Database model for a comment. Replies point at their parent comment,
    forming a tree of bounded depth under each post.
    """

    __tablename__ = "comments"

    id = Column(String(128), primary_key=True)
    post_id = Column(String(128), ForeignKey("posts.id"), nullable=False, index=True)
    parent_comment_id = Column(String(128), ForeignKey("comments.id"), nullable=True, index=True)
    author_id = Column(String(128), nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    image_ref = Column(Text, nullable=True)
    depth = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    processing_status = Column(String(20), nullable=True, index=True)
    processing_started_at = Column(DateTime, nullable=True)
    claims = Column(JSONType, nullable=True)
    fact_checks = Column(JSONType, nullable=True)
    fact_check_status = Column(String(20), nullable=True)
    discussion_role = Column(String(20), nullable=True)
    value_contribution = Column(JSONType, nullable=True)

    def __repr__(self) -> str:
        return f"<Comment(id={self.id}, post_id={self.post_id}, depth={self.depth})>"
