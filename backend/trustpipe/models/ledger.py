"""
SQLAlchemy model for the append-only contribution ledger.
"""

import uuid

from sqlalchemy import Column, DateTime, Float, Index, String, UniqueConstraint

from trustpipe.db.database import Base
from trustpipe.utils.timeutil import utcnow


class ValueContribution(Base):
    """
    One scored contribution by a user.

    Rows are never updated or deleted; aggregates are range queries over this
    table. The unique constraint backs the idempotency check on writes.
    """

    __tablename__ = "value_contributions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False, index=True)
    contribution_type = Column(String(20), nullable=False)  # post, comment
    source_id = Column(String(128), nullable=False)
    post_id = Column(String(128), nullable=False, index=True)
    comment_id = Column(String(128), nullable=True)
    value = Column(Float, nullable=False)
    domain = Column(String(100), nullable=False, default="general")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "contribution_type", "source_id", name="uq_contribution_source"),
        Index("ix_contributions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ValueContribution(user_id={self.user_id}, type='{self.contribution_type}', value={self.value})>"
