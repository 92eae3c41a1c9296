"""
SQLAlchemy model for users and their reputation state.
"""

from sqlalchemy import Column, DateTime, String

from trustpipe.db.database import Base, JSONType
from trustpipe.utils.timeutil import utcnow


class User(Base):
    """Database model for a user. Value stats and trust score are stored as JSON snapshots."""

    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    handle = Column(String(100), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    value_stats = Column(JSONType, nullable=True)
    trust_score = Column(JSONType, nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, handle='{self.handle}')>"
