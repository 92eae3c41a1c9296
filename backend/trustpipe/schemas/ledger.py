"""
Pydantic schema for contribution ledger rows.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

ContributionType = Literal["post", "comment"]


class ContributionRecord(BaseModel):
    """One append-only ledger row."""
    user_id: str
    contribution_type: ContributionType
    value: float
    domain: str = "general"
    source_id: str
    post_id: str
    comment_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
