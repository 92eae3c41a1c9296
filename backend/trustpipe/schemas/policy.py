"""
Pydantic schema for the aggregated moderation decision.
"""

from typing import List, Literal

from pydantic import BaseModel

PolicyStatus = Literal["clean", "needs_review", "blocked"]

# Escalation order; a status may only move to the right within one evaluation
POLICY_SEVERITY = {"clean": 0, "needs_review": 1, "blocked": 2}


class PolicyDecision(BaseModel):
    """Moderation status for one post or comment. Derived, never stored on its own."""
    status: PolicyStatus
    reasons: List[str]
    escalate_to_human: bool = False
