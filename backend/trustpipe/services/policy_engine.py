"""
Policy engine: aggregates claims and their fact checks into one moderation
status. Status only escalates within an evaluation (clean, needs_review,
blocked), so the result does not depend on claim order.
"""

from typing import Dict, List, Optional

from trustpipe.schemas.claim import Claim, FactCheck
from trustpipe.schemas.policy import POLICY_SEVERITY, PolicyDecision, PolicyStatus

BLOCK_CONFIDENCE = 0.7


def _escalate(current: PolicyStatus, candidate: PolicyStatus) -> PolicyStatus:
    return candidate if POLICY_SEVERITY[candidate] > POLICY_SEVERITY[current] else current


def evaluate_policy(claims: Optional[List[Claim]], fact_checks: Optional[List[FactCheck]]) -> PolicyDecision:
    """
    Evaluate the moderation status of a piece of content.

    Args:
        claims: Claims attached to the content
        fact_checks: Fact checks for those claims, matched by claim id

    Returns:
        PolicyDecision with one reason per problematic claim
    """
    claims = claims or []
    if not claims:
        return PolicyDecision(status="clean", reasons=["No extractable claims"], escalate_to_human=False)

    checks_by_claim: Dict[str, FactCheck] = {fc.claim_id: fc for fc in fact_checks or []}
    status: PolicyStatus = "clean"
    reasons: List[str] = []
    escalate = False

    for claim in claims:
        fact_check = checks_by_claim.get(claim.id)

        if fact_check is None:
            status = _escalate(status, "needs_review")
            reasons.append(f'Claim "{claim.text}" lacks verification.')
            escalate = True
        elif fact_check.verdict == "false" and fact_check.confidence > BLOCK_CONFIDENCE:
            status = _escalate(status, "blocked")
            reasons.append(f'Claim "{claim.text}" is false with high confidence.')
            escalate = True
        elif fact_check.verdict == "unknown":
            status = _escalate(status, "needs_review")
            reasons.append(f'Claim "{claim.text}" could not be verified.')
            escalate = True
        elif fact_check.verdict == "mixed":
            status = _escalate(status, "needs_review")
            reasons.append(f'Claim "{claim.text}" has mixed evidence.')
            escalate = True

    if not reasons:
        reasons.append("All claims verified.")

    return PolicyDecision(status=status, reasons=reasons, escalate_to_human=escalate)
