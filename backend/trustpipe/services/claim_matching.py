"""
Token-overlap matching between newly extracted claims and the claims of a
post that has already been fact-checked.
"""

import re
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from trustpipe.schemas.claim import Claim, FactCheck

_NON_WORD = re.compile(r"[^\w\s]")


class ClaimMatch(NamedTuple):
    original_claim: Claim
    fact_check: Optional[FactCheck]
    similarity: float


def normalize_text(text: str) -> str:
    """Lowercase and replace punctuation with spaces."""
    return _NON_WORD.sub(" ", text.lower().strip())


def _word_set(text: str) -> Set[str]:
    return {word for word in text.split() if word}


def text_similarity(first: str, second: str) -> float:
    """
    Jaccard similarity between the word sets of two texts.

    Returns:
        1.0 for texts equal after normalization, 0.0 if either side has no
        words, otherwise |intersection| / |union|
    """
    normalized_first = normalize_text(first)
    normalized_second = normalize_text(second)
    if normalized_first.split() == normalized_second.split():
        return 1.0 if normalized_first.strip() else 0.0

    words_first = _word_set(normalized_first)
    words_second = _word_set(normalized_second)
    if not words_first or not words_second:
        return 0.0
    return len(words_first & words_second) / len(words_first | words_second)


def match_claims(
    new_claims: Iterable[Claim],
    original_claims: List[Claim],
    original_fact_checks: List[FactCheck],
    threshold: float = 0.7,
) -> Dict[str, ClaimMatch]:
    """
    Match each new claim to its most similar original claim.

    Args:
        new_claims: Claims extracted from the user's own text
        original_claims: Claims already attached to the referenced post
        original_fact_checks: Fact checks of the referenced post
        threshold: Minimum similarity for a match

    Returns:
        Mapping of new claim id to its best match at or above the threshold
    """
    checks_by_claim = {fc.claim_id: fc for fc in original_fact_checks}
    matches: Dict[str, ClaimMatch] = {}

    for claim in new_claims:
        best: Optional[ClaimMatch] = None
        for original in original_claims:
            similarity = text_similarity(claim.text, original.text)
            if similarity < threshold:
                continue
            if best is None or similarity > best.similarity:
                best = ClaimMatch(original, checks_by_claim.get(original.id), similarity)
        if best is not None:
            matches[claim.id] = best

    return matches
