"""
Evidence quality derived from the source URL's domain.
"""

import re
from typing import Optional
from urllib.parse import urlparse

TRUSTED_DOMAINS = {
    "who.int", "cdc.gov", "nih.gov", "fda.gov", "worldbank.org", "imf.org", "reuters.com",
    "apnews.com", "nature.com", "science.org", "ft.com", "nytimes.com", "theguardian.com",
}
BLOCKED_DOMAINS = {"facebook.com", "reddit.com", "tiktok.com", "instagram.com", "telegram.org"}

NO_URL_QUALITY = 0.4
UNKNOWN_DOMAIN_QUALITY = 0.5
MIN_EVIDENCE_QUALITY = 0.1

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^)]+)\)")
_PLAIN_URL = re.compile(r"(https?://[^\s)\]]+)")


def get_domain(url: Optional[str]) -> Optional[str]:
    """Hostname without a leading www., or None if the URL does not parse."""
    if not url:
        return None
    hostname = urlparse(url.strip()).hostname
    if not hostname:
        return None
    return re.sub(r"^www\.", "", hostname.lower())


def score_source(url: Optional[str]) -> float:
    """
    Score a source URL.

    Returns:
        0.95 for the trusted allow-list, 0.85 for .gov/.edu, 0.7 for .org,
        0 for the block-list, 0.5 for other domains and 0.4 without a usable URL
    """
    domain = get_domain(url)
    if domain is None:
        return NO_URL_QUALITY
    if domain in BLOCKED_DOMAINS:
        return 0.0
    if domain in TRUSTED_DOMAINS:
        return 0.95
    if domain.endswith(".gov") or domain.endswith(".edu"):
        return 0.85
    if domain.endswith(".org"):
        return 0.7
    return UNKNOWN_DOMAIN_QUALITY


def extract_url(text: Optional[str]) -> Optional[str]:
    """Pull a URL out of a markdown link or plain text."""
    if not text:
        return None
    match = _MARKDOWN_LINK.search(text)
    if match:
        return match.group(2)
    match = _PLAIN_URL.search(text)
    return match.group(1) if match else None
