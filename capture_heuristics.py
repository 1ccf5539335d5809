"""
Page Preview - Capture Heuristics
URL-based estimates of page complexity used to pick timeouts and delays.
"""

import random
from typing import Callable, Optional

NON_CAPTURABLE_PREFIXES = (
    "chrome:",
    "chrome-extension:",
    "about:",
    "data:",
    "file:",
    "view-source:",
    "devtools:",
)

# Pages slow enough to render that batches wait longer before them
BATCH_COMPLEX_DOMAINS = (
    "facebook.com", "twitter.com", "instagram.com",
    "youtube.com", "reddit.com", "linkedin.com",
    "amazon.com", "ebay.com", "github.com",
)

TIMEOUT_COMPLEX_DOMAINS = BATCH_COMPLEX_DOMAINS + (
    "walmart.com", "cnn.com", "nytimes.com", "bbc.com",
    "gitlab.com", "stackoverflow.com",
)

SCROLL_COMPLEX_DOMAINS = (
    "facebook.com", "twitter.com", "instagram.com",
    "youtube.com", "reddit.com",
)

INFINITE_SCROLL_INDICATORS = (
    "feed", "timeline", "scroll", "infinite",
    "news", "forum", "blog", "post", "article",
)

LAZY_LOAD_INDICATORS = ("lazy", "infinite", "scroll")

BASE_CAPTURE_TIMEOUT_MS = 45000
MAX_CAPTURE_TIMEOUT_MS = 120000
TIMEOUT_BUFFER_MS = 5000

BASE_SCROLL_DELAY_MS = 100
BASE_BATCH_DELAY_MS = 1500
BATCH_DELAY_PER_CAPTURE_MS = 50
MAX_BATCH_GROWTH_MS = 2000
COMPLEX_DOMAIN_BATCH_DELAY_MS = 1000
BATCH_JITTER_MS = 500


def is_capturable_url(url: Optional[str]) -> bool:
    """Only http(s) pages can be captured"""
    if not url:
        return False
    lowered = url.lower()
    if lowered.startswith(NON_CAPTURABLE_PREFIXES):
        return False
    return lowered.startswith(("http://", "https://"))


def _matches(url: str, needles) -> bool:
    return any(needle in url for needle in needles)


def capture_timeout_ms(url: Optional[str]) -> int:
    """
    Overall capture timeout for a page.

    45s base, +20s for known heavy sites, +5s for https, +10s for URLs that
    look like infinite-scroll content, capped at 2 minutes.
    """
    timeout = BASE_CAPTURE_TIMEOUT_MS
    if not url:
        return timeout

    lowered = url.lower()
    if _matches(lowered, TIMEOUT_COMPLEX_DOMAINS):
        timeout += 20000
    if lowered.startswith("https://"):
        timeout += 5000
    if _matches(lowered, INFINITE_SCROLL_INDICATORS):
        timeout += 10000
    return min(timeout, MAX_CAPTURE_TIMEOUT_MS)


def scroll_delay_ms(url: Optional[str]) -> int:
    """Settle delay between scroll steps for a page"""
    delay = BASE_SCROLL_DELAY_MS
    if not url:
        return delay

    lowered = url.lower()
    if _matches(lowered, SCROLL_COMPLEX_DOMAINS):
        delay += 100
    if _matches(lowered, LAZY_LOAD_INDICATORS):
        delay += 50
    return delay


def inter_capture_delay_ms(processed: int, url: Optional[str],
                           rand: Callable[[], float] = random.random) -> float:
    """
    Wait before the next capture of a batch: grows with the number of
    captures already made, longer for heavy sites, plus jitter.
    """
    delay = BASE_BATCH_DELAY_MS + min(processed * BATCH_DELAY_PER_CAPTURE_MS, MAX_BATCH_GROWTH_MS)
    if url and _matches(url.lower(), BATCH_COMPLEX_DOMAINS):
        delay += COMPLEX_DOMAIN_BATCH_DELAY_MS
    return delay + rand() * BATCH_JITTER_MS
