"""Title normalization and Jaccard matching against recent story groups."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

if TYPE_CHECKING:
    from noisegate.storage.models import StoryGroup

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
MAX_NORMALIZED_LENGTH = 100
MIN_TOKEN_LENGTH = 3

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "need",
    "this", "that", "these", "those", "it", "its", "they", "them",
    "their", "he", "she", "him", "her", "his", "hers", "we", "us", "our",
    "you", "your", "i", "me", "my", "what", "which", "who", "whom",
    "how", "why", "when", "where", "all", "each", "every", "both",
    "few", "more", "most", "other", "some", "such", "no", "nor", "not",
    "only", "own", "same", "so", "than", "too", "very", "just", "also",
})

_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")

_TRACKING_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "ref", "fbclid", "gclid",
}


def normalize_title(title: str) -> str:
    """Canonical form of a title used for story matching.

    Lower-cases, drops punctuation, collapses whitespace, removes short tokens
    and stop words, then truncates to 100 characters.
    """
    text = _PUNCT_RE.sub("", (title or "").lower())
    text = _WS_RE.sub(" ", text)
    tokens = [
        w for w in text.split(" ")
        if len(w) >= MIN_TOKEN_LENGTH and w not in STOP_WORDS
    ]
    return " ".join(tokens).strip()[:MAX_NORMALIZED_LENGTH]


def _tokens(normalized: str) -> set[str]:
    return {w for w in normalized.split(" ") if len(w) >= MIN_TOKEN_LENGTH}


def title_similarity(a: str, b: str) -> float:
    """Jaccard index of two normalized titles; 0.0 when either has no tokens."""
    words_a = _tokens(a)
    words_b = _tokens(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def match_story_group(
    normalized_title: str,
    candidates: Iterable["StoryGroup"],
    threshold: float = SIMILARITY_THRESHOLD,
) -> Optional["StoryGroup"]:
    """Return the best-scoring candidate at or above ``threshold``.

    Only a strictly greater score replaces the running best, so on ties the
    candidate seen first wins. Callers control that order.
    """
    best: Optional["StoryGroup"] = None
    best_score = 0.0
    for group in candidates:
        score = title_similarity(normalized_title, group.canonical_title)
        if score > best_score and score >= threshold:
            best = group
            best_score = score
    if best is not None:
        logger.debug("Matched %r to group %s (%.2f)", normalized_title, best.id, best_score)
    return best


def canonical_url(url: str) -> str:
    """Normalize a URL for a story group's canonical link.

    Lower-cases scheme and host, drops the fragment and trailing slash, and
    strips common tracking parameters.
    """
    try:
        parsed = urlparse(url.strip())
        scheme = parsed.scheme.lower()
        netloc = parsed.netloc.lower().rstrip(".")
        path = parsed.path.rstrip("/") or "/"
        if parsed.query:
            qs = parse_qs(parsed.query, keep_blank_values=True)
            filtered = {k: v for k, v in qs.items() if k.lower() not in _TRACKING_PARAMS}
            query = urlencode(filtered, doseq=True)
        else:
            query = ""
        return urlunparse((scheme, netloc, path, "", query, ""))
    except ValueError:
        return url.strip()
