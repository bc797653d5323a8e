"""Title-based story deduplication."""

from noisegate.denoise.dedup import (
    STOP_WORDS,
    canonical_url,
    match_story_group,
    normalize_title,
    title_similarity,
)

__all__ = [
    "STOP_WORDS",
    "canonical_url",
    "match_story_group",
    "normalize_title",
    "title_similarity",
]
