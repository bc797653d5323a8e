"""Storage layer - SQLite in WAL mode with a delete-trigger change log."""

from noisegate.storage.db import DatabaseManager
from noisegate.storage.models import (
    CleanupResult,
    FeedItem,
    PollResult,
    RemovalEvent,
    Source,
    SourceResult,
    StoryGroup,
)

__all__ = [
    "DatabaseManager",
    "CleanupResult",
    "FeedItem",
    "PollResult",
    "RemovalEvent",
    "Source",
    "SourceResult",
    "StoryGroup",
]
