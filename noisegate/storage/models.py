"""Data models for the NoiseGate storage layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import parse as dateparse

SOURCE_TYPE_SYSTEM = "system"
SOURCE_TYPE_USER = "user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Opaque record id such as ``sg-3f2a...``."""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def epoch_seconds(dt: datetime) -> int:
    return int(_as_utc(dt).timestamp())


def expiry_for(published_at: datetime, retention_days: int) -> int:
    """Absolute TTL timestamp: publication time plus the retention window."""
    return epoch_seconds(published_at + timedelta(days=retention_days))


@dataclass
class Source:
    """A pollable feed endpoint and its health counters."""

    id: str
    url: str
    name: str
    is_active: bool = True
    poll_interval_minutes: int = 15
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    source_type: str = SOURCE_TYPE_USER
    created_at: Optional[datetime] = None

    @classmethod
    def create(cls, url: str, name: str, source_type: str = SOURCE_TYPE_USER, **kwargs: Any) -> Source:
        return cls(
            id=new_id("src"),
            url=url,
            name=name,
            source_type=source_type,
            created_at=utcnow(),
            **kwargs,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.url,
            self.name,
            int(self.is_active),
            self.poll_interval_minutes,
            self.consecutive_errors,
            self.last_error,
            _fmt_ts(self.last_success_at),
            _fmt_ts(self.last_polled_at),
            self.source_type,
            _fmt_ts(self.created_at or utcnow()),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Source:
        return cls(
            id=row["id"],
            url=row["url"],
            name=row["name"],
            is_active=bool(row.get("is_active", 1)),
            poll_interval_minutes=row.get("poll_interval_minutes") or 15,
            consecutive_errors=row.get("consecutive_errors") or 0,
            last_error=row.get("last_error"),
            last_success_at=_parse_ts(row.get("last_success_at")),
            last_polled_at=_parse_ts(row.get("last_polled_at")),
            source_type=row.get("source_type") or SOURCE_TYPE_USER,
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class FeedItem:
    """One story instance ingested from one source.

    Classification fields belong to the downstream classifier and are only
    read here.
    """

    id: str
    source_id: str
    external_id: str
    title: str
    url: str
    published_at: datetime
    fetched_at: datetime
    expires_at: int
    story_group_id: Optional[str] = None
    source_name: str = ""
    content: str = ""
    title_normalized: str = ""
    is_hidden: bool = False
    deletion_marker: Optional[str] = None
    category: Optional[str] = None
    sentiment: Optional[str] = None
    summary: Optional[str] = None
    ai_processed_at: Optional[datetime] = None

    def to_row(self) -> tuple:
        """Insert row; classification columns are left to their defaults."""
        return (
            self.id,
            self.source_id,
            self.source_name,
            self.external_id,
            self.title,
            self.title_normalized,
            self.url,
            self.content,
            _fmt_ts(self.published_at),
            _fmt_ts(self.fetched_at),
            self.story_group_id,
            self.expires_at,
            self.deletion_marker,
            int(self.is_hidden),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> FeedItem:
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            source_name=row.get("source_name") or "",
            external_id=row["external_id"],
            title=row["title"],
            title_normalized=row.get("title_normalized") or "",
            url=row["url"],
            content=row.get("content") or "",
            published_at=_parse_ts(row["published_at"]) or utcnow(),
            fetched_at=_parse_ts(row["fetched_at"]) or utcnow(),
            story_group_id=row.get("story_group_id"),
            expires_at=row["expires_at"],
            deletion_marker=row.get("deletion_marker"),
            is_hidden=bool(row.get("is_hidden", 0)),
            category=row.get("category"),
            sentiment=row.get("sentiment"),
            summary=row.get("summary"),
            ai_processed_at=_parse_ts(row.get("ai_processed_at")),
        )


@dataclass
class StoryGroup:
    """Cluster of items reporting the same story."""

    id: str
    canonical_title: str
    canonical_url: Optional[str]
    item_count: int
    first_seen_at: datetime
    last_updated_at: datetime

    @classmethod
    def create(cls, canonical_title: str, canonical_url: Optional[str], now: Optional[datetime] = None) -> StoryGroup:
        now = now or utcnow()
        return cls(
            id=new_id("sg"),
            canonical_title=canonical_title,
            canonical_url=canonical_url,
            item_count=1,
            first_seen_at=now,
            last_updated_at=now,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.canonical_title,
            self.canonical_url,
            self.item_count,
            _fmt_ts(self.first_seen_at),
            _fmt_ts(self.last_updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> StoryGroup:
        return cls(
            id=row["id"],
            canonical_title=row["canonical_title"],
            canonical_url=row.get("canonical_url"),
            item_count=row["item_count"],
            first_seen_at=_parse_ts(row["first_seen_at"]) or utcnow(),
            last_updated_at=_parse_ts(row["last_updated_at"]) or utcnow(),
        )


@dataclass
class RemovalEvent:
    """A physical FeedItem removal, carrying the row's prior state."""

    item_id: str
    story_group_id: Optional[str]
    deletion_marker: Optional[str] = None
    source_id: Optional[str] = None
    seq: Optional[int] = None
    removed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> RemovalEvent:
        return cls(
            seq=row["seq"],
            item_id=row["item_id"],
            story_group_id=row.get("story_group_id"),
            deletion_marker=row.get("deletion_marker"),
            source_id=row.get("source_id"),
            removed_at=_parse_ts(row.get("removed_at")),
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional[RemovalEvent]:
        """Build from a stream record; None unless it is a REMOVE with an old image."""
        if record.get("eventName") != "REMOVE":
            return None
        old = record.get("oldImage")
        if not old:
            return None
        return cls(
            item_id=old.get("id", ""),
            story_group_id=old.get("storyGroupId") or None,
            deletion_marker=old.get("deletionMarker") or None,
            source_id=old.get("sourceId") or None,
        )


@dataclass
class SourceResult:
    """Outcome of polling one source."""

    source_id: str
    source_name: str = ""
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    item_errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error_message is None


@dataclass
class PollResult:
    """Aggregate result from one poll run."""

    sources_processed: int = 0
    items_found: int = 0
    new_items_saved: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[SourceResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourcesProcessed": self.sources_processed,
            "itemsFound": self.items_found,
            "newItemsSaved": self.new_items_saved,
            "errors": list(self.errors),
        }


@dataclass
class CleanupResult:
    """Aggregate result from one cleanup or stream invocation."""

    feed_items_marked: int = 0
    feed_items_deleted: int = 0
    story_groups_deleted: int = 0
    story_groups_decremented: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: CleanupResult) -> None:
        self.feed_items_marked += other.feed_items_marked
        self.feed_items_deleted += other.feed_items_deleted
        self.story_groups_deleted += other.story_groups_deleted
        self.story_groups_decremented += other.story_groups_decremented
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feedItemsMarked": self.feed_items_marked,
            "feedItemsDeleted": self.feed_items_deleted,
            "storyGroupsDeleted": self.story_groups_deleted,
            "storyGroupsDecremented": self.story_groups_decremented,
            "errors": list(self.errors),
        }


# --- Helpers ---

def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _fmt_ts(dt: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601 so stored timestamps compare correctly as text."""
    return _as_utc(dt).isoformat() if dt else None


def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return _as_utc(val)
    try:
        return _as_utc(dateparse(str(val)))
    except (ValueError, TypeError, OverflowError):
        return None
