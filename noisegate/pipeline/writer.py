"""Ingestion writer: new-vs-duplicate decision, story grouping, item persistence."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from noisegate.config import Settings
from noisegate.denoise.dedup import canonical_url, match_story_group, normalize_title
from noisegate.storage.db import DatabaseManager
from noisegate.storage.models import (
    FeedItem,
    Source,
    SourceResult,
    StoryGroup,
    expiry_for,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from noisegate.connectors.rss import FeedEntry

logger = logging.getLogger(__name__)


class IngestionWriter:
    """Writes parsed entries for one poll run.

    ``story_groups`` is the run's shared working set of recent groups. It is
    updated in place as items match or create groups, so later items in the
    same run (from any source) see earlier writes.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        story_groups: Optional[Iterable[StoryGroup]] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.story_groups: List[StoryGroup] = list(story_groups or [])
        self._lock = asyncio.Lock()

    async def write_source(
        self,
        source: Source,
        entries: List["FeedEntry"],
        result: Optional[SourceResult] = None,
    ) -> SourceResult:
        """Persist the entries of one source that are not stored yet.

        Per-item failures are logged and counted on ``result``; they never
        abort the batch.
        """
        result = result or SourceResult(source_id=source.id, source_name=source.name)
        if not entries:
            return result

        existing = await self.db.get_existing_external_ids(
            source.id, [e.external_id for e in entries]
        )
        logger.debug("Source %s: %d of %d entries already stored", source.id, len(existing), len(entries))

        seen = set(existing)
        for entry in entries:
            if entry.external_id in seen:
                result.duplicates += 1
                continue
            seen.add(entry.external_id)
            try:
                if await self.write_item(source, entry):
                    result.inserted += 1
                else:
                    result.duplicates += 1
            except Exception as e:
                result.errors += 1
                result.item_errors.append(f"Failed to save: {entry.title}")
                logger.error("Source %s: failed to save %r: %s", source.id, entry.title, e)
        return result

    async def write_item(self, source: Source, entry: "FeedEntry", now: Optional[datetime] = None) -> bool:
        """Group and store one entry. False if another writer stored it first."""
        now = now or utcnow()
        normalized = normalize_title(entry.title)

        async with self._lock:
            group = await self._assign_group(normalized, entry, now)
            item = FeedItem(
                id=new_id("fi"),
                source_id=source.id,
                source_name=source.name,
                external_id=entry.external_id,
                title=entry.title,
                title_normalized=normalized,
                url=entry.url,
                content=entry.content,
                published_at=entry.published_at,
                fetched_at=now,
                story_group_id=group.id,
                expires_at=expiry_for(entry.published_at, self.settings.retention_days),
                is_hidden=False,
            )
            try:
                inserted = await self.db.insert_feed_item(item)
            except Exception:
                await self._release(group)
                raise
            if not inserted:
                logger.debug("Item %s/%s already stored; releasing group count", source.id, entry.external_id)
                await self._release(group)
            return inserted

    async def _assign_group(self, normalized: str, entry: "FeedEntry", now: datetime) -> StoryGroup:
        group = match_story_group(normalized, self.story_groups, self.settings.similarity_threshold)
        if group is not None:
            if await self.db.increment_story_group(group.id, 1, now=now):
                group.item_count += 1
                group.last_updated_at = now
                return group
            # Removed by the orphan sweep after the window was loaded
            logger.info("Story group %s disappeared; creating a new one", group.id)
            self.story_groups.remove(group)

        group = StoryGroup.create(normalized, canonical_url(entry.url), now=now)
        await self.db.create_story_group(group)
        self.story_groups.append(group)
        return group

    async def _release(self, group: StoryGroup) -> None:
        """Undo the count taken for an item that was not stored."""
        try:
            await self.db.decrement_story_group(group.id, 1)
            group.item_count -= 1
        except Exception as e:
            logger.error("Failed to release count on story group %s: %s", group.id, e)
