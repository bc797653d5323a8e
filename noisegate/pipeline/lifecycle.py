"""Item lifecycle: source deletion, marked/expired sweep, count decrements, orphans.

Counts flow through two paths. Marking an item for deletion releases its
story-group count immediately. Every physical removal lands in the store's
removal log, and the stream consumer decrements for removals whose prior
state carries no deletion marker, i.e. items that expired naturally.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, Optional

from noisegate.config import Settings
from noisegate.storage.db import DEFAULT_PAGE_SIZE, DatabaseManager
from noisegate.storage.models import CleanupResult, FeedItem, RemovalEvent, epoch_seconds, utcnow

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Deletion and cleanup operations over the store."""

    def __init__(self, db: DatabaseManager, settings: Settings, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.db = db
        self.settings = settings
        self.page_size = page_size

    # --- Source deletion ---

    async def mark_source_for_deletion(self, source_id: str, now: Optional[datetime] = None) -> CleanupResult:
        """Fast-track a deleted source's items to expiry, then drop the source.

        Re-running for the same source only touches items not yet marked.
        """
        result = CleanupResult()
        expires_at = epoch_seconds(now or utcnow()) + self.settings.mark_expiry_seconds

        after_id = ""
        while True:
            page = await self.db.get_items_by_source(source_id, after_id=after_id, limit=self.page_size)
            if not page:
                break
            after_id = page[-1].id
            marked = await asyncio.gather(
                *(self._mark_item(item, source_id, expires_at, result) for item in page)
            )
            result.feed_items_marked += sum(marked)

        if not await self.db.delete_source(source_id):
            logger.info("Source %s was already deleted", source_id)
        logger.info("Marked %d item(s) of source %s for deletion", result.feed_items_marked, source_id)
        return result

    async def _mark_item(self, item: FeedItem, source_id: str, expires_at: int, result: CleanupResult) -> int:
        try:
            marked = await self.db.mark_item_for_deletion(
                item.id, source_id, expires_at, story_group_id=item.story_group_id
            )
        except Exception as e:
            logger.error("Failed to mark item %s: %s", item.id, e)
            result.errors.append(f"Failed to mark item {item.id}: {e}")
            return 0
        return 1 if marked else 0

    # --- Sweeps ---

    async def delete_marked(self, now: Optional[datetime] = None) -> CleanupResult:
        """Delete marked or expired items that TTL reclamation has not removed yet."""
        result = CleanupResult()
        now_epoch = epoch_seconds(now or utcnow())
        batch_size = self.settings.sweep_batch_size

        after_id = ""
        while True:
            ids = await self.db.find_sweepable_item_ids(now_epoch, after_id=after_id, limit=self.page_size)
            if not ids:
                break
            after_id = ids[-1]
            for i in range(0, len(ids), batch_size):
                batch = ids[i : i + batch_size]
                try:
                    result.feed_items_deleted += await self.db.delete_items(batch)
                except Exception as e:
                    logger.error("Batch delete of %d item(s) failed: %s", len(batch), e)
                    result.errors.append(f"Batch delete failed: {e}")

        logger.info("Deleted %d marked/expired item(s)", result.feed_items_deleted)
        return result

    async def expire_items(self, now: Optional[datetime] = None) -> int:
        """Store-level TTL reclamation of every item past its expiry."""
        removed = await self.db.reap_expired(epoch_seconds(now or utcnow()))
        logger.info("TTL reclaimed %d item(s)", removed)
        return removed

    async def cleanup_orphans(self) -> CleanupResult:
        """Delete story groups whose item count has reached zero or below."""
        result = CleanupResult()
        after_id = ""
        while True:
            ids = await self.db.find_orphaned_story_group_ids(after_id=after_id, limit=self.page_size)
            if not ids:
                break
            after_id = ids[-1]
            for group_id in ids:
                try:
                    if await self.db.delete_story_group_if_orphaned(group_id):
                        result.story_groups_deleted += 1
                except Exception as e:
                    logger.error("Failed to delete story group %s: %s", group_id, e)
                    result.errors.append(f"Failed to delete story group {group_id}: {e}")

        logger.info("Deleted %d orphaned story group(s)", result.story_groups_deleted)
        return result

    async def full(self, now: Optional[datetime] = None) -> CleanupResult:
        """Daily cleanup: sweep marked items, then orphans, even if the sweep failed."""
        result = CleanupResult()
        try:
            result.merge(await self.delete_marked(now=now))
        except Exception as e:
            logger.error("Marked-item sweep failed: %s", e)
            result.errors.append(f"deleteMarked: {e}")
        try:
            result.merge(await self.cleanup_orphans())
        except Exception as e:
            logger.error("Orphan sweep failed: %s", e)
            result.errors.append(f"cleanupOrphans: {e}")
        return result

    # --- Change stream ---

    async def apply_removals(self, events: Iterable[RemovalEvent]) -> CleanupResult:
        """Decrement story groups for a batch of removal events, one update per group."""
        result = CleanupResult()
        decrements: Dict[str, int] = defaultdict(int)
        skipped = 0
        total = 0
        for event in events:
            total += 1
            if not event.story_group_id:
                continue
            if event.deletion_marker:
                # Count was released when the item was marked
                skipped += 1
                continue
            decrements[event.story_group_id] += 1

        for group_id, count in decrements.items():
            try:
                if await self.db.decrement_story_group(group_id, count):
                    result.story_groups_decremented += 1
                    logger.debug("Decremented story group %s by %d", group_id, count)
                else:
                    logger.debug("Story group %s already gone; dropping decrement of %d", group_id, count)
            except Exception as e:
                logger.error("Failed to decrement story group %s: %s", group_id, e)
                result.errors.append(f"Failed to decrement story group {group_id}: {e}")

        logger.info(
            "Processed %d removal record(s): %d group(s) decremented, %d pre-released",
            total, result.story_groups_decremented, skipped,
        )
        return result

    async def drain_change_stream(self, max_batches: Optional[int] = None) -> CleanupResult:
        """Consume the store's removal log until empty.

        Each batch is acknowledged only after it has been applied, so a crash
        in between redelivers it.
        """
        result = CleanupResult()
        batches = 0
        while max_batches is None or batches < max_batches:
            events = await self.db.read_removal_events(limit=self.settings.stream_batch_size)
            if not events:
                break
            result.merge(await self.apply_removals(events))
            await self.db.ack_removal_events(events[-1].seq)
            batches += 1
        return result
