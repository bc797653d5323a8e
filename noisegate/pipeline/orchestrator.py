"""Poll orchestrator for the NoiseGate ingestion core.

One run: load active sources, load the recent story-group window, then fetch,
dedup and write every source concurrently, recording each source's health.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from noisegate.config import Settings
from noisegate.connectors.rss import FeedEntry, RSSConnector
from noisegate.errors import FetchError
from noisegate.pipeline.health import SourceHealthTracker
from noisegate.pipeline.writer import IngestionWriter
from noisegate.storage.db import DatabaseManager
from noisegate.storage.models import PollResult, Source, SourceResult, StoryGroup, utcnow

logger = logging.getLogger(__name__)


class Connector(Protocol):
    """Anything that can turn a source into parsed feed entries."""

    async def fetch(self, source: Source) -> List[FeedEntry]:
        ...


def is_due(source: Source, now: datetime) -> bool:
    """Whether the source's poll interval has elapsed since its last poll."""
    if source.last_polled_at is None:
        return True
    return source.last_polled_at + timedelta(minutes=source.poll_interval_minutes) <= now


class PollOrchestrator:
    """Drives one poll run across all active sources.

    Usage:
        orchestrator = PollOrchestrator(db, settings)
        result = await orchestrator.run()
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        connector: Optional[Connector] = None,
        health: Optional[SourceHealthTracker] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.connector = connector or RSSConnector(
            user_agent=settings.user_agent,
            timeout=settings.request_timeout_seconds,
            snippet_chars=settings.snippet_chars,
        )
        self.health = health or SourceHealthTracker(db, settings)

    async def run(
        self,
        source_ids: Optional[Sequence[str]] = None,
        due_only: bool = False,
    ) -> PollResult:
        """Poll with the invocation-level timeout applied to the whole run."""
        return await asyncio.wait_for(
            self.poll_all(source_ids=source_ids, due_only=due_only),
            timeout=self.settings.poll_timeout_seconds,
        )

    async def poll_all(
        self,
        source_ids: Optional[Sequence[str]] = None,
        due_only: bool = False,
    ) -> PollResult:
        result = PollResult()
        t0 = time.monotonic()
        now = utcnow()

        sources = await self.db.get_active_sources()
        if source_ids:
            sources = [s for s in sources if s.id in source_ids]
        if due_only:
            sources = [s for s in sources if is_due(s, now)]
        if not sources:
            logger.info("No active sources to poll")
            return result
        logger.info("Polling %d active source(s)", len(sources))

        groups = await self._load_recent_groups(now)
        writer = IngestionWriter(self.db, self.settings, groups)

        sem = asyncio.Semaphore(self.settings.max_concurrent_sources)
        outcomes = await asyncio.gather(
            *(self._poll_source(source, writer, sem) for source in sources),
            return_exceptions=True,
        )

        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Poll task for %s failed: %s", source.id, outcome)
                result.errors.append(f"Source {source.name}: {outcome}")
                continue
            result.results.append(outcome)
            result.items_found += outcome.fetched
            result.new_items_saved += outcome.inserted
            result.errors.extend(outcome.item_errors)
            if outcome.success:
                result.sources_processed += 1
            else:
                result.errors.append(f"Source {source.name}: {outcome.error_message}")

        result.duration_seconds = time.monotonic() - t0
        logger.info(
            "Poll complete: %d/%d sources, %d found, %d saved, %d errors in %.1fs",
            result.sources_processed,
            len(sources),
            result.items_found,
            result.new_items_saved,
            len(result.errors),
            result.duration_seconds,
        )
        return result

    async def _load_recent_groups(self, now: datetime) -> List[StoryGroup]:
        """Recent story groups for matching; an empty window on failure."""
        since = now - timedelta(days=self.settings.dedup_lookback_days)
        try:
            groups = await self.db.get_recent_story_groups(since)
        except Exception as e:
            logger.warning("Failed to load recent story groups, grouping from scratch: %s", e)
            return []
        logger.info("Loaded %d recent story groups for dedup", len(groups))
        return groups

    async def _poll_source(
        self,
        source: Source,
        writer: IngestionWriter,
        sem: asyncio.Semaphore,
    ) -> SourceResult:
        """Fetch, dedup and write one source, then record its health."""
        result = SourceResult(source_id=source.id, source_name=source.name)
        t0 = time.monotonic()

        async with sem:
            try:
                entries = await self.connector.fetch(source)
                result.fetched = len(entries)
                if entries:
                    await writer.write_source(source, entries, result)
                await self.health.record_success(source.id)
                logger.info(
                    "Source %s: fetched=%d, inserted=%d, dups=%d, item_errors=%d",
                    source.name, result.fetched, result.inserted, result.duplicates, result.errors,
                )
            except Exception as e:
                result.error_message = str(e) or type(e).__name__
                result.errors += 1
                if isinstance(e, FetchError):
                    logger.error(
                        "Source %s fetch failed (status=%s, retryable=%s): %s",
                        source.name, e.status, e.retryable, e,
                    )
                else:
                    logger.error("Source %s failed: %s", source.name, e)
                await self.health.record_failure(source.id, result.error_message)

        result.duration_seconds = time.monotonic() - t0
        return result
