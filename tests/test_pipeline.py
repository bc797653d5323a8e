"""Tests for the poll pipeline: orchestrator, ingestion writer, source health."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from typing import List

import pytest

from noisegate.config import Settings
from noisegate.connectors.rss import FeedEntry
from noisegate.denoise.dedup import normalize_title
from noisegate.errors import FetchError
from noisegate.pipeline.health import SourceHealthTracker
from noisegate.pipeline.orchestrator import PollOrchestrator, is_due
from noisegate.pipeline.writer import IngestionWriter
from noisegate.storage.models import Source, StoryGroup, new_id, utcnow


def make_entries(*titles: str, prefix: str = "ext") -> List[FeedEntry]:
    now = utcnow()
    return [
        FeedEntry(
            external_id=f"{prefix}-{i}",
            title=title,
            url=f"https://example.com/{prefix}/{i}",
            content=f"Body of {title}",
            published_at=now,
        )
        for i, title in enumerate(titles)
    ]


class MockConnector:
    """Connector returning pre-configured entries per source URL."""

    def __init__(self, entries_by_url):
        self._entries = entries_by_url
        self.calls = []

    async def fetch(self, source: Source) -> List[FeedEntry]:
        self.calls.append(source.id)
        return self._entries.get(source.url, [])


class FailingConnector:
    async def fetch(self, source: Source) -> List[FeedEntry]:
        raise FetchError("HTTP 500: Internal Server Error", status=500)


class SlowConnector:
    async def fetch(self, source: Source) -> List[FeedEntry]:
        await asyncio.sleep(5)
        return []


async def add_source(db, url: str = "https://example.com/feed", name: str = "Example") -> Source:
    source = Source.create(url=url, name=name)
    await db.upsert_source(source)
    return source


async def add_group(db, title: str, age: timedelta, count: int = 1) -> StoryGroup:
    seen = utcnow() - age
    group = StoryGroup(
        id=new_id("sg"),
        canonical_title=normalize_title(title),
        canonical_url=None,
        item_count=count,
        first_seen_at=seen,
        last_updated_at=seen,
    )
    await db.create_story_group(group)
    return group


async def group_count(db) -> int:
    return (await db.get_stats())["total_story_groups"]


# --- Orchestrator Tests ---

class TestPollOrchestrator:
    @pytest.mark.asyncio
    async def test_poll_groups_new_and_near_duplicate_items(self, db, settings):
        source = await add_source(db)
        existing = await add_group(
            db, "Apple unveils iPhone model", age=timedelta(days=6, hours=23)
        )
        # 4 of 5 tokens shared with the existing group
        entries = make_entries(
            "Apple unveils iPhone model event",
            "Volcano erupts in Iceland overnight",
            "Senate passes budget bill",
        )
        orchestrator = PollOrchestrator(db, settings, connector=MockConnector({source.url: entries}))

        result = await orchestrator.run()

        assert result.to_dict() == {
            "sourcesProcessed": 1,
            "itemsFound": 3,
            "newItemsSaved": 3,
            "errors": [],
        }
        assert await db.count_items() == 3
        assert await group_count(db) == 3
        assert (await db.get_story_group(existing.id)).item_count == 2
        assert await db.count_items(story_group_id=existing.id) == 1

        loaded = await db.get_source(source.id)
        assert loaded.consecutive_errors == 0
        assert loaded.last_success_at is not None

    @pytest.mark.asyncio
    async def test_repoll_is_idempotent(self, db, settings):
        source = await add_source(db)
        entries = make_entries("Volcano erupts in Iceland", "Senate passes budget bill")
        orchestrator = PollOrchestrator(db, settings, connector=MockConnector({source.url: entries}))

        first = await orchestrator.run()
        second = await orchestrator.run()

        assert first.new_items_saved == 2
        assert second.new_items_saved == 0
        assert second.items_found == 2
        assert second.results[0].duplicates == 2
        assert await db.count_items() == 2
        assert await db.find_orphaned_story_group_ids() == []

    @pytest.mark.asyncio
    async def test_groups_outside_window_are_ignored(self, db, settings):
        source = await add_source(db)
        stale = await add_group(db, "Volcano erupts in Iceland", age=timedelta(days=8))
        entries = make_entries("Volcano erupts in Iceland")
        orchestrator = PollOrchestrator(db, settings, connector=MockConnector({source.url: entries}))

        await orchestrator.run()

        assert (await db.get_story_group(stale.id)).item_count == 1
        assert await group_count(db) == 2

    @pytest.mark.asyncio
    async def test_drained_groups_are_not_reused(self, db, settings):
        source = await add_source(db)
        drained = await add_group(db, "Volcano erupts in Iceland", age=timedelta(hours=1), count=-1)
        entries = make_entries("Volcano erupts in Iceland")
        orchestrator = PollOrchestrator(db, settings, connector=MockConnector({source.url: entries}))

        await orchestrator.run()

        assert (await db.get_story_group(drained.id)).item_count == -1
        assert await db.count_items(story_group_id=drained.id) == 0
        assert await group_count(db) == 2
        groups = await db.get_recent_story_groups(utcnow() - timedelta(days=1))
        assert [g.item_count for g in groups] == [1]

    @pytest.mark.asyncio
    async def test_same_story_across_sources_shares_group(self, db, settings):
        a = await add_source(db, "https://a.example.com/feed", "A")
        b = await add_source(db, "https://b.example.com/feed", "B")
        connector = MockConnector({
            a.url: make_entries("Scientists Discover New Exoplanet!", prefix="a"),
            b.url: make_entries("New Exoplanet Discovered by Scientists", prefix="b"),
        })
        orchestrator = PollOrchestrator(db, settings, connector=connector)

        result = await orchestrator.run()

        assert result.new_items_saved == 2
        assert await group_count(db) == 1
        groups = await db.get_recent_story_groups(utcnow() - timedelta(days=1))
        assert groups[0].item_count == 2

    @pytest.mark.asyncio
    async def test_failing_source_recorded(self, db, settings):
        source = await add_source(db, name="Broken")
        orchestrator = PollOrchestrator(db, settings, connector=FailingConnector())

        result = await orchestrator.run()

        assert result.sources_processed == 0
        assert result.errors == ["Source Broken: HTTP 500: Internal Server Error"]
        assert result.results[0].error_message == "HTTP 500: Internal Server Error"

        loaded = await db.get_source(source.id)
        assert loaded.consecutive_errors == 1
        assert loaded.last_error == "HTTP 500: Internal Server Error"
        assert loaded.is_active is True

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_others(self, db, settings):
        good = await add_source(db, "https://good.example.com/feed", "Good")
        await add_source(db, "https://bad.example.com/feed", "Bad")

        class MixedConnector:
            async def fetch(self, source):
                if source.url == good.url:
                    return make_entries("Senate passes budget bill")
                raise FetchError("HTTP 404: Not Found", status=404)

        result = await PollOrchestrator(db, settings, connector=MixedConnector()).run()

        assert result.sources_processed == 1
        assert result.new_items_saved == 1
        assert result.errors == ["Source Bad: HTTP 404: Not Found"]

    @pytest.mark.asyncio
    async def test_auto_disable_after_threshold(self, db, settings):
        source = await add_source(db)
        orchestrator = PollOrchestrator(db, settings, connector=FailingConnector())

        for _ in range(settings.auto_disable_threshold):
            await orchestrator.run()

        loaded = await db.get_source(source.id)
        assert loaded.consecutive_errors == settings.auto_disable_threshold
        assert loaded.is_active is False

        # Disabled sources are no longer polled
        result = await orchestrator.run()
        assert result.results == []
        assert (await db.get_source(source.id)).consecutive_errors == settings.auto_disable_threshold

    @pytest.mark.asyncio
    async def test_empty_feed_is_success(self, db, settings):
        source = await add_source(db)
        await db.record_source_failure(source.id, "earlier failure", 5)
        orchestrator = PollOrchestrator(db, settings, connector=MockConnector({}))

        result = await orchestrator.run()

        assert result.sources_processed == 1
        assert result.items_found == 0
        assert (await db.get_source(source.id)).consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_window_load_failure_is_not_fatal(self, db, settings, monkeypatch):
        source = await add_source(db)
        await add_group(db, "Volcano erupts in Iceland", age=timedelta(hours=1))

        async def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(db, "get_recent_story_groups", broken)
        entries = make_entries("Volcano erupts in Iceland")
        result = await PollOrchestrator(db, settings, connector=MockConnector({source.url: entries})).run()

        assert result.new_items_saved == 1
        # Grouped from scratch: a second group for the same story
        assert await group_count(db) == 2

    @pytest.mark.asyncio
    async def test_item_failure_is_counted_not_fatal(self, db, settings, monkeypatch):
        source = await add_source(db)
        original = db.insert_feed_item

        async def flaky(item):
            if item.title == "Broken headline here":
                raise sqlite3.IntegrityError("simulated write failure")
            return await original(item)

        monkeypatch.setattr(db, "insert_feed_item", flaky)
        entries = make_entries("Senate passes budget bill", "Broken headline here")
        result = await PollOrchestrator(db, settings, connector=MockConnector({source.url: entries})).run()

        assert result.sources_processed == 1
        assert result.new_items_saved == 1
        assert result.errors == ["Failed to save: Broken headline here"]
        assert result.results[0].errors == 1
        # The group taken for the failed item was released
        assert len(await db.find_orphaned_story_group_ids()) == 1

    @pytest.mark.asyncio
    async def test_source_filter_and_due_only(self, db, settings):
        a = await add_source(db, "https://a.example.com/feed", "A")
        b = await add_source(db, "https://b.example.com/feed", "B")
        await db.record_source_success(b.id)
        connector = MockConnector({})
        orchestrator = PollOrchestrator(db, settings, connector=connector)

        await orchestrator.run(source_ids=[a.id])
        assert connector.calls == [a.id]

        connector.calls.clear()
        await db.record_source_success(a.id, now=utcnow() - timedelta(hours=1))
        await orchestrator.run(due_only=True)
        assert connector.calls == [a.id]

    @pytest.mark.asyncio
    async def test_no_active_sources(self, db, settings):
        result = await PollOrchestrator(db, settings, connector=MockConnector({})).run()
        assert result.to_dict()["sourcesProcessed"] == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_run_is_bounded_by_timeout(self, db, tmp_db):
        await add_source(db)
        settings = Settings(db_path=tmp_db, poll_timeout_seconds=0.05)
        with pytest.raises(asyncio.TimeoutError):
            await PollOrchestrator(db, settings, connector=SlowConnector()).run()

    def test_is_due(self):
        now = utcnow()
        source = Source.create(url="https://example.com/feed", name="Example", poll_interval_minutes=15)
        assert is_due(source, now)
        source.last_polled_at = now - timedelta(minutes=5)
        assert not is_due(source, now)
        source.last_polled_at = now - timedelta(minutes=15)
        assert is_due(source, now)


# --- Writer Tests ---

class TestIngestionWriter:
    @pytest.mark.asyncio
    async def test_duplicates_within_batch_written_once(self, db, settings):
        source = await add_source(db)
        entry = make_entries("Senate passes budget bill")[0]
        writer = IngestionWriter(db, settings)

        result = await writer.write_source(source, [entry, entry])

        assert result.inserted == 1
        assert result.duplicates == 1
        assert await db.count_items() == 1

    @pytest.mark.asyncio
    async def test_item_fields(self, db, settings):
        source = await add_source(db, name="Wire")
        entry = make_entries("Senate Passes Budget Bill!")[0]
        writer = IngestionWriter(db, settings)
        await writer.write_source(source, [entry])

        item = (await db.get_items_by_source(source.id))[0]
        assert item.source_name == "Wire"
        assert item.title_normalized == "senate passes budget bill"
        assert item.deletion_marker is None
        assert item.is_hidden is False
        assert item.expires_at == int((entry.published_at + timedelta(days=14)).timestamp())
        group = await db.get_story_group(item.story_group_id)
        assert group.canonical_title == "senate passes budget bill"
        assert group.canonical_url == "https://example.com/ext/0"
        assert group.item_count == 1

    @pytest.mark.asyncio
    async def test_vanished_group_replaced(self, db, settings):
        source = await add_source(db)
        ghost = StoryGroup.create("senate passes budget bill", None)
        writer = IngestionWriter(db, settings, story_groups=[ghost])

        await writer.write_source(source, make_entries("Senate passes budget bill"))

        item = (await db.get_items_by_source(source.id))[0]
        assert item.story_group_id != ghost.id
        assert ghost not in writer.story_groups
        assert (await db.get_story_group(item.story_group_id)).item_count == 1

    @pytest.mark.asyncio
    async def test_lost_insert_race_releases_count(self, db, settings):
        source = await add_source(db)
        entry = make_entries("Senate passes budget bill")[0]
        first = IngestionWriter(db, settings)
        assert await first.write_item(source, entry) is True

        # A second writer that skipped the existing-id lookup
        group = first.story_groups[0]
        second = IngestionWriter(db, settings, story_groups=[group])
        assert await second.write_item(source, entry) is False
        assert (await db.get_story_group(group.id)).item_count == 1


# --- Health Tests ---

class TestSourceHealthTracker:
    @pytest.mark.asyncio
    async def test_disable_then_reset(self, db, settings):
        source = await add_source(db)
        health = SourceHealthTracker(db, settings)

        counts = [await health.record_failure(source.id, "boom") for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]
        assert await db.get_active_sources() == []

        await health.record_success(source.id)
        loaded = await db.get_source(source.id)
        assert loaded.consecutive_errors == 0
        # Re-enabling is a separate, explicit action
        assert loaded.is_active is False

    @pytest.mark.asyncio
    async def test_error_message_truncated(self, db, tmp_db):
        source = await add_source(db)
        health = SourceHealthTracker(db, Settings(db_path=tmp_db, error_message_chars=10))
        await health.record_failure(source.id, "x" * 50)
        assert (await db.get_source(source.id)).last_error == "x" * 10

    @pytest.mark.asyncio
    async def test_store_errors_are_swallowed(self, db, settings, monkeypatch):
        async def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(db, "record_source_failure", broken)
        monkeypatch.setattr(db, "record_source_success", broken)
        health = SourceHealthTracker(db, settings)

        assert await health.record_failure("src-1", "boom") is None
        await health.record_success("src-1")
