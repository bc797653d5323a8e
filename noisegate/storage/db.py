"""Async SQLite store: sources, feed items, story groups and the removal log."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set

import aiosqlite
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from noisegate.errors import ConfigurationError
from noisegate.storage.migrations import apply_migrations
from noisegate.storage.models import (
    FeedItem,
    RemovalEvent,
    Source,
    StoryGroup,
    _fmt_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
# Stay well under SQLite's bound-parameter limit for IN (...) lookups
MAX_IN_PARAMS = 500


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


# Other processes (scheduled polls, cleanup, stream consumers) share the file.
_retry_locked = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


def _chunks(values: Sequence[str], size: int = MAX_IN_PARAMS) -> Iterable[Sequence[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


class DatabaseManager:
    """Async SQLite manager in WAL mode with a per-process write lock.

    Usage:
        db = DatabaseManager("data/noisegate.db")
        await db.initialize()
        # ... use db ...
        await db.close()
    """

    def __init__(self, db_path: str, cache_size_mb: int = 16, busy_timeout_ms: int = 5000):
        self.db_path = db_path
        self.cache_size_mb = cache_size_mb
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database, apply migrations, and configure pragmas."""
        if not self.db_path:
            raise ConfigurationError("Database path is empty; cannot open store")
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        apply_migrations(self.db_path)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(f"PRAGMA cache_size=-{self.cache_size_mb * 1000}")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA temp_store=MEMORY")
        await self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")

        logger.info("Database initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and begin a transaction."""
        assert self._conn is not None, "Database not initialized"
        async with self._write_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                await self._conn.commit()
            except BaseException:
                await self._conn.rollback()
                raise

    async def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement and commit. Returns affected row count."""
        assert self._conn is not None, "Database not initialized"
        async with self._write_lock:
            try:
                cursor = await self._conn.execute(sql, params)
                await self._conn.commit()
            except BaseException:
                await self._conn.rollback()
                raise
            return cursor.rowcount

    # --- Sources ---

    @_retry_locked
    async def upsert_source(self, source: Source) -> None:
        """Insert or update a source."""
        await self._write(
            """INSERT INTO sources
                   (id, url, name, is_active, poll_interval_minutes, consecutive_errors,
                    last_error, last_success_at, last_polled_at, source_type, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   url=excluded.url,
                   name=excluded.name,
                   is_active=excluded.is_active,
                   poll_interval_minutes=excluded.poll_interval_minutes,
                   consecutive_errors=excluded.consecutive_errors,
                   last_error=excluded.last_error,
                   last_success_at=excluded.last_success_at,
                   last_polled_at=excluded.last_polled_at,
                   source_type=excluded.source_type""",
            source.to_row(),
        )

    async def get_source(self, source_id: str) -> Optional[Source]:
        """Get a source by ID."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM sources WHERE id = ?", (source_id,)
        )
        row = await cursor.fetchone()
        return Source.from_row(dict(row)) if row else None

    async def get_active_sources(self) -> List[Source]:
        """Get all sources that are not disabled."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM sources WHERE is_active = 1 ORDER BY name, id"
        )
        rows = await cursor.fetchall()
        return [Source.from_row(dict(r)) for r in rows]

    async def list_sources(self) -> List[Source]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM sources ORDER BY name, id")
        rows = await cursor.fetchall()
        return [Source.from_row(dict(r)) for r in rows]

    async def get_source_urls(self, source_type: Optional[str] = None) -> Set[str]:
        assert self._conn is not None
        if source_type:
            cursor = await self._conn.execute(
                "SELECT url FROM sources WHERE source_type = ?", (source_type,)
            )
        else:
            cursor = await self._conn.execute("SELECT url FROM sources")
        return {r["url"] for r in await cursor.fetchall()}

    @_retry_locked
    async def record_source_success(self, source_id: str, now: Optional[datetime] = None) -> bool:
        """Stamp a successful poll and reset the error streak."""
        ts = _fmt_ts(now or utcnow())
        rows = await self._write(
            """UPDATE sources
               SET last_polled_at = ?, last_success_at = ?,
                   consecutive_errors = 0, last_error = NULL
               WHERE id = ?""",
            (ts, ts, source_id),
        )
        return rows > 0

    @_retry_locked
    async def record_source_failure(
        self,
        source_id: str,
        message: str,
        disable_threshold: int,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Increment the error streak and auto-disable at the threshold.

        Both happen in a single UPDATE, so concurrent failures cannot lose an
        increment. Returns the new streak, or None if the source is gone.
        """
        ts = _fmt_ts(now or utcnow())
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """UPDATE sources
                   SET consecutive_errors = consecutive_errors + 1,
                       last_error = ?,
                       last_polled_at = ?,
                       is_active = CASE WHEN consecutive_errors + 1 >= ? THEN 0 ELSE is_active END
                   WHERE id = ?""",
                (message, ts, disable_threshold, source_id),
            )
            if cursor.rowcount == 0:
                return None
            cursor = await conn.execute(
                "SELECT consecutive_errors FROM sources WHERE id = ?", (source_id,)
            )
            row = await cursor.fetchone()
        return row[0] if row else None

    @_retry_locked
    async def set_source_active(self, source_id: str, active: bool) -> bool:
        rows = await self._write(
            "UPDATE sources SET is_active = ? WHERE id = ?", (int(active), source_id)
        )
        return rows > 0

    @_retry_locked
    async def delete_source(self, source_id: str) -> bool:
        rows = await self._write("DELETE FROM sources WHERE id = ?", (source_id,))
        return rows > 0

    # --- Story groups ---

    async def get_recent_story_groups(self, since: datetime, limit: Optional[int] = None) -> List[StoryGroup]:
        """Live groups first seen at or after ``since``, oldest first."""
        assert self._conn is not None
        sql = """SELECT * FROM story_groups WHERE first_seen_at >= ? AND item_count > 0
                 ORDER BY first_seen_at, id"""
        params: list = [_fmt_ts(since)]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [StoryGroup.from_row(dict(r)) for r in rows]

    async def get_story_group(self, group_id: str) -> Optional[StoryGroup]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM story_groups WHERE id = ?", (group_id,)
        )
        row = await cursor.fetchone()
        return StoryGroup.from_row(dict(row)) if row else None

    @_retry_locked
    async def create_story_group(self, group: StoryGroup) -> None:
        await self._write(
            """INSERT INTO story_groups
                   (id, canonical_title, canonical_url, item_count, first_seen_at, last_updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            group.to_row(),
        )

    @_retry_locked
    async def increment_story_group(self, group_id: str, by: int = 1, now: Optional[datetime] = None) -> bool:
        """Atomically add ``by`` to item_count. False if the group no longer exists."""
        rows = await self._write(
            """UPDATE story_groups
               SET item_count = item_count + ?, last_updated_at = ?
               WHERE id = ?""",
            (by, _fmt_ts(now or utcnow()), group_id),
        )
        return rows > 0

    @_retry_locked
    async def decrement_story_group(self, group_id: str, by: int = 1) -> bool:
        """Atomically subtract ``by`` from item_count; may go negative."""
        rows = await self._write(
            "UPDATE story_groups SET item_count = item_count - ? WHERE id = ?",
            (by, group_id),
        )
        return rows > 0

    async def find_orphaned_story_group_ids(
        self, after_id: str = "", limit: int = DEFAULT_PAGE_SIZE
    ) -> List[str]:
        """Page through groups whose item_count has dropped to zero or below."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT id FROM story_groups WHERE item_count <= 0 AND id > ?
               ORDER BY id LIMIT ?""",
            (after_id, limit),
        )
        return [r["id"] for r in await cursor.fetchall()]

    @_retry_locked
    async def delete_story_group_if_orphaned(self, group_id: str) -> bool:
        """Delete only if the count is still <= 0 at delete time."""
        rows = await self._write(
            "DELETE FROM story_groups WHERE id = ? AND item_count <= 0", (group_id,)
        )
        return rows > 0

    # --- Feed items ---

    async def get_existing_external_ids(self, source_id: str, external_ids: Sequence[str]) -> Set[str]:
        """Which of ``external_ids`` are already stored for this source (index lookup)."""
        assert self._conn is not None
        found: Set[str] = set()
        unique_ids = list(dict.fromkeys(external_ids))
        for chunk in _chunks(unique_ids):
            placeholders = ",".join("?" * len(chunk))
            cursor = await self._conn.execute(
                f"""SELECT external_id FROM feed_items
                    WHERE source_id = ? AND external_id IN ({placeholders})""",
                (source_id, *chunk),
            )
            found.update(r["external_id"] for r in await cursor.fetchall())
        return found

    @_retry_locked
    async def insert_feed_item(self, item: FeedItem) -> bool:
        """Insert unless (source_id, external_id) already exists. True if inserted."""
        rows = await self._write(
            """INSERT OR IGNORE INTO feed_items
                   (id, source_id, source_name, external_id, title, title_normalized, url,
                    content, published_at, fetched_at, story_group_id, expires_at,
                    deletion_marker, is_hidden)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            item.to_row(),
        )
        return rows > 0

    async def get_item(self, item_id: str) -> Optional[FeedItem]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM feed_items WHERE id = ?", (item_id,))
        row = await cursor.fetchone()
        return FeedItem.from_row(dict(row)) if row else None

    async def get_items_by_source(
        self, source_id: str, after_id: str = "", limit: int = DEFAULT_PAGE_SIZE
    ) -> List[FeedItem]:
        """Keyset page of a source's items via the source_id index."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM feed_items WHERE source_id = ? AND id > ?
               ORDER BY id LIMIT ?""",
            (source_id, after_id, limit),
        )
        return [FeedItem.from_row(dict(r)) for r in await cursor.fetchall()]

    async def count_items(self, source_id: Optional[str] = None, story_group_id: Optional[str] = None) -> int:
        """Count items, optionally filtered by source or story group."""
        assert self._conn is not None
        if source_id:
            cursor = await self._conn.execute(
                "SELECT COUNT(*) FROM feed_items WHERE source_id = ?", (source_id,)
            )
        elif story_group_id:
            cursor = await self._conn.execute(
                "SELECT COUNT(*) FROM feed_items WHERE story_group_id = ?", (story_group_id,)
            )
        else:
            cursor = await self._conn.execute("SELECT COUNT(*) FROM feed_items")
        row = await cursor.fetchone()
        return row[0] if row else 0

    @_retry_locked
    async def mark_item_for_deletion(
        self,
        item_id: str,
        marker: str,
        expires_at: int,
        story_group_id: Optional[str] = None,
    ) -> bool:
        """Set the deletion marker, shorten expiry and release the group count.

        Marker and decrement commit together. Items that are already marked
        (or gone) are left alone and return False.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """UPDATE feed_items SET deletion_marker = ?, expires_at = ?
                   WHERE id = ? AND deletion_marker IS NULL""",
                (marker, expires_at, item_id),
            )
            if cursor.rowcount == 0:
                return False
            if story_group_id:
                await conn.execute(
                    "UPDATE story_groups SET item_count = item_count - 1 WHERE id = ?",
                    (story_group_id,),
                )
        return True

    async def find_sweepable_item_ids(
        self, now_epoch: int, after_id: str = "", limit: int = DEFAULT_PAGE_SIZE
    ) -> List[str]:
        """Items carrying a deletion marker or already past their expiry."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT id FROM feed_items
               WHERE (deletion_marker IS NOT NULL OR expires_at <= ?) AND id > ?
               ORDER BY id LIMIT ?""",
            (now_epoch, after_id, limit),
        )
        return [r["id"] for r in await cursor.fetchall()]

    @_retry_locked
    async def delete_items(self, item_ids: Sequence[str]) -> int:
        """Physically delete a batch of items in one transaction."""
        if not item_ids:
            return 0
        placeholders = ",".join("?" * len(item_ids))
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"DELETE FROM feed_items WHERE id IN ({placeholders})", tuple(item_ids)
            )
            return cursor.rowcount

    @_retry_locked
    async def reap_expired(self, now_epoch: int) -> int:
        """TTL reclamation: delete every item whose expires_at has passed."""
        return await self._write(
            "DELETE FROM feed_items WHERE expires_at <= ?", (now_epoch,)
        )

    async def get_unprocessed_items(self, limit: int = DEFAULT_PAGE_SIZE) -> List[FeedItem]:
        """Items the downstream classifier has not handled yet."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM feed_items
               WHERE ai_processed_at IS NULL AND deletion_marker IS NULL
               ORDER BY fetched_at LIMIT ?""",
            (limit,),
        )
        return [FeedItem.from_row(dict(r)) for r in await cursor.fetchall()]

    @_retry_locked
    async def save_classification(
        self,
        item_id: str,
        category: Optional[str],
        sentiment: Optional[str],
        summary: Optional[str],
        sentiment_score: Optional[int] = None,
        importance_score: Optional[int] = None,
    ) -> bool:
        """Write-back used by the classifier; never touches grouping columns."""
        rows = await self._write(
            """UPDATE feed_items
               SET category = ?, sentiment = ?, summary = ?,
                   sentiment_score = ?, importance_score = ?, ai_processed_at = ?
               WHERE id = ?""",
            (category, sentiment, summary, sentiment_score, importance_score,
             _fmt_ts(utcnow()), item_id),
        )
        return rows > 0

    # --- Change stream ---

    async def read_removal_events(self, after_seq: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> List[RemovalEvent]:
        """Next batch of unacknowledged removal records, in log order."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM item_removals WHERE seq > ? ORDER BY seq LIMIT ?",
            (after_seq, limit),
        )
        return [RemovalEvent.from_row(dict(r)) for r in await cursor.fetchall()]

    @_retry_locked
    async def ack_removal_events(self, up_to_seq: int) -> int:
        """Drop log records up to and including ``up_to_seq``."""
        return await self._write("DELETE FROM item_removals WHERE seq <= ?", (up_to_seq,))

    # --- Maintenance ---

    async def vacuum(self) -> None:
        """Run VACUUM to reclaim space and defragment."""
        assert self._conn is not None
        async with self._write_lock:
            await self._conn.execute("VACUUM")

    async def integrity_check(self) -> bool:
        """Run integrity check on the database."""
        assert self._conn is not None
        cursor = await self._conn.execute("PRAGMA integrity_check")
        row = await cursor.fetchone()
        return row is not None and row[0] == "ok"

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        assert self._conn is not None
        stats: Dict[str, Any] = {}

        for key, sql in (
            ("total_items", "SELECT COUNT(*) FROM feed_items"),
            ("marked_items", "SELECT COUNT(*) FROM feed_items WHERE deletion_marker IS NOT NULL"),
            ("total_sources", "SELECT COUNT(*) FROM sources"),
            ("active_sources", "SELECT COUNT(*) FROM sources WHERE is_active = 1"),
            ("total_story_groups", "SELECT COUNT(*) FROM story_groups"),
            ("orphaned_story_groups", "SELECT COUNT(*) FROM story_groups WHERE item_count <= 0"),
            ("pending_removals", "SELECT COUNT(*) FROM item_removals"),
        ):
            cursor = await self._conn.execute(sql)
            row = await cursor.fetchone()
            stats[key] = row[0] if row else 0

        cursor = await self._conn.execute(
            """SELECT source_id, COUNT(*) as cnt FROM feed_items
               GROUP BY source_id ORDER BY cnt DESC"""
        )
        stats["items_by_source"] = {r["source_id"]: r["cnt"] for r in await cursor.fetchall()}

        cursor = await self._conn.execute(
            "SELECT page_count * page_size as size FROM pragma_page_count(), pragma_page_size()"
        )
        row = await cursor.fetchone()
        stats["db_size_bytes"] = row[0] if row else 0

        return stats
