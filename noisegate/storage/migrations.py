"""Version-controlled schema migrations for the NoiseGate store."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

# Each migration is (version, description, list_of_sql_statements)
MigrationStep = Tuple[int, str, List[str]]

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"


def _get_migrations() -> List[MigrationStep]:
    """Return ordered list of migrations."""
    return [
        (
            1,
            "Initial schema: sources, story_groups, feed_items, indexes",
            [SCHEMA_SQL_PATH.read_text(encoding="utf-8")],
        ),
        (
            2,
            "Add item_removals change log fed by a feed_items delete trigger",
            [
                """CREATE TABLE IF NOT EXISTS item_removals (
                       seq             INTEGER PRIMARY KEY AUTOINCREMENT,
                       item_id         TEXT NOT NULL,
                       source_id       TEXT,
                       story_group_id  TEXT,
                       deletion_marker TEXT,
                       removed_at      TEXT NOT NULL
                   );""",
                """CREATE TRIGGER IF NOT EXISTS trg_feed_items_removed
                   AFTER DELETE ON feed_items
                   BEGIN
                       INSERT INTO item_removals
                           (item_id, source_id, story_group_id, deletion_marker, removed_at)
                       VALUES
                           (OLD.id, OLD.source_id, OLD.story_group_id, OLD.deletion_marker,
                            strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now'));
                   END;""",
            ],
        ),
    ]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Get the current schema version, or 0 if no schema exists."""
    try:
        row = conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        return row[0] if row and row[0] is not None else 0
    except sqlite3.OperationalError:
        return 0


def apply_migrations(db_path: str) -> int:
    """Apply all pending migrations. Returns the final schema version."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")

        current = get_current_version(conn)
        applied = 0

        for version, description, statements in _get_migrations():
            if version <= current:
                continue

            logger.info("Applying migration v%d: %s", version, description)
            try:
                for sql in statements:
                    conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
                conn.commit()
                applied += 1
            except Exception:
                conn.rollback()
                logger.exception("Migration v%d failed", version)
                raise

        final = get_current_version(conn)
    finally:
        conn.close()

    if applied:
        logger.info("Applied %d migration(s). Schema at v%d", applied, final)
    else:
        logger.debug("Schema up to date at v%d", final)

    return final
