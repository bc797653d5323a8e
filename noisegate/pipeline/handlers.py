"""Invocation entry points: scheduled poll, scheduled cleanup, delete-source RPC, stream batches.

Each handler takes the trigger's payload as a plain dict and returns a plain
dict, opening the store itself unless one is passed in.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from noisegate.config import Settings
from noisegate.pipeline.lifecycle import LifecycleManager
from noisegate.pipeline.orchestrator import Connector, PollOrchestrator
from noisegate.storage.db import DatabaseManager
from noisegate.storage.models import CleanupResult, RemovalEvent

logger = logging.getLogger(__name__)

ACTION_MARK = "markForDeletion"
ACTION_DELETE_MARKED = "deleteMarked"
ACTION_CLEANUP_ORPHANS = "cleanupOrphans"
ACTION_FULL = "full"
CLEANUP_ACTIONS = (ACTION_MARK, ACTION_DELETE_MARKED, ACTION_CLEANUP_ORPHANS, ACTION_FULL)


@asynccontextmanager
async def open_store(settings: Settings, db: Optional[DatabaseManager] = None) -> AsyncIterator[DatabaseManager]:
    """Yield ``db`` as-is, or open (and later close) one from settings."""
    if db is not None:
        yield db
        return
    store = DatabaseManager(settings.require_db_path())
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


async def poll_handler(
    event: Optional[Dict[str, Any]],
    settings: Settings,
    db: Optional[DatabaseManager] = None,
    connector: Optional[Connector] = None,
) -> Dict[str, Any]:
    """Scheduled poll run. The payload is ignored."""
    logger.info("Poll triggered: %s", event or {})
    async with open_store(settings, db) as store:
        orchestrator = PollOrchestrator(store, settings, connector=connector)
        result = await orchestrator.run()
    return result.to_dict()


async def cleanup_handler(
    event: Optional[Dict[str, Any]],
    settings: Settings,
    db: Optional[DatabaseManager] = None,
) -> Dict[str, Any]:
    """Scheduled/invoked cleanup, or a stream batch when the payload has ``Records``."""
    event = event or {}
    if isinstance(event.get("Records"), list):
        return await stream_records_handler(event, settings, db=db)

    action = event.get("action") or ACTION_FULL
    source_id = event.get("sourceId")
    logger.info("Cleanup triggered: action=%s source=%s", action, source_id)

    result = CleanupResult()
    try:
        async with open_store(settings, db) as store:
            lifecycle = LifecycleManager(store, settings)
            result = await asyncio.wait_for(
                _run_action(lifecycle, action, source_id),
                timeout=settings.cleanup_timeout_seconds,
            )
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.error("Cleanup failed: %s", message)
        result.errors.append(message)

    logger.info("Cleanup completed: %s", result.to_dict())
    return result.to_dict()


async def _run_action(lifecycle: LifecycleManager, action: str, source_id: Optional[str]) -> CleanupResult:
    if action == ACTION_MARK:
        if not source_id:
            return CleanupResult(errors=["sourceId is required for markForDeletion"])
        return await lifecycle.mark_source_for_deletion(source_id)
    if action == ACTION_DELETE_MARKED:
        return await lifecycle.delete_marked()
    if action == ACTION_CLEANUP_ORPHANS:
        return await lifecycle.cleanup_orphans()
    if action == ACTION_FULL:
        return await lifecycle.full()
    return CleanupResult(errors=[f"Unknown cleanup action: {action}"])


async def delete_source_handler(
    event: Dict[str, Any],
    settings: Settings,
    db: Optional[DatabaseManager] = None,
) -> Dict[str, Any]:
    """Admin mutation ``{sourceId}`` -> ``{success, itemsMarked, error?}``."""
    source_id = (event or {}).get("sourceId")
    if not source_id:
        return {"success": False, "itemsMarked": 0, "error": "sourceId is required"}

    try:
        async with open_store(settings, db) as store:
            result = await LifecycleManager(store, settings).mark_source_for_deletion(source_id)
    except Exception as e:
        logger.error("Failed to delete source %s: %s", source_id, e)
        return {"success": False, "itemsMarked": 0, "error": str(e) or type(e).__name__}

    response: Dict[str, Any] = {"success": not result.errors, "itemsMarked": result.feed_items_marked}
    if result.errors:
        response["error"] = "; ".join(result.errors[:5])
    return response


async def stream_records_handler(
    event: Dict[str, Any],
    settings: Settings,
    db: Optional[DatabaseManager] = None,
) -> Dict[str, Any]:
    """Apply a delivered batch of change records; non-REMOVE records are ignored."""
    records = event.get("Records") or []
    events = []
    for record in records:
        removal = RemovalEvent.from_record(record)
        if removal is not None:
            events.append(removal)
        elif record.get("eventName") == "REMOVE":
            logger.warning(
                "Skipping REMOVE record %s without an oldImage; its group count is not released",
                record.get("eventID", "?"),
            )
    logger.info("Stream batch: %d record(s), %d removal(s)", len(records), len(events))
    async with open_store(settings, db) as store:
        result = await LifecycleManager(store, settings).apply_removals(events)
    return result.to_dict()
