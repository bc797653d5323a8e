"""Seed the configured system sources into the store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from noisegate.config import Settings
from noisegate.storage.db import DatabaseManager
from noisegate.storage.models import SOURCE_TYPE_SYSTEM, Source

logger = logging.getLogger(__name__)


async def seed_system_sources(
    db: DatabaseManager,
    settings: Settings,
    sources: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Create missing system sources; URLs that already exist are skipped."""
    wanted = sources if sources is not None else settings.system_sources
    result: Dict[str, Any] = {
        "sources_checked": len(wanted),
        "sources_created": 0,
        "sources_skipped": 0,
        "errors": [],
    }

    existing_urls = await db.get_source_urls(source_type=SOURCE_TYPE_SYSTEM)
    logger.info("Found %d existing system sources", len(existing_urls))

    for cfg in wanted:
        url = (cfg.get("url") or "").strip()
        name = cfg.get("name") or url
        if not url:
            result["errors"].append(f"System source {name!r} has no url")
            continue
        if url in existing_urls:
            logger.debug("Skipping existing source: %s", name)
            result["sources_skipped"] += 1
            continue
        try:
            source = Source.create(
                url=url,
                name=name,
                source_type=SOURCE_TYPE_SYSTEM,
                poll_interval_minutes=int(cfg.get("poll_interval_minutes", 15)),
            )
            await db.upsert_source(source)
            existing_urls.add(url)
            result["sources_created"] += 1
            logger.info("Created system source %s (%s)", name, url)
        except Exception as e:
            logger.error("Failed to create source %s: %s", name, e)
            result["errors"].append(f"Failed to create {name}: {e}")

    return result
