"""Per-source poll outcome tracking and auto-disable."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from noisegate.config import Settings
from noisegate.storage.db import DatabaseManager

logger = logging.getLogger(__name__)


class SourceHealthTracker:
    """Records poll outcomes against sources.

    Health writes never raise: a failure to record health is logged and the
    surrounding poll carries on.
    """

    def __init__(self, db: DatabaseManager, settings: Settings) -> None:
        self.db = db
        self.disable_threshold = settings.auto_disable_threshold
        self.max_message_chars = settings.error_message_chars

    async def record_success(self, source_id: str, now: Optional[datetime] = None) -> None:
        try:
            await self.db.record_source_success(source_id, now=now)
        except Exception as e:
            logger.error("Failed to record success for source %s: %s", source_id, e)

    async def record_failure(
        self, source_id: str, message: str, now: Optional[datetime] = None
    ) -> Optional[int]:
        """Bump the error streak; returns the new count (None if not recorded)."""
        message = (message or "Unknown error")[: self.max_message_chars]
        try:
            count = await self.db.record_source_failure(
                source_id, message, self.disable_threshold, now=now
            )
        except Exception as e:
            logger.error("Failed to record failure for source %s: %s", source_id, e)
            return None

        if count is None:
            logger.warning("Source %s vanished before its failure was recorded", source_id)
        elif count >= self.disable_threshold:
            logger.warning(
                "Source %s disabled after %d consecutive errors (last: %s)",
                source_id, count, message,
            )
        return count
