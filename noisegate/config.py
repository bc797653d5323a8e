"""Process-wide settings, built once and passed into each component."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from noisegate.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_USER_AGENT = "NoiseGate/1.0 (RSS Aggregator)"

ENV_DB_PATH = "NOISEGATE_DB_PATH"
ENV_CONFIG_PATH = "NOISEGATE_CONFIG"


@dataclass(frozen=True)
class Settings:
    """Tunables for polling, dedup and cleanup.

    ``db_path`` defaults to an empty string when neither the config file nor
    the environment provides one; the store refuses to open in that case.
    """

    db_path: str = ""
    dedup_lookback_days: int = 7
    similarity_threshold: float = 0.6
    retention_days: int = 14
    auto_disable_threshold: int = 5
    sweep_batch_size: int = 25
    mark_expiry_seconds: int = 3600
    snippet_chars: int = 500
    error_message_chars: int = 500
    max_concurrent_sources: int = 10
    request_timeout_seconds: int = 30
    poll_timeout_seconds: int = 240
    cleanup_timeout_seconds: int = 300
    stream_batch_size: int = 100
    user_agent: str = DEFAULT_USER_AGENT
    system_sources: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> Settings:
        """Build settings from a parsed config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in (data or {}).items() if k in known}
        return cls(**kwargs)

    def require_db_path(self) -> str:
        if not self.db_path:
            raise ConfigurationError(
                f"Database path is not configured (set db_path or {ENV_DB_PATH})"
            )
        return self.db_path


def load_settings(
    config_path: Optional[str] = None,
    db_path: Optional[str] = None,
) -> Settings:
    """Load settings from YAML, then apply environment and explicit overrides.

    A missing config file is not an error: defaults apply.
    """
    path = config_path or os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.debug("Loaded settings from %s", path)
    else:
        logger.debug("Config %s not found; using defaults", path)

    env_db = os.environ.get(ENV_DB_PATH, "")
    if db_path:
        data["db_path"] = db_path
    elif env_db:
        data["db_path"] = env_db

    return Settings.from_mapping(data)
