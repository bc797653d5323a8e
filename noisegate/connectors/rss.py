"""RSS/Atom connector: aiohttp fetch, feedparser parse, plain-text snippets."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any, List, Optional, Union

import aiohttp
import feedparser
from bs4 import BeautifulSoup
from dateutil.parser import parse as dateparse

from noisegate.config import DEFAULT_USER_AGENT
from noisegate.errors import FeedParseError, FetchError

if TYPE_CHECKING:
    from noisegate.storage.models import Source

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml, text/xml"
DEFAULT_SNIPPET_CHARS = 500
DEFAULT_TIMEOUT = 30

ATOM = "atom"
RSS = "rss"

_TITLE_PREFIXES = (
    re.compile(r"^\[.*?\]\s*"),              # [subreddit] prefix
    re.compile(r"^/?r/\w+\s*[-–—]\s*"),  # r/subreddit - prefix
)
_WS_RE = re.compile(r"\s+")


@dataclass
class FeedEntry:
    """One candidate item extracted from a feed document."""

    external_id: str
    title: str
    url: str
    content: str
    published_at: datetime


def detect_dialect(body: Union[str, bytes]) -> str:
    """Atom when the document has a <feed> root with <entry> children, else RSS."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if "<feed" in body and "<entry" in body:
        return ATOM
    return RSS


def clean_title(title: str) -> str:
    """Strip source-specific noise prefixes such as ``[r/news]``."""
    for pattern in _TITLE_PREFIXES:
        title = pattern.sub("", title)
    return title.strip()


def strip_html(text: str) -> str:
    """Decode entities, drop tags and collapse whitespace."""
    if not text:
        return ""
    if "<" in text or "&" in text:
        text = BeautifulSoup(text, "lxml").get_text(" ")
    return _WS_RE.sub(" ", text).strip()


def parse_published(entry: Any, dialect: str, now: Optional[datetime] = None) -> datetime:
    """Entry timestamp in UTC, falling back to ``now`` when missing or malformed."""
    keys = ("updated", "published") if dialect == ATOM else ("published", "updated")
    for key in keys:
        # feedparser resolves named zones (EST, PDT) and normalizes to UTC
        parsed = entry.get(f"{key}_parsed")
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
        raw = entry.get(key)
        if not raw:
            continue
        try:
            dt = dateparse(str(raw))
        except (ValueError, OverflowError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return now or datetime.now(timezone.utc)


def _entry_link(entry: Any) -> str:
    for link in entry.get("links") or []:
        if link.get("rel", "alternate") == "alternate" and link.get("href"):
            return link["href"].strip()
    return (entry.get("link") or "").strip()


def _entry_body(entry: Any, dialect: str) -> str:
    content = ""
    if entry.get("content"):
        content = entry["content"][0].get("value") or ""
    summary = entry.get("summary") or ""
    if dialect == ATOM:
        return content or summary
    return summary or content


def parse_feed(
    body: Union[str, bytes],
    snippet_chars: int = DEFAULT_SNIPPET_CHARS,
    now: Optional[datetime] = None,
) -> List[FeedEntry]:
    """Parse a feed document into normalized entries.

    A well-formed feed with no entries yields an empty list. A body that
    feedparser cannot identify as any feed format raises FeedParseError.
    """
    dialect = detect_dialect(body)
    feed = feedparser.parse(body)
    entries = feed.get("entries") or []
    if not entries and not feed.get("version"):
        reason = feed.get("bozo_exception") or "unrecognized document"
        raise FeedParseError(f"Malformed feed body: {reason}")

    now = now or datetime.now(timezone.utc)
    items: List[FeedEntry] = []
    for entry in entries:
        title = clean_title(strip_html(entry.get("title") or ""))
        link = _entry_link(entry)
        if not title or not link:
            continue
        items.append(
            FeedEntry(
                external_id=(entry.get("id") or "").strip() or link,
                title=title,
                url=link,
                content=strip_html(_entry_body(entry, dialect))[:snippet_chars],
                published_at=parse_published(entry, dialect, now),
            )
        )
    logger.debug("Parsed %d/%d %s entries", len(items), len(entries), dialect)
    return items


class RSSConnector:
    """Fetch and parse one RSS/Atom feed.

    An aiohttp session may be injected; otherwise one is opened per fetch.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.snippet_chars = snippet_chars
        self._session = session

    @property
    def headers(self) -> dict:
        return {"User-Agent": self.user_agent, "Accept": ACCEPT_HEADER}

    async def fetch(self, source: "Source") -> List[FeedEntry]:
        """Fetch the source's feed and return its entries."""
        body = await self.fetch_body(source.url)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(parse_feed, body, self.snippet_chars)
        )

    async def fetch_body(self, url: str) -> bytes:
        """GET the feed URL. Non-2xx and transport failures raise FetchError."""
        if not url:
            raise FetchError("Source has no url", retryable=False)
        try:
            if self._session is not None:
                return await self._get(self._session, url)
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                return await self._get(session, url)
        except aiohttp.ClientError as e:
            raise FetchError(f"{type(e).__name__}: {e}") from e
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out after {self.timeout}s fetching {url}") from e

    async def _get(self, session: aiohttp.ClientSession, url: str) -> bytes:
        async with session.get(url, headers=self.headers) as resp:
            if not 200 <= resp.status < 300:
                raise FetchError(f"HTTP {resp.status}: {resp.reason}", status=resp.status)
            return await resp.read()
