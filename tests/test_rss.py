"""Tests for the RSS/Atom connector: parsing, snippets, dates and HTTP errors."""

from __future__ import annotations

from datetime import datetime, timezone

import aiohttp
import pytest

from noisegate.connectors.rss import (
    ACCEPT_HEADER,
    ATOM,
    RSS,
    RSSConnector,
    clean_title,
    detect_dialect,
    parse_feed,
    parse_published,
    strip_html,
)
from noisegate.errors import FeedParseError, FetchError
from noisegate.storage.models import Source

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RSS_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://example.com/</link>
    <item>
      <title>[r/news] First story</title>
      <link>https://example.com/1</link>
      <guid>guid-1</guid>
      <pubDate>Mon, 06 Sep 2021 16:45:00 GMT</pubDate>
      <description>&lt;p&gt;Hello &amp;amp; welcome&lt;/p&gt;</description>
    </item>
    <item>
      <title>Second story</title>
      <link>https://example.com/2</link>
      <pubDate>not a date</pubDate>
      <description>plain text body</description>
    </item>
  </channel>
</rss>
"""

ATOM_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <id>urn:example:feed</id>
  <updated>2024-01-02T10:00:00Z</updated>
  <entry>
    <title>Atom story</title>
    <id>urn:uuid:1</id>
    <link rel="alternate" href="https://example.org/a"/>
    <link rel="edit" href="https://example.org/edit/a"/>
    <published>2024-01-01T00:00:00Z</published>
    <updated>2024-01-02T10:00:00Z</updated>
    <summary>Short summary</summary>
    <content type="html">&lt;b&gt;Bold&lt;/b&gt; text</content>
  </entry>
</feed>
"""

EMPTY_BODY = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Quiet feed</title></channel></rss>
"""

ZONED_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Zoned News</title>
    <item>
      <title>Eastern story</title>
      <link>https://example.com/est</link>
      <pubDate>Tue, 10 Jun 2003 04:00:00 EST</pubDate>
    </item>
    <item>
      <title>Pacific story</title>
      <link>https://example.com/pdt</link>
      <pubDate>Tue, 10 Jun 2003 04:00:00 PDT</pubDate>
    </item>
  </channel>
</rss>
"""


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"", reason: str = "OK"):
        self.status = status
        self.reason = reason
        self._body = body

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession.get()."""

    def __init__(self, response=None, error: Exception = None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, headers=None):
        self.calls.append((url, headers))
        if self.error is not None:
            raise self.error
        return self.response


def make_source(url: str = "https://example.com/feed.xml") -> Source:
    return Source.create(url=url, name="Example")


# --- Helpers ---

class TestHelpers:
    def test_detect_dialect(self):
        assert detect_dialect(ATOM_BODY) == ATOM
        assert detect_dialect(RSS_BODY) == RSS
        assert detect_dialect("<rss><channel></channel></rss>") == RSS

    def test_clean_title_prefixes(self):
        assert clean_title("[r/worldnews] Big news") == "Big news"
        assert clean_title("r/technology - New chip") == "New chip"
        assert clean_title("Plain title") == "Plain title"

    def test_strip_html(self):
        assert strip_html("<p>Hello <b>world</b></p>") == "Hello world"
        assert strip_html("Tom &amp; Jerry") == "Tom & Jerry"
        assert strip_html("  spaced \n out ") == "spaced out"
        assert strip_html("") == ""


# --- Parsing ---

class TestParseFeed:
    def test_rss_entries(self):
        entries = parse_feed(RSS_BODY, now=NOW)
        assert len(entries) == 2

        first = entries[0]
        assert first.external_id == "guid-1"
        assert first.title == "First story"
        assert first.url == "https://example.com/1"
        assert first.content == "Hello & welcome"
        assert first.published_at == datetime(2021, 9, 6, 16, 45, tzinfo=timezone.utc)

    def test_missing_guid_falls_back_to_link(self):
        entries = parse_feed(RSS_BODY, now=NOW)
        assert entries[1].external_id == "https://example.com/2"

    def test_malformed_date_falls_back_to_now(self):
        entries = parse_feed(RSS_BODY, now=NOW)
        assert entries[1].published_at == NOW

    def test_named_timezone_converted_to_utc(self):
        entries = parse_feed(ZONED_BODY, now=NOW)
        assert entries[0].published_at == datetime(2003, 6, 10, 9, 0, tzinfo=timezone.utc)
        assert entries[1].published_at == datetime(2003, 6, 10, 11, 0, tzinfo=timezone.utc)

    def test_unparsed_date_uses_offset(self):
        entry = {"published": "2024-05-01T08:00:00+02:00"}
        assert parse_published(entry, RSS, now=NOW) == datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)

    def test_snippet_truncation(self):
        entries = parse_feed(RSS_BODY, snippet_chars=5, now=NOW)
        assert entries[0].content == "Hello"

    def test_atom_entry(self):
        entries = parse_feed(ATOM_BODY, now=NOW)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.external_id == "urn:uuid:1"
        assert entry.url == "https://example.org/a"
        assert entry.content == "Bold text"
        # Atom prefers <updated>
        assert entry.published_at == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)

    def test_empty_feed_is_not_an_error(self):
        assert parse_feed(EMPTY_BODY, now=NOW) == []

    def test_malformed_body_raises(self):
        with pytest.raises(FeedParseError) as exc_info:
            parse_feed(b"this is not a feed at all", now=NOW)
        assert exc_info.value.retryable is False


# --- HTTP ---

class TestRSSConnector:
    def test_headers(self):
        connector = RSSConnector(user_agent="TestAgent/1.0")
        assert connector.headers == {"User-Agent": "TestAgent/1.0", "Accept": ACCEPT_HEADER}

    @pytest.mark.asyncio
    async def test_fetch_parses_body(self):
        session = FakeSession(FakeResponse(200, RSS_BODY))
        connector = RSSConnector(user_agent="TestAgent/1.0", session=session)
        entries = await connector.fetch(make_source())
        assert [e.external_id for e in entries] == ["guid-1", "https://example.com/2"]
        url, headers = session.calls[0]
        assert url == "https://example.com/feed.xml"
        assert headers["User-Agent"] == "TestAgent/1.0"
        assert "application/rss+xml" in headers["Accept"]

    @pytest.mark.asyncio
    async def test_fetch_empty_feed(self):
        connector = RSSConnector(session=FakeSession(FakeResponse(200, EMPTY_BODY)))
        assert await connector.fetch(make_source()) == []

    @pytest.mark.asyncio
    async def test_http_404_raises_fetch_error(self):
        connector = RSSConnector(session=FakeSession(FakeResponse(404, reason="Not Found")))
        with pytest.raises(FetchError) as exc_info:
            await connector.fetch(make_source())
        assert exc_info.value.status == 404
        assert exc_info.value.retryable is False
        assert "404" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_503_is_retryable(self):
        connector = RSSConnector(session=FakeSession(FakeResponse(503, reason="Service Unavailable")))
        with pytest.raises(FetchError) as exc_info:
            await connector.fetch(make_source())
        assert exc_info.value.status == 503
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("connection reset"))
        connector = RSSConnector(session=session)
        with pytest.raises(FetchError) as exc_info:
            await connector.fetch(make_source())
        assert exc_info.value.status is None
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_missing_url(self):
        connector = RSSConnector(session=FakeSession(FakeResponse(200, RSS_BODY)))
        with pytest.raises(FetchError):
            await connector.fetch(make_source(url=""))
