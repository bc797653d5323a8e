"""Feed connectors for the ingestion core."""

from noisegate.connectors.rss import FeedEntry, RSSConnector, detect_dialect, parse_feed

__all__ = ["FeedEntry", "RSSConnector", "detect_dialect", "parse_feed"]
