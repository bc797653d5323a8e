"""Polling, ingestion, cleanup and the invocation entry points."""
