"""NoiseGate: RSS/Atom ingestion, story-group dedup and lifecycle cleanup."""

__version__ = "0.1.0"
