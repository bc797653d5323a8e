"""Exception types shared across the ingestion core."""

from __future__ import annotations

from typing import Optional


class NoiseGateError(Exception):
    """Base class for errors raised by the ingestion core."""


class ConfigurationError(NoiseGateError):
    """A required setting is missing or empty."""


class FetchError(NoiseGateError):
    """A feed could not be retrieved.

    ``status`` is the HTTP status when the server answered, otherwise None
    (DNS failure, connection reset, timeout). ``retryable`` is informational
    only; the poller never retries within a run.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        if retryable is None:
            retryable = status is None or status >= 500 or status == 429
        self.retryable = retryable


class FeedParseError(FetchError):
    """The response body was not a readable RSS/Atom document."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=None, retryable=False)
