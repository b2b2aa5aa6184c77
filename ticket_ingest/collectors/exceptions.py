from __future__ import annotations


class IngestError(Exception):
    """Base exception for ingestion pipeline failures."""


class ConfigError(IngestError):
    """Required configuration is missing or invalid."""


class FetchError(IngestError):
    """A Socrata request failed, either permanently or after exhausting retries."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url


class TransientFetchError(FetchError):
    """A retryable failure: 429, 5xx, network error or truncated response."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
        url: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, body=body, url=url)
        self.retry_after = retry_after


class StoreError(IngestError):
    """Reading or writing ticket or cursor rows failed."""
