from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import requests
from requests.exceptions import (
    ChunkedEncodingError,
    ConnectionError,
    JSONDecodeError,
    Timeout,
)
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ticket_ingest.collectors.config import DEFAULT_BASE_URL
from ticket_ingest.collectors.exceptions import FetchError, TransientFetchError

RETRYABLE_STATUSES = frozenset({429})


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max(0.0, (retry_at - datetime.now(UTC)).total_seconds())


class wait_retry_after(wait_base):
    """Use the server's Retry-After when present, else fall back to `fallback`."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return retry_after
        return self.fallback(retry_state)


class SocrataClient:
    """Executes paginated SODA queries with exponential-backoff retry."""

    def __init__(
        self,
        app_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = 1000,
        page_delay: float = 0.1,
        max_attempts: int = 5,
        initial_backoff: float = 1.0,
        request_timeout: float = 120,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.app_token = app_token
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.page_delay = page_delay
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.request_timeout = request_timeout
        self.logger = logging.getLogger("socrata_client")
        self._sleep = sleep

        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if self.app_token:
            self._session.headers["X-App-Token"] = self.app_token

        self._retrying = Retrying(
            retry=retry_if_exception_type(TransientFetchError),
            stop=stop_after_attempt(max_attempts),
            wait=wait_retry_after(
                wait_exponential(multiplier=initial_backoff, exp_base=2)
            ),
            before_sleep=self._log_retry,
            sleep=sleep,
            reraise=True,
        )

    def resource_url(self, dataset_id: str) -> str:
        return f"{self.base_url}/{dataset_id}.json"

    def paginate(
        self,
        dataset_id: str,
        columns: list[str] | tuple[str, ...] | None = None,
        where: str | None = None,
        order_by: str = ":id ASC",
    ) -> Iterator[list[dict[str, Any]]]:
        """
        Yield pages of results from a Socrata dataset until exhausted.

        Args:
            dataset_id:  Socrata 4x4 identifier.
            columns:     Columns to $select. None means all.
            where:       Optional $where clause.
            order_by:    $order clause. Must be stable for offset paging.

        Yields:
            Lists of dicts, one per page. Final page may be shorter than page_size.
        """
        offset = 0
        while True:
            params: dict[str, str] = {
                "$limit": str(self.page_size),
                "$offset": str(offset),
                "$order": order_by,
            }
            if columns:
                params["$select"] = ",".join(columns)
            if where:
                params["$where"] = where

            self.logger.info("Fetching %s page: offset=%d", dataset_id, offset)
            batch = self.fetch(self.resource_url(dataset_id), params)
            if not batch:
                break

            yield batch

            if len(batch) < self.page_size:
                break
            offset += self.page_size
            if self.page_delay > 0:
                self._sleep(self.page_delay)

    def fetch(self, url: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """GET a SODA resource, retrying transient failures. Raises FetchError."""
        return self._retrying(self._request, url, params or {})

    def _request(self, url: str, params: dict[str, str]) -> list[dict[str, Any]]:
        """Make a single request to the Socrata JSON endpoint."""
        self.logger.debug("GET %s  params=%s", url, params)
        try:
            resp = self._session.get(url, params=params, timeout=self.request_timeout)
        except (ConnectionError, Timeout, ChunkedEncodingError) as e:
            raise TransientFetchError(f"Request to {url} failed: {e}", url=url) from e
        except requests.RequestException as e:
            raise FetchError(f"Request to {url} failed: {e}", url=url) from e

        status = resp.status_code
        if status in RETRYABLE_STATUSES or status >= 500:
            raise TransientFetchError(
                f"HTTP {status} from {url}",
                status=status,
                body=resp.text,
                url=url,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if not 200 <= status < 300:
            raise FetchError(
                f"HTTP {status}: {resp.reason}", status=status, body=resp.text, url=url
            )

        if "X-Rate-Limit-Remaining" in resp.headers:
            self.logger.debug("Rate limit remaining: %s", resp.headers["X-Rate-Limit-Remaining"])
        try:
            body = resp.json()
        except JSONDecodeError as e:
            self.logger.warning(
                "Bad JSON on char %d of %d: ...%s...",
                e.pos,
                len(resp.text),
                resp.text[max(0, e.pos - 200) : e.pos + 200],
            )
            raise TransientFetchError(
                f"Unparseable JSON from {url}", status=status, url=url
            ) from e
        if not isinstance(body, list):
            raise FetchError(
                f"Expected a JSON array of rows from {url}, got {type(body).__name__}",
                status=status,
                body=resp.text,
                url=url,
            )
        return body

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.logger.warning(
            "%s, retrying in %.0fms (attempt %d/%d)",
            exc,
            wait * 1000,
            retry_state.attempt_number,
            self.max_attempts,
        )

    def close(self) -> None:
        self._session.close()
