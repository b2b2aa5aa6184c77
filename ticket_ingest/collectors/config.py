from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from ticket_ingest.collectors.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://data.cityofnewyork.us/resource"


@dataclass
class IngestSettings:
    """
    Runtime configuration for the ingestion pipeline and scheduler.

    Attributes:
        database_url:      PostgreSQL connection string. The only required value.
        app_token:         Socrata app token. Optional, raises the rate limit.
        base_url:          SODA resource endpoint prefix.
        page_size:         Rows requested per page ($limit).
        batch_size:        Rows per upsert statement.
        max_attempts:      Total attempts per HTTP request, first try included.
        initial_backoff:   Seconds to wait before the first retry; doubles after.
        page_delay:        Seconds to pause between two full pages.
        request_timeout:   Per-request timeout in seconds.
        interval_minutes:  Scheduler interval between sync cycles.
    """

    database_url: str
    app_token: str | None = None
    base_url: str = DEFAULT_BASE_URL
    page_size: int = 1000
    batch_size: int = 500
    max_attempts: int = 5
    initial_backoff: float = 1.0
    page_delay: float = 0.1
    request_timeout: float = 120
    interval_minutes: float = 15

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> IngestSettings:
        """
        Build settings from an optional .env file and the process environment.

        Values in the env file take precedence over os.environ. Raises
        ConfigError when DATABASE_URL is absent or a numeric value is invalid.
        """
        env_vars = cls._parse_env_file(env_path) if env_path else {}

        def get_var(name: str) -> str | None:
            value = env_vars.get(name) or os.environ.get(name)
            return value.strip() if value else None

        database_url = get_var("DATABASE_URL")
        if not database_url:
            raise ConfigError("Missing required environment variable: DATABASE_URL")

        app_token = get_var("NYC_OPEN_DATA_APP_TOKEN")
        if not app_token:
            logger.warning(
                "NYC_OPEN_DATA_APP_TOKEN not set. Requests may be rate-limited."
            )

        return cls(
            database_url=database_url,
            app_token=app_token,
            base_url=(get_var("SOCRATA_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            page_size=_positive(get_var, "INGEST_PAGE_SIZE", cls.page_size, int),
            batch_size=_positive(get_var, "INGEST_BATCH_SIZE", cls.batch_size, int),
            max_attempts=_positive(get_var, "INGEST_MAX_RETRIES", cls.max_attempts, int),
            initial_backoff=_positive(
                get_var, "INGEST_INITIAL_BACKOFF_SECONDS", cls.initial_backoff, float
            ),
            page_delay=_positive(
                get_var, "INGEST_PAGE_DELAY_SECONDS", cls.page_delay, float, allow_zero=True
            ),
            request_timeout=_positive(
                get_var, "INGEST_REQUEST_TIMEOUT_SECONDS", cls.request_timeout, float
            ),
            interval_minutes=_positive(
                get_var, "SCHEDULER_INTERVAL_MINUTES", cls.interval_minutes, float
            ),
        )

    @staticmethod
    def _parse_env_file(env_path: str | Path) -> dict[str, str]:
        env_vars = {}
        path = Path(env_path)

        if not path.exists():
            return env_vars

        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                match = re.match(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$", line)
                if match:
                    key, value = match.groups()
                    value = value.strip()
                    if (value.startswith('"') and value.endswith('"')) or (
                        value.startswith("'") and value.endswith("'")
                    ):
                        value = value[1:-1]
                    env_vars[key] = value

        return env_vars

    @property
    def redacted_database_url(self) -> str:
        parts = urlsplit(self.database_url)
        if not parts.password:
            return self.database_url
        netloc = parts.netloc.replace(f":{parts.password}@", ":****@", 1)
        return urlunsplit(parts._replace(netloc=netloc))

    def __repr__(self) -> str:
        return (
            f"IngestSettings(database_url={self.redacted_database_url!r}, "
            f"app_token={'****' if self.app_token else None!r}, "
            f"base_url={self.base_url!r}, page_size={self.page_size}, "
            f"batch_size={self.batch_size}, max_attempts={self.max_attempts}, "
            f"interval_minutes={self.interval_minutes})"
        )


def _positive(get_var, name, default, cast, allow_zero: bool = False):
    raw = get_var(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value
