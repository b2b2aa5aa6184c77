import io
import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

import pandas as pd
import psycopg2
import psycopg2.pool
from psycopg2.extensions import connection as Psycopg2Connection
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_format: Optional[str] = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers or logging.getLogger().handlers:
        return logger

    formatter = logging.Formatter(log_format or LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install a single root handler for command-line entry points."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def pg_retry():
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (psycopg2.OperationalError, psycopg2.InterfaceError)
        ),
        reraise=True,
    )


def rows_to_copy_buffer(
    rows: Iterable[dict[str, Any]], columns: list[str] | tuple[str, ...]
) -> io.StringIO:
    """Render rows in COPY text format, with \\N for NULL."""
    buf = io.StringIO()
    for row in rows:
        vals = []
        for c in columns:
            v = row.get(c)
            if v is None:
                vals.append("\\N")
            else:
                vals.append(
                    str(v)
                    .replace("\\", "\\\\")
                    .replace("\t", "\\t")
                    .replace("\n", "\\n")
                    .replace("\r", "\\r")
                )
        buf.write("\t".join(vals) + "\n")
    buf.seek(0)
    return buf


class PostgresEngine:
    """
    Owns a psycopg2 connection pool for one database.

    The pool is created on first use and released by close(). Every
    cursor() block runs in its own transaction on a pooled connection.
    """

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 4) -> None:
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self.logger = get_logger("postgres_engine")

    @property
    def pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        if self._pool is None or self._pool.closed:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                self.minconn, self.maxconn, dsn=self.dsn
            )
        return self._pool

    @contextmanager
    def transaction(self) -> Iterator[Psycopg2Connection]:
        pool = self.pool
        conn = pool.getconn()
        broken = False
        try:
            yield conn
            conn.commit()
        except Exception as e:
            self.logger.error(f"Transaction failed with error {e}")
            if conn.closed:
                broken = True
            else:
                conn.rollback()
            raise
        finally:
            pool.putconn(conn, close=broken)

    @contextmanager
    def cursor(self):
        with self.transaction() as conn:
            cur = conn.cursor()
            try:
                yield cur
            finally:
                cur.close()

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            self.logger.info("Closed connection pool")
        self._pool = None

    @pg_retry()
    def query(
        self,
        sql: str,
        params: dict[str, Any] | tuple | None = None,
    ) -> pd.DataFrame:
        """
        Execute a SELECT and return results as a DataFrame.

        Args:
            sql:    SQL string. Use %(name)s for named params or %s for positional.
            params: Dict for named params, tuple for positional, or None.
        """
        with self.cursor() as cur:
            cur.execute(sql, params)
            columns = [desc[0] for desc in cur.description]
            return pd.DataFrame(cur.fetchall(), columns=columns)

    @pg_retry()
    def execute(
        self,
        sql: str,
        params: dict[str, Any] | tuple | None = None,
    ) -> int:
        """
        Execute a DDL/DML statement (no result set). Returns the rowcount.

        Args:
            sql:    SQL string. Use %(name)s for named params or %s for positional.
            params: Dict for named params, tuple for positional, or None.
        """
        try:
            with self.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount
        except Exception as e:
            self.logger.error(f"Command failed with error {e}")
            raise

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
