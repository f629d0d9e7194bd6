"""
SQLite plumbing shared by the facts, notifications, and pending stores

One connection per operation; no connection is shared across threads.
Writers take the database lock up front (BEGIN IMMEDIATE) and retry lock
contention with bounded exponential backoff. Exhausted retries surface as
Timeout carrying the operation name.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from ..errors import Timeout


logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MESSAGES = (
    "database is locked",
    "database is busy",
    "database table is locked",
)


def is_transient(exc: BaseException) -> bool:
    """Lock contention worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(m in message for m in _TRANSIENT_MESSAGES)


@dataclass
class RetryPolicy:
    busy_timeout_ms: int = 2000
    retries: int = 5
    backoff_ms: int = 50

    def delays(self) -> List[float]:
        """Sleep (seconds) before each retry: 50ms, 100ms, 200ms, ..."""
        return [(self.backoff_ms / 1000.0) * (2 ** n) for n in range(self.retries)]


class SQLiteStore:
    """
    Base for meh's SQLite-backed stores.

    Subclasses set SCHEMA (idempotent DDL). The database file and WAL mode
    are created on construction.
    """

    SCHEMA = ""

    def __init__(self, path: Path, retry: Optional[RetryPolicy] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.retry = retry or RetryPolicy()
        self._with_retry(self._init_schema, "init_schema")

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def _connect(self, readonly: bool = False) -> sqlite3.Connection:
        if readonly:
            uri = self.path.resolve().as_uri() + "?mode=ro"
            conn = sqlite3.connect(uri, uri=True, isolation_level=None,
                                   timeout=self.retry.busy_timeout_ms / 1000.0)
        else:
            conn = sqlite3.connect(str(self.path), isolation_level=None,
                                   timeout=self.retry.busy_timeout_ms / 1000.0,
                                   cached_statements=256)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(self.retry.busy_timeout_ms)}")
        if not readonly:
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def write(self, operation: str) -> Iterator[sqlite3.Connection]:
        """
        Serialized write transaction.

        Everything executed on the yielded connection commits together or
        not at all.
        """
        conn = self._connect()
        try:
            self._with_retry(lambda: conn.execute("BEGIN IMMEDIATE"), operation)
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    @contextmanager
    def read(self, readonly: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Snapshot read. WAL readers never wait on writers.

        Args:
            readonly: open the file with mode=ro so nothing can be written
        """
        conn = self._connect(readonly=readonly)
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
        finally:
            conn.close()

    def _with_retry(self, fn: Callable[[], T], operation: str) -> T:
        delays = self.retry.delays()
        attempt = 0
        while True:
            try:
                return fn()
            except sqlite3.OperationalError as e:
                if not is_transient(e):
                    raise
                if attempt >= len(delays):
                    raise Timeout(
                        f"Storage busy: {operation} gave up after {attempt + 1} attempts",
                        operation=operation,
                        target=str(self.path),
                    ) from e
                logger.warning("%s: %s on %s, retrying in %.0fms",
                               operation, e, self.path.name, delays[attempt] * 1000)
                time.sleep(delays[attempt])
                attempt += 1
