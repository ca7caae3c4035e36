"""
sqlgate core: queryable sources, row sets, and the SQLite driver.

Infrastructure plumbing. Every other module depends on core, core depends
on nothing but errors.

- Queryable / RowSet  -> the capability any backing store must provide
- QueryContext        -> deadline + cancellation for a single query
- open_database()     -> SQLite source, fresh connection per query
- open_source()       -> open a connection string with a named driver
- run_sql()           -> execute SQL, return list[dict]
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, Sequence, runtime_checkable

from sqlgate.errors import ConfigError, ExecutionError, QueryCancelled


@runtime_checkable
class RowSet(Protocol):
    """Rows produced by one query, iterated as tuples. Close when done."""

    columns: list[str]

    def __iter__(self) -> Iterator[tuple]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Queryable(Protocol):
    """Anything that can run a SQL query in a transaction-like scope."""

    def query(self, sql: str, params: Sequence = (),
              ctx: Optional["QueryContext"] = None) -> RowSet:
        ...

    def close(self) -> None:
        ...


class QueryContext:
    """Deadline and cancellation state for one query.

    Drivers poll done() while a statement runs; the router calls check()
    before every row it keeps, so a slow or oversized result is abandoned
    as soon as the deadline passes.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout and timeout > 0 else None
        self.deadline = time.monotonic() + self.timeout if self.timeout else None
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() > self.deadline

    def done(self) -> bool:
        return self.cancelled or self.expired()

    def err(self) -> QueryCancelled | None:
        """The error a stopped query should report, or None to keep going."""
        if self.cancelled:
            return QueryCancelled("query cancelled")
        if self.expired():
            return QueryCancelled(f"query timed out after {self.timeout:g}s")
        return None

    def check(self):
        err = self.err()
        if err is not None:
            raise err


class MemoryRows:
    """A RowSet over rows already in memory."""

    def __init__(self, columns: Sequence[str], rows: Sequence[tuple] = ()):
        self.columns = list(columns)
        self.rows = [tuple(r) for r in rows]

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def close(self):
        pass


# ============================================================
# SQLite driver
# ============================================================

def sqlite_uri(url: str, read_only: bool = False) -> str:
    """Normalize a path or file: URL into a sqlite URI."""
    if url == ":memory:":
        uri = "file::memory:"
    elif url.startswith("file:"):
        uri = url
    else:
        uri = Path(url).absolute().as_uri()
    if read_only:
        uri += ("&" if "?" in uri else "?") + "mode=ro"
    return uri


def _wrap_error(err: sqlite3.Error, ctx: QueryContext | None) -> ExecutionError:
    # An interrupt from the progress handler means the context ended.
    if ctx is not None and ctx.done():
        return ctx.err()
    return ExecutionError(str(err))


class SQLiteRows:
    """Row set over a cursor. Owns its connection and rolls back on close."""

    def __init__(self, conn: sqlite3.Connection, cursor: sqlite3.Cursor,
                 ctx: QueryContext | None = None):
        self._conn = conn
        self._cursor = cursor
        self._ctx = ctx
        self.columns = [d[0] for d in cursor.description or ()]

    def __iter__(self) -> Iterator[tuple]:
        try:
            for row in self._cursor:
                yield tuple(row)
        except sqlite3.Error as e:
            raise _wrap_error(e, self._ctx) from e

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            if conn.in_transaction:
                conn.rollback()
        finally:
            conn.close()


class SQLiteDatabase:
    """A SQLite database addressed by path or file: URL.

    Fresh connection every query, so concurrent queries never share a
    cursor. One anchor connection stays open for the lifetime of the
    object: it pings the database at open time and keeps shared-cache
    memory databases alive between queries.
    """

    def __init__(self, url: str, read_only: bool = False):
        self.url = url
        self.uri = sqlite_uri(url, read_only)
        self._anchor = self._connect()
        self._anchor.execute("SELECT 1").fetchone()
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.uri, uri=True, check_same_thread=False,
                               timeout=10, isolation_level=None)

    def query(self, sql: str, params: Sequence = (),
              ctx: QueryContext | None = None) -> SQLiteRows:
        if self._closed:
            raise ExecutionError("database is closed")
        conn = self._connect()
        if ctx is not None:
            conn.set_progress_handler(lambda: 1 if ctx.done() else 0, 1000)
        try:
            # Deferred and never committed: the caller only ever reads.
            conn.execute("BEGIN")
            cursor = conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            conn.close()
            raise _wrap_error(e, ctx) from e
        return SQLiteRows(conn, cursor, ctx)

    def close(self):
        if not self._closed:
            self._closed = True
            self._anchor.close()

    def __repr__(self):
        return f"SQLiteDatabase({self.url!r})"


def open_database(url: str, read_only: bool = False) -> SQLiteDatabase:
    """Open a SQLite source. Raises sqlite3.Error if it cannot be reached."""
    return SQLiteDatabase(url, read_only=read_only)


# ============================================================
# Drivers
# ============================================================

DRIVERS: dict[str, Callable[[str], Queryable]] = {
    "sqlite": open_database,
    "sqlite3": open_database,
}


def register_driver(name: str, opener: Callable[[str], Queryable]):
    """Make a driver available to source specs by name."""
    DRIVERS[name] = opener


def open_source(driver: str, conn_string: str) -> Queryable:
    """Open conn_string with the named driver, failing as ConfigError."""
    opener = DRIVERS.get(driver)
    if opener is None:
        raise ConfigError(f"unknown driver {driver!r}")
    try:
        return opener(conn_string)
    except (sqlite3.Error, OSError) as e:
        raise ConfigError(f"open {driver}: {e}") from e


def run_sql(db: Queryable, query: str, params: Sequence = ()) -> list[dict]:
    """Execute SQL, return list of dicts."""
    rows = db.query(query, params)
    try:
        return [dict(zip(rows.columns, r)) for r in rows]
    finally:
        rows.close()
