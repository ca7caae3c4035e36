"""
Local Query Log: every successful query, per author, in a SQLite file.

Tables:
    queries        unique query text <-> autonumbered query_id
    raw_query_log  author, source, query_id, timestamp, elapsed (microseconds)
    query_log      view joining the two, for reading

Writes go through one connection guarded by a lock. submit() hands the
write to a single background worker so the caller never waits on disk.
reader() opens a separate read-only view of the same file, which the
server exposes as an ordinary source.

Schema changes are applied by migrate(): the live schema is reduced to a
digest and matched against a list of known prior schemas, each paired
with the statements that upgrade it.
"""

import hashlib
import json
import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache

from sqlgate.core import SQLiteDatabase, sqlite_uri
from sqlgate.errors import ConfigError

log = logging.getLogger(__name__)

_QUERY_LOG_VIEW = """\
CREATE VIEW IF NOT EXISTS query_log AS
  SELECT author, source, query, timestamp, elapsed
    FROM raw_query_log JOIN queries
   USING (query_id)"""

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS queries (
    query_id INTEGER PRIMARY KEY AUTOINCREMENT,
    query    TEXT NOT NULL,
    UNIQUE (query)
);

CREATE TABLE IF NOT EXISTS raw_query_log (
    author    TEXT NULL,
    source    TEXT NOT NULL,
    query_id  INTEGER NOT NULL REFERENCES queries (query_id),
    timestamp TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    elapsed   INTEGER NULL
);

""" + _QUERY_LOG_VIEW + ";\n"

# Before elapsed times were recorded.
_SCHEMA_NO_ELAPSED = """\
CREATE TABLE IF NOT EXISTS queries (
    query_id INTEGER PRIMARY KEY AUTOINCREMENT,
    query    TEXT NOT NULL,
    UNIQUE (query)
);

CREATE TABLE IF NOT EXISTS raw_query_log (
    author    TEXT NULL,
    source    TEXT NOT NULL,
    query_id  INTEGER NOT NULL REFERENCES queries (query_id),
    timestamp TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE VIEW IF NOT EXISTS query_log AS
  SELECT author, source, query, timestamp
    FROM raw_query_log JOIN queries
   USING (query_id);
"""


@dataclass(frozen=True)
class MigrationStep:
    """Statements that upgrade a database whose schema matches source."""

    source: str
    statements: tuple[str, ...]


_MIGRATIONS = [
    MigrationStep(
        source=_SCHEMA_NO_ELAPSED,
        statements=(
            "ALTER TABLE raw_query_log ADD COLUMN elapsed INTEGER NULL",
            "DROP VIEW query_log",
            _QUERY_LOG_VIEW,
        ),
    ),
]


# ============================================================
# Schema digests
# ============================================================

def schema_digest(db: sqlite3.Connection) -> str:
    """SHA-256 over the structure of db's schema, or "" if it has none.

    Tables contribute their columns (name, type, not-null, default, pk),
    indexes and views their whitespace-normalized SQL. SQLite's own
    bookkeeping tables are ignored.
    """
    entries = []
    rows = db.execute(
        "SELECT type, name, tbl_name, sql FROM sqlite_master ORDER BY type, name"
    ).fetchall()
    for kind, name, table, sql in rows:
        if name.startswith("sqlite_"):
            continue
        if kind == "table":
            cols = db.execute(f'PRAGMA table_info("{name}")').fetchall()
            entries.append([kind, name, [list(c[1:]) for c in cols]])
        else:
            entries.append([kind, name, table, " ".join((sql or "").split())])
    if not entries:
        return ""
    return hashlib.sha256(json.dumps(entries).encode("utf-8")).hexdigest()


@lru_cache(maxsize=None)
def script_digest(script: str) -> str:
    """Digest of the schema a SQL script produces on an empty database."""
    db = sqlite3.connect(":memory:")
    try:
        db.executescript(script)
        return schema_digest(db)
    finally:
        db.close()


def migrate(db: sqlite3.Connection, schema: str = _SCHEMA,
            updates: list[MigrationStep] | None = None):
    """Bring db up to schema, applying whichever updates lead there.

    An empty database gets schema directly. Each update runs in its own
    transaction. A schema that matches neither the target nor any
    update's source is a ConfigError.
    """
    updates = _MIGRATIONS if updates is None else updates
    target = script_digest(schema)

    for _ in range(len(updates) + 1):
        current = schema_digest(db)
        if current == "":
            db.executescript(schema)
            log.debug("initialized query log schema")
            return
        if current == target:
            return

        step = next((u for u in updates if script_digest(u.source) == current), None)
        if step is None:
            raise ConfigError(f"no migration from query log schema {current[:12]}")

        db.execute("BEGIN IMMEDIATE")
        try:
            for stmt in step.statements:
                db.execute(stmt)
        except sqlite3.Error:
            db.rollback()
            raise
        db.commit()
        log.info("migrated query log schema %s -> %s", current[:12], schema_digest(db)[:12])

    raise ConfigError("query log migrations did not reach the current schema")


# ============================================================
# Query log
# ============================================================

class QueryLog:
    """Append-only record of executed queries, backed by a SQLite file."""

    def __init__(self, path: str):
        self.path = str(path)
        self._mu = threading.Lock()
        self._db = sqlite3.connect(sqlite_uri(self.path), uri=True,
                                   check_same_thread=False, timeout=10,
                                   isolation_level=None)
        try:
            self._db.execute("PRAGMA journal_mode=WAL")
            migrate(self._db)
        except (sqlite3.Error, ConfigError):
            self._db.close()
            raise
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="querylog")
        self._closed = False

    def __repr__(self):
        return f"QueryLog({self.path!r})"

    def log_query(self, author: str, source: str, query: str, elapsed: float = 0.0):
        """Record one query. elapsed is in seconds; non-positive stores NULL."""
        micros = int(elapsed * 1_000_000) if elapsed > 0 else None
        with self._mu:
            db = self._db
            db.execute("BEGIN")
            try:
                row = db.execute(
                    "SELECT query_id FROM queries WHERE query = ?", (query,)
                ).fetchone()
                if row is None:
                    query_id = db.execute(
                        "INSERT INTO queries (query) VALUES (?)", (query,)
                    ).lastrowid
                else:
                    query_id = row[0]
                db.execute(
                    "INSERT INTO raw_query_log (author, source, query_id, elapsed) "
                    "VALUES (?, ?, ?, ?)",
                    (author or None, source, query_id, micros))
            except sqlite3.Error:
                db.rollback()
                raise
            db.commit()

    def submit(self, author: str, source: str, query: str,
               elapsed: float = 0.0) -> Future:
        """Record a query in the background. Failures are logged, not raised."""
        fut = self._pool.submit(self.log_query, author, source, query, elapsed)
        fut.add_done_callback(_report_failure)
        return fut

    def flush(self):
        """Wait until every submitted write has finished."""
        self._pool.submit(lambda: None).result()

    def reader(self) -> SQLiteDatabase:
        """A read-only Queryable over the log."""
        return SQLiteDatabase(self.path, read_only=True)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=True)
        with self._mu:
            self._db.close()


def _report_failure(fut: Future):
    err = fut.exception()
    if err is not None:
        log.warning("error logging query: %s", err)
