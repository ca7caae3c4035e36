"""
Source handles: one live, swappable connection per data source.

A handle is shared by every request for its source. Queries hold the
handle's lock shared for as long as they touch the connection; swap and
close need it exclusive. Credential rotation must never stall a running
query, so swap only ever *tries* the exclusive lock. When the handle is
busy the replacement is staged as the single pending update and installed
by the next try_update() that finds the handle idle. A newer pending
update replaces (and closes) an older one.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, NamedTuple, Sequence

from sqlgate.core import MemoryRows, Queryable, QueryContext, RowSet
from sqlgate.errors import HandleClosed

log = logging.getLogger(__name__)


class SharedLock:
    """Readers share, writers exclude.

    A blocked writer holds off new readers so close() cannot starve
    under steady query load. try_acquire() never waits and never
    registers as a waiting writer.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting = 0

    def acquire_shared(self):
        with self._cond:
            while self._writer or self._waiting:
                self._cond.wait()
            self._readers += 1

    def release_shared(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def try_acquire(self) -> bool:
        with self._cond:
            if self._writer or self._readers:
                return False
            self._writer = True
            return True

    def acquire(self):
        with self._cond:
            self._waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting -= 1
            self._writer = True

    def release(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def shared(self):
        self.acquire_shared()
        try:
            yield
        finally:
            self.release_shared()


@dataclass
class PendingUpdate:
    """A replacement connection, label, and named queries awaiting install."""

    db: Queryable
    label: str = ""
    named: dict[str, str] = field(default_factory=dict)


class HandleView(NamedTuple):
    """What a reader sees of a handle while holding it shared."""

    source: str
    label: str
    db: Queryable
    named: dict[str, str]


class SourceHandle:
    """The live binding between a source name and its connection."""

    def __init__(self, source: str, db: Queryable, label: str = "",
                 named: dict[str, str] | None = None):
        if db is None:
            raise ValueError("database is None")
        self.source = source
        self._lock = SharedLock()
        self._db: Queryable | None = db
        self._label = label
        self._named = dict(named or {})

        # Single-slot pending update; only ever swapped whole.
        self._pending: PendingUpdate | None = None
        self._pending_mu = threading.Lock()

    def __repr__(self):
        return f"SourceHandle({self.source!r})"

    @property
    def label(self) -> str:
        with self._lock.shared():
            return self._label

    @property
    def named(self) -> dict[str, str]:
        with self._lock.shared():
            return dict(self._named)

    @property
    def closed(self) -> bool:
        with self._lock.shared():
            return self._db is None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    # ------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------

    @contextmanager
    def reading(self) -> Iterator[HandleView]:
        """Hold the handle shared and yield its current state.

        The lock is held for the whole with-block, not just while fetching
        the connection, so a swap cannot close the connection under a
        running query. Do not re-enter the handle's properties inside the
        block; use the view.
        """
        with self._lock.shared():
            if self._db is None:
                raise HandleClosed()
            yield HandleView(self.source, self._label, self._db, dict(self._named))

    def query(self, sql: str, params: Sequence = (),
              ctx: QueryContext | None = None) -> RowSet:
        """Run sql and return its rows fully fetched."""
        with self.reading() as view:
            rows = view.db.query(sql, params, ctx)
            try:
                return MemoryRows(rows.columns, list(rows))
            finally:
                rows.close()

    # ------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------

    def _stage(self, up: PendingUpdate | None) -> PendingUpdate | None:
        with self._pending_mu:
            old, self._pending = self._pending, up
        return old

    def _apply_locked(self, up: PendingUpdate):
        old = self._db
        self._db, self._label, self._named = up.db, up.label, dict(up.named)
        if old is not None and old is not up.db:
            _close_quietly(old, self.source)

    def swap(self, db: Queryable, label: str = "", named: dict[str, str] | None = None):
        """Replace the connection, label, and named queries.

        Installs immediately if the handle is idle, otherwise stages the
        update and returns without waiting.
        """
        if db is None:
            raise ValueError("new database is None")
        up = PendingUpdate(db, label, dict(named or {}))

        if self._lock.try_acquire():
            try:
                if self._db is None:
                    raise HandleClosed()
                # Anything staged earlier is older than up.
                stale = self._stage(None)
                if stale is not None:
                    _close_quietly(stale.db, self.source)
                self._apply_locked(up)
            finally:
                self._lock.release()
            log.debug("swapped connection for source %r", self.source)
            return

        stale = self._stage(up)
        if stale is not None:
            _close_quietly(stale.db, self.source)
        log.debug("source %r busy, update pending", self.source)

    def try_update(self) -> bool:
        """Install a pending update if the handle is idle. Never blocks."""
        if self._pending is None:
            return False
        if not self._lock.try_acquire():
            return False
        try:
            up = self._stage(None)
            if up is None:
                return False
            if self._db is None:
                _close_quietly(up.db, self.source)
                return False
            self._apply_locked(up)
        finally:
            self._lock.release()
        log.debug("applied pending update for source %r", self.source)
        return True

    def close(self):
        """Close the connection. Safe to call more than once."""
        self._lock.acquire()
        try:
            stale = self._stage(None)
            if stale is not None:
                _close_quietly(stale.db, self.source)
            if self._db is not None:
                db, self._db = self._db, None
                db.close()
        finally:
            self._lock.release()


def _close_quietly(db: Queryable, source: str):
    """Close a replaced connection; a failure only gets logged."""
    try:
        db.close()
    except Exception as e:
        log.warning("closing replaced connection for %r: %s", source, e)
