"""
Source Registry: ordered catalog of source handles.

Single source of truth for source name -> handle resolution. Handles are
appended, never removed; re-registering a name swaps the connection of
the existing handle so references held elsewhere stay valid.

Every listing first gives each handle a chance to install a pending
update, so credential rotations land even under continuous load.
"""

import logging
import threading
from typing import Iterator

from sqlgate.core import Queryable
from sqlgate.errors import ConfigError
from sqlgate.handle import SourceHandle

log = logging.getLogger(__name__)


class SourceRegistry:
    """Append-only, insertion-ordered collection of SourceHandles."""

    def __init__(self, handles=()):
        self._mu = threading.Lock()
        self._handles: list[SourceHandle] = []
        for h in handles:
            self.add(h)

    def list(self) -> tuple[SourceHandle, ...]:
        """All handles in registration order, after applying pending updates."""
        with self._mu:
            for h in self._handles:
                h.try_update()
            return tuple(self._handles)

    def __iter__(self) -> Iterator[SourceHandle]:
        return iter(self.list())

    def __len__(self) -> int:
        with self._mu:
            return len(self._handles)

    def names(self) -> "list[str]":
        return [h.source for h in self.list()]

    def lookup(self, name: str) -> SourceHandle | None:
        """Resolve source name to its handle, or None."""
        for h in self.list():
            if h.source == name:
                return h
        return None

    def default(self) -> SourceHandle | None:
        """The first registered source."""
        handles = self.list()
        return handles[0] if handles else None

    def add(self, handle: SourceHandle):
        """Append a prebuilt handle. Names must be unique."""
        with self._mu:
            if any(h.source == handle.source for h in self._handles):
                raise ConfigError(f"duplicate source {handle.source!r}")
            self._handles.append(handle)

    def register(self, name: str, db: Queryable, label: str = "",
                 named: dict[str, str] | None = None) -> bool:
        """Add or replace the database for a source.

        Returns True if an existing handle was swapped, False if a new
        source was appended.
        """
        if db is None:
            raise ValueError("new database is None")
        with self._mu:
            for h in self._handles:
                if h.source == name:
                    h.swap(db, label, named)
                    return True
            self._handles.append(SourceHandle(name, db, label, named))
        log.info("registered source %r", name)
        return False

    def close(self):
        """Close every handle. Failures are raised together once all are closed."""
        errors = []
        for h in self.list():
            try:
                h.close()
            except Exception as e:
                errors.append(e)
        if errors:
            raise ExceptionGroup("closing sources", errors)
