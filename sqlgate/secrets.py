"""
Secret-backed connection strings and their rotation.

A FileSecretStore keeps one secret per file in a directory; a secret's
version is its file's modification time. A SecretUpdater owns the handle
of one secret-backed source. It opens the first connection when built,
then poll() reopens the source whenever the secret changes and installs
the new connection with handle.swap(), which never waits on running
queries.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable

from sqlgate.core import Queryable
from sqlgate.errors import ConfigError, GatewayError
from sqlgate.handle import SourceHandle

log = logging.getLogger(__name__)


class FileSecretStore:
    """Secrets as files: directory/<name> holds the value."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def __repr__(self):
        return f"FileSecretStore({str(self.directory)!r})"

    def get(self, name: str) -> tuple[str, int]:
        """Current (value, version) of a secret."""
        if not name or Path(name).name != name:
            raise ConfigError(f"invalid secret name {name!r}")
        path = self.directory / name
        try:
            version = path.stat().st_mtime_ns
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as e:
            raise ConfigError(f"secret {name!r} not found in {self.directory}") from e
        return value, version


class SecretUpdater:
    """Keeps one source's connection in step with a secret."""

    def __init__(self, store: FileSecretStore, name: str,
                 opener: Callable[[str], Queryable], source: str,
                 label: str = "", named: dict[str, str] | None = None):
        self.store = store
        self.name = name
        self.opener = opener
        self.source = source
        self.label = label
        self.named = dict(named or {})
        self.version: int | None = None
        self._value: str | None = None
        self.handle = SourceHandle(source, self.initial(), label, self.named)

    def initial(self) -> Queryable:
        """Fetch the secret and open the first connection."""
        value, version = self.store.get(self.name)
        db = self.opener(value)
        self._value, self.version = value, version
        log.info("opened new connection for source %r", self.source)
        return db

    def poll(self) -> bool:
        """Reopen the source if the secret changed. Reports whether it did."""
        value, version = self.store.get(self.name)
        if version == self.version:
            return False
        if value == self._value:
            self.version = version
            return False
        db = self.opener(value)
        log.info("opened new connection for source %r", self.source)
        try:
            self.handle.swap(db, self.label, self.named)
        except Exception:
            db.close()
            raise
        self._value, self.version = value, version
        return True

    async def run(self, interval: float = 60.0):
        """Poll until cancelled. Failures are logged and retried next round."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            try:
                await loop.run_in_executor(None, self.poll)
            except (GatewayError, OSError) as e:
                log.error("refreshing secret %r for source %r: %s",
                          self.name, self.source, e)
