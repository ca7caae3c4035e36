"""
Server configuration.

Options are read from a JSON file with camelCase keys:

    {
      "localState":  "sqlgate-state.db",
      "localSource": "self",
      "sources": [
        {"source": "main", "label": "Main DB", "driver": "sqlite",
         "url": "file:main.db?mode=ro", "named": {"schema": "select ..."}}
      ],
      "links": [{"anchor": "docs", "url": "https://example.com"}],
      "routePrefix": "/sql",
      "queryTimeout": "30s",
      "secretsDir": "/run/secrets",
      "identityHeader": "X-Sqlgate-User",
      "access": {"main": ["alice@example.com"]}
    }

Each source names a driver and exactly one of url, keyFile, or secret.
Sources built in code pass a ready Queryable as db instead. Hooks that
cannot be written as JSON (identify, authorize, check_query, rewrite
rules, metrics) are set on the Options object directly.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from sqlgate.auth import AccessMap, AuthorizeFunc, HeaderIdentity, IdentifyFunc
from sqlgate.core import Queryable, open_source
from sqlgate.errors import ConfigError
from sqlgate.handle import SourceHandle
from sqlgate.metrics import Metrics
from sqlgate.named import load_named_queries
from sqlgate.query import Query
from sqlgate.render import MAX_UI_ROWS, RewriteRule
from sqlgate.router import MAX_ROWS
from sqlgate.secrets import FileSecretStore, SecretUpdater

log = logging.getLogger(__name__)

CONFIG_ENV = "SQLGATE_CONFIG"
DEFAULT_LABEL = "(unidentified database)"


# ============================================================
# Durations
# ============================================================

_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6,
    "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Seconds in a Go-style duration such as "30s", "1m30s" or "250ms"."""
    s = text.strip()
    if s in ("0", ""):
        return 0.0
    pos, total = 0, 0.0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if m is None:
            raise ConfigError(f"invalid duration {text!r}")
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    return total


def format_duration(seconds: float | None) -> str:
    """Inverse of parse_duration: 90 -> "1m30s", 0.25 -> "250ms"."""
    if not seconds or seconds <= 0:
        return "0s"
    if seconds < 1:
        if seconds < 1e-6:
            return f"{round(seconds * 1e9):d}ns"
        if seconds < 1e-3:
            return f"{round(seconds * 1e6, 3):g}µs"
        return f"{round(seconds * 1e3, 6):g}ms"
    h, rem = divmod(seconds, 3600)
    m, sec = divmod(rem, 60)
    out = ""
    if h:
        out += f"{int(h)}h"
    if h or m:
        out += f"{int(m)}m"
    return out + f"{round(sec, 9):g}s"


# ============================================================
# Specs
# ============================================================

@dataclass
class UILink:
    anchor: str
    url: str


@dataclass
class SourceSpec:
    """A database the server should serve."""

    source: str
    label: str = ""
    driver: str = ""
    named: dict[str, str] = field(default_factory=dict)
    named_dir: str = ""

    # Exactly one of these is set.
    url: str = ""
    key_file: str = ""
    secret: str = ""
    db: Optional[Queryable] = None

    def check_valid(self):
        if not self.source:
            raise ConfigError("missing source name")
        nconn = sum(1 for s in (self.url, self.key_file, self.secret) if s)
        if self.db is not None:
            if nconn:
                raise ConfigError(f"source {self.source!r}: no connection string is allowed when db is set")
            return
        if not self.driver:
            raise ConfigError(f"source {self.source!r}: missing driver name")
        if nconn != 1:
            raise ConfigError(f"source {self.source!r}: exactly one connection source must be set")

    def named_queries(self) -> dict[str, str]:
        """Named queries from named_dir, overlaid by the inline ones."""
        out = load_named_queries(os.path.expandvars(self.named_dir)) if self.named_dir else {}
        out.update(self.named)
        return out

    def connection_string(self) -> str:
        if self.url:
            return self.url
        path = Path(os.path.expandvars(self.key_file)).expanduser()
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"read key file for {self.source!r}: {e}") from e

    @classmethod
    def from_dict(cls, d: dict) -> "SourceSpec":
        if not isinstance(d, dict):
            raise ConfigError(f"source entry must be an object, got {type(d).__name__}")
        return cls(
            source=d.get("source", ""),
            label=d.get("label", ""),
            driver=d.get("driver", ""),
            named=dict(d.get("named") or {}),
            named_dir=d.get("namedDir", ""),
            url=d.get("url", ""),
            key_file=d.get("keyFile", ""),
            secret=d.get("secret", ""),
        )

    def to_dict(self) -> dict:
        out = {"source": self.source, "label": self.label, "driver": self.driver,
               "named": self.named, "namedDir": self.named_dir, "url": self.url,
               "keyFile": self.key_file, "secret": self.secret}
        return {k: v for k, v in out.items() if v}


@dataclass
class Options:
    local_state: str = ""
    local_source: str = ""
    sources: list[SourceSpec] = field(default_factory=list)
    links: list[UILink] = field(default_factory=list)
    route_prefix: str = ""
    query_timeout: float = 0.0          # seconds; 0 means no timeout
    secrets_dir: str = ""
    identity_header: str = ""
    access: dict[str, list[str]] = field(default_factory=dict)

    # Not read from or written to JSON.
    identify: Optional[IdentifyFunc] = None
    authorize: Optional[AuthorizeFunc] = None
    check_query: Optional[Callable[[Query], Query]] = None
    rewrite_rules: list[RewriteRule] = field(default_factory=list)
    secret_store: Optional[FileSecretStore] = None
    metrics: Optional[Metrics] = None
    max_rows: int = MAX_ROWS
    max_ui_rows: int = MAX_UI_ROWS
    secret_poll_interval: float = 60.0

    @classmethod
    def from_dict(cls, d: dict) -> "Options":
        if not isinstance(d, dict):
            raise ConfigError("config must be a JSON object")
        try:
            links = [UILink(anchor=l["anchor"], url=l["url"]) for l in d.get("links") or []]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"invalid link entry: {e}") from e
        timeout = d.get("queryTimeout") or 0
        return cls(
            local_state=d.get("localState", ""),
            local_source=d.get("localSource", ""),
            sources=[SourceSpec.from_dict(s) for s in d.get("sources") or []],
            links=links,
            route_prefix=d.get("routePrefix", ""),
            query_timeout=parse_duration(timeout) if isinstance(timeout, str) else float(timeout),
            secrets_dir=d.get("secretsDir", ""),
            identity_header=d.get("identityHeader", ""),
            access={k: list(v) for k, v in (d.get("access") or {}).items()},
        )

    def to_dict(self) -> dict:
        out = {
            "localState": self.local_state,
            "localSource": self.local_source,
            "sources": [s.to_dict() for s in self.sources],
            "links": [{"anchor": l.anchor, "url": l.url} for l in self.links],
            "routePrefix": self.route_prefix,
            "queryTimeout": format_duration(self.query_timeout) if self.query_timeout else "",
            "secretsDir": self.secrets_dir,
            "identityHeader": self.identity_header,
            "access": self.access,
        }
        return {k: v for k, v in out.items() if v}

    # ------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------

    def prefix(self) -> str:
        """Route prefix without a trailing slash: "/foo/" -> "/foo", "/" -> ""."""
        return self.route_prefix.removesuffix("/")

    def get_secret_store(self) -> FileSecretStore | None:
        if self.secret_store is None and self.secrets_dir:
            self.secret_store = FileSecretStore(os.path.expandvars(self.secrets_dir))
        return self.secret_store

    def get_identify(self) -> IdentifyFunc | None:
        if self.identify is None and self.identity_header:
            return HeaderIdentity(self.identity_header)
        return self.identify

    def get_authorize(self) -> AuthorizeFunc | None:
        if self.authorize is not None:
            return self.authorize
        if self.access:
            return AccessMap(self.access).authorize
        return None

    def local_state_path(self) -> str:
        return os.path.expandvars(self.local_state)


def load_options(path: str | Path) -> Options:
    """Read a JSON config file into Options."""
    path = Path(path).expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"reading config: {e}") from e
    except ValueError as e:
        raise ConfigError(f"parsing config {path}: {e}") from e
    return Options.from_dict(data)


# ============================================================
# Sources
# ============================================================

def check_sources(options: Options) -> list[str]:
    """Validate every source spec. Returns the secret names they require."""
    seen = set()
    secrets = []
    for spec in options.sources:
        spec.check_valid()
        if spec.source in seen:
            raise ConfigError(f"duplicate source {spec.source!r}")
        seen.add(spec.source)
        if spec.secret:
            secrets.append(spec.secret)
    if options.local_source and options.local_source in seen:
        raise ConfigError(f"local source {options.local_source!r} duplicates a configured source")
    if secrets and options.get_secret_store() is None:
        raise ConfigError("sources require secrets but no secret store is configured")
    return secrets


def open_sources(options: Options) -> tuple[list[SourceHandle], list[SecretUpdater]]:
    """Open a handle for every source spec, in order.

    Sources must already have passed check_sources. Secret-backed sources
    also yield the updater that keeps them current. If any source fails
    to open, those already opened are closed and the error is raised.
    """
    handles: list[SourceHandle] = []
    updaters: list[SecretUpdater] = []
    try:
        for spec in options.sources:
            label = spec.label or DEFAULT_LABEL
            named = spec.named_queries()

            if spec.db is not None:
                handles.append(SourceHandle(spec.source, spec.db, label, named))
            elif spec.secret:
                u = SecretUpdater(options.get_secret_store(), spec.secret,
                                  partial(open_source, spec.driver),
                                  spec.source, label, named)
                handles.append(u.handle)
                updaters.append(u)
            else:
                db = open_source(spec.driver, spec.connection_string())
                handles.append(SourceHandle(spec.source, db, label, named))
    except Exception:
        for h in handles:
            h.close()
        raise
    return handles, updaters


def generate_basic_config(path: str | Path):
    """Write a starter config for a local service. Never overwrites."""
    opts = Options(
        local_state="sqlgate-state.db",
        local_source="self",
        sources=[SourceSpec(
            source="main",
            label="Test database",
            driver="sqlite",
            url="file:test.db?mode=ro",
            named={"schema": "select * from sqlite_schema"},
        )],
        links=[UILink(anchor="sqlite docs", url="https://www.sqlite.org/lang.html")],
        query_timeout=30.0,
    )
    try:
        with open(path, "x", encoding="utf-8") as f:
            json.dump(opts.to_dict(), f, indent=2)
            f.write("\n")
    except FileExistsError as e:
        raise ConfigError(f"refusing to overwrite existing file {path}") from e
    log.info("generated sample config in %s", path)