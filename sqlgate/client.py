"""
Python client for a sqlgate server.

    c = Client("http://localhost:8080")
    info = c.server_info()
    rows = c.query("main", "select id, name from users")
    objs = c.query_json("main", "named:recent-users")

Every request carries the Sec-Sqlgate header, so /json is reachable.
"""

import csv
import io
import json
from dataclasses import dataclass, field

import httpx

from sqlgate.options import UILink, parse_duration
from sqlgate.server import NO_BROWSERS_HEADER


class ClientError(Exception):
    """The server answered with a non-200 status."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


@dataclass
class SourceInfo:
    source: str
    label: str = ""
    named: dict[str, str] = field(default_factory=dict)


@dataclass
class ServerInfo:
    sources: list[SourceInfo] = field(default_factory=list)
    links: list[UILink] = field(default_factory=list)
    query_timeout: float = 0.0


@dataclass
class Rows:
    columns: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)


class Client:

    def __init__(self, server: str, http: httpx.Client | None = None, timeout: float = 60.0):
        self.server = server.rstrip("/")
        self.http = http or httpx.Client(timeout=timeout)

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            rsp = self.http.get(self.server + path, params=params,
                                headers={NO_BROWSERS_HEADER: "1"})
        except httpx.HTTPError as e:
            raise ClientError(f"get {self.server + path}: {e}") from e
        if rsp.status_code != 200:
            lines = rsp.text.split("\n", 1)
            raise ClientError(lines[0].strip(), rsp.status_code)
        return rsp

    def server_info(self) -> ServerInfo:
        """Sources, links and query timeout the server reports."""
        meta = self._get("/meta").json().get("meta") or {}
        return ServerInfo(
            sources=[SourceInfo(s["source"], s.get("label", ""), s.get("named") or {})
                     for s in meta.get("sources") or []],
            links=[UILink(l["anchor"], l["url"]) for l in meta.get("links") or []],
            query_timeout=parse_duration(meta.get("queryTimeout") or "0"),
        )

    def query(self, source: str, sql: str) -> Rows:
        """Run sql against source, rows as strings via the CSV endpoint."""
        rsp = self._get("/csv", {"src": source, "q": sql})
        records = list(csv.reader(io.StringIO(rsp.text)))
        if not records:
            return Rows()
        return Rows(columns=records[0], rows=records[1:])

    def query_json(self, source: str, sql: str) -> list[dict]:
        """Run sql against source, one dict per row via the JSON endpoint."""
        rsp = self._get("/json", {"src": source, "q": sql})
        out = []
        for i, line in enumerate(rsp.text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                out.append(json.loads(line))
            except ValueError as e:
                raise ClientError(f"decode row {i}: {e}") from e
        return out
