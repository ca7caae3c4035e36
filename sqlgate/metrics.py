"""
Request and error counters, injected into the server.

Two counter groups:
    request  html, csv, json, meta
    error    auth, bad_request, internal, query
"""

import threading
from collections import Counter

REQUEST_KINDS = ("html", "csv", "json", "meta")
ERROR_KINDS = ("auth", "bad_request", "internal", "query")


class Metrics:
    """Thread-safe labelled counters. One instance per server by default."""

    def __init__(self):
        self._mu = threading.Lock()
        self._counts = {"request": Counter(), "error": Counter()}

    def incr(self, group: str, kind: str, n: int = 1):
        with self._mu:
            self._counts[group][kind] += n

    def request(self, kind: str):
        self.incr("request", kind)

    def error(self, kind: str):
        self.incr("error", kind)

    def get(self, group: str, kind: str) -> int:
        with self._mu:
            return self._counts[group][kind]

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Current values, every known kind present even when zero."""
        with self._mu:
            return {
                "counter_api_request": {k: self._counts["request"][k] for k in REQUEST_KINDS},
                "counter_api_error": {k: self._counts["error"][k] for k in ERROR_KINDS},
            }
