"""
Result rendering: HTML-ready cells, CSV, and line-delimited JSON.

Result cells arrive with whatever Python type the driver produced
(None, int, float, str, bytes, datetime). Every renderer goes through
value_to_string() or json_rows() so the type dispatch lives in one place.

The HTML path additionally applies rewrite rules: for each cell, the
first rule whose column and value patterns match, and whose apply
function returns something other than None, replaces the cell. A rule
that returns None declines and evaluation falls through to the next.
"""

import base64
import csv
import json
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Iterable, Iterator, TextIO

MAX_UI_ROWS = 500


@dataclass
class ResultSet:
    """The generic tabular result of one query."""

    columns: list[str] = field(default_factory=list)
    rows: list[list] = field(default_factory=list)
    num_rows: int = 0          # rows fetched, before any display cut
    elapsed: float = 0.0       # seconds
    truncated: bool = False    # display shows fewer than num_rows
    more: bool = False         # the row cap stopped execution early


@dataclass(frozen=True)
class RewriteRule:
    """Rewrites rendered cell text for the HTML UI.

    column and value are regexps searched against the column name and the
    rendered text; None matches everything. apply(column, text, match)
    returns the replacement (str, or markupsafe.Markup to bypass escaping),
    or None to decline. A rule with no apply keeps the text as is.
    """

    column: re.Pattern | str | None = None
    value: re.Pattern | str | None = None
    apply: Callable[[str, str, re.Match | None], Any] | None = None

    def __post_init__(self):
        for name in ("column", "value"):
            pat = getattr(self, name)
            if isinstance(pat, str):
                object.__setattr__(self, name, re.compile(pat))

    def check_apply(self, column: str, text: str) -> tuple[bool, Any]:
        """Report whether the rule matches, and if so its replacement."""
        if self.column is not None and not self.column.search(column):
            return False, None
        m = None
        if self.value is not None:
            m = self.value.search(text)
            if m is None:
                return False, None
        if self.apply is None:
            return True, text
        out = self.apply(column, text, m)
        if out is None:
            return False, None
        return True, out


def value_to_string(v: Any, null: str = "") -> str:
    """A sensible string for a database value."""
    if v is None:
        return null
    if isinstance(v, (bytes, bytearray, memoryview)):
        data = bytes(v)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            # Not text: base64 (unpadded) rather than mojibake.
            return base64.b64encode(data).decode("ascii").rstrip("=")
    if isinstance(v, str):
        return v
    if isinstance(v, datetime):
        t = v.astimezone(timezone.utc) if v.tzinfo else v
        if t.time() == time(0):
            return t.date().isoformat()
        return t.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(v, date):
        return v.isoformat()
    return str(v)


def apply_rules(column: str, text: str, rules: Iterable[RewriteRule]) -> Any:
    """First matching rule's replacement for text, or text itself."""
    for rule in rules:
        ok, out = rule.check_apply(column, text)
        if ok:
            return out
    return text


def ui_output(result: ResultSet | None, null: str = "(null)",
              rules: Iterable[RewriteRule] = ()) -> ResultSet | None:
    """A copy of result with every cell rendered for the HTML UI."""
    if result is None or not result.columns:
        return result
    rules = list(rules)
    rows = [
        [apply_rules(col, value_to_string(v, null), rules)
         for col, v in zip(result.columns, row)]
        for row in result.rows
    ]
    return replace(result, rows=rows)


def truncate_for_display(result: ResultSet | None, max_rows: int = MAX_UI_ROWS) -> ResultSet | None:
    """Cap the rows shown. num_rows keeps the real count."""
    if result is None or result.num_rows <= max_rows:
        return result
    return replace(result, rows=result.rows[:max_rows], truncated=True)


def format_elapsed(seconds: float) -> str:
    """Elapsed time rounded to 100us for people to read."""
    us = round(seconds * 1e6 / 100) * 100
    if us < 1000:
        return f"{us}µs"
    if us < 1_000_000:
        return f"{us / 1000:g}ms"
    return f"{us / 1e6:g}s"


# ============================================================
# CSV
# ============================================================

def csv_rows(result: ResultSet | None) -> list[list[str]]:
    """Header row plus data rows, as plain strings."""
    if result is None or not result.columns:
        return []
    out = [list(result.columns)]
    for row in result.rows:
        out.append([value_to_string(v, "") for v in row])
    return out


def write_csv(result: ResultSet | None, fp: TextIO):
    writer = csv.writer(fp, lineterminator="\n")
    writer.writerows(csv_rows(result))


# ============================================================
# JSON
# ============================================================

def _json_default(v: Any):
    if isinstance(v, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(v)).decode("ascii")
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return str(v)


def json_rows(result: ResultSet | None) -> Iterator[dict]:
    """One column -> value mapping per row.

    Byte values that are valid UTF-8 become strings; the rest stay bytes
    and are base64 encoded when serialized.
    """
    if result is None:
        return
    for row in result.rows:
        out = {}
        for col, v in zip(result.columns, row):
            if isinstance(v, (bytes, bytearray, memoryview)):
                try:
                    v = bytes(v).decode("utf-8")
                except UnicodeDecodeError:
                    v = bytes(v)
            out[col] = v
        yield out


def iter_ndjson(result: ResultSet | None) -> Iterator[str]:
    """Encode each row independently, one JSON object per line."""
    for row in json_rows(result):
        yield json.dumps(row, default=_json_default, ensure_ascii=False,
                         separators=(",", ":")) + "\n"
