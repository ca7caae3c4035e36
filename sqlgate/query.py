"""
Queries as they arrive from the wire, and the checks run before execution.

A read-only database still honours ATTACH and DETACH, which bind other
files to the connection, and TEMP objects live outside the read-only
file. Those verbs are rejected lexically: string literals and line
comments are dropped, and every remaining token is compared
case-insensitively against the forbidden set.
"""

import re
from dataclasses import dataclass

from sqlgate.errors import ValidationError

MAX_QUERY_BYTES = 4000

NAMED_PREFIX = "named:"
META_PREFIX = "meta:"

FORBIDDEN_TOKENS = frozenset({"ATTACH", "DETACH", "TEMP", "TEMPORARY"})

# Approximate SQL lexer: words, quoted literals, line comments, punctuation.
# Punctuation is one character per token, so "/**/ATTACH" and ",'attach'" lex
# the same way as their spaced-out spellings.
_SQL_TOKEN = re.compile(
    r"\w+"
    r"|'(?:[^']|'')*'"
    r'|"(?:[^"]|"")*"'
    r"|--.*(?:\n|$)"
    r"|[^\w\s]",
    re.MULTILINE,
)


@dataclass(frozen=True)
class Query:
    """A source name and query text presented to the API."""

    source: str
    text: str


def sql_tokens(query: str) -> list[str]:
    """Uppercased tokens of query with string literals and comments removed."""
    tokens = []
    for m in _SQL_TOKEN.finditer(query):
        tok = m.group(0)
        if tok.startswith(("--", "'", '"')):
            continue
        tokens.append(tok.upper())
    return tokens


def check_query_syntax(query: str):
    """Raise ValidationError if query uses a statement we refuse to run."""
    for tok in sql_tokens(query):
        if tok in FORBIDDEN_TOKENS:
            raise ValidationError(f"invalid query: statement {tok!r} is not allowed")


def default_check_query(q: Query) -> Query:
    """Accept any query for any source if its text fits the byte budget."""
    if len(q.text.encode("utf-8")) > MAX_QUERY_BYTES:
        raise ValidationError("query too long")
    return q
