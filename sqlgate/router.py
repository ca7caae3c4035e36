"""
Query Router: resolve a (source, text) pair and execute it.

    meta:<name>   answered from registry state, no database touched
    named:<name>  replaced by the source's named query of that name
    anything else literal SQL, checked for forbidden statements first

Execution holds the source handle shared for its whole duration, stops
at max_rows (the partial result comes back with more=True), and
observes the query context before every row. Successful queries are
handed to the query log in the background; the log's own source is
never recorded.

Authorization is not done here. Callers decide who may reach run().
"""

import logging
import time

from sqlgate.core import Queryable, QueryContext
from sqlgate.errors import NotFoundError
from sqlgate.query import META_PREFIX, NAMED_PREFIX, check_query_syntax
from sqlgate.querylog import QueryLog
from sqlgate.registry import SourceRegistry
from sqlgate.render import ResultSet, format_elapsed, json_rows

log = logging.getLogger(__name__)

MAX_ROWS = 10000

META_COLUMNS = ["source", "label", "queryName", "sql"]


class QueryRouter:

    def __init__(self, registry: SourceRegistry, query_log: QueryLog | None = None,
                 self_source: str = "", timeout: float | None = None,
                 max_rows: int = MAX_ROWS):
        self.registry = registry
        self.query_log = query_log
        self.self_source = self_source
        self.timeout = timeout
        self.max_rows = max_rows

    def new_context(self) -> QueryContext:
        """A context carrying the configured query timeout."""
        return QueryContext(self.timeout)

    def run(self, caller: str, source: str, text: str,
            ctx: QueryContext | None = None) -> ResultSet | None:
        """Execute text against source on behalf of caller.

        Returns None for an empty query. Raises NotFoundError for an
        unknown source, named query or meta-query, ValidationError for
        forbidden SQL, and ExecutionError (including QueryCancelled) when
        the database fails or the context ends.
        """
        if not text:
            return None
        if text.startswith(META_PREFIX):
            return self.run_meta(text)

        h = self.registry.lookup(source)
        if h is None:
            raise NotFoundError(f"unknown source {source!r}")
        check_query_syntax(text)

        ctx = ctx or self.new_context()
        query = text
        err = None
        start = time.perf_counter()
        try:
            with h.reading() as view:
                if query.startswith(NAMED_PREFIX):
                    name = query[len(NAMED_PREFIX):]
                    real = view.named.get(name)
                    if real is None:
                        raise NotFoundError(f"named query {name!r} not recognized")
                    log.debug("resolved named query %r to %r", name, real)
                    query = real
                result = self._execute(view.db, query, ctx)
        except Exception as e:
            err = e
            raise
        finally:
            elapsed = time.perf_counter() - start
            log.info("query src=%r query=%r elapsed=%s err=%s",
                     source, query, format_elapsed(elapsed), err)

        result.elapsed = elapsed
        if self.query_log is not None and source != self.self_source:
            try:
                self.query_log.submit(caller, source, query, elapsed)
            except Exception as e:
                log.warning("error logging query: %s", e)
        return result

    def _execute(self, db: Queryable, sql: str, ctx: QueryContext) -> ResultSet:
        ctx.check()
        rows = db.query(sql, (), ctx)
        try:
            out = ResultSet(columns=list(rows.columns))
            for row in rows:
                if len(out.rows) == self.max_rows:
                    out.more = True
                    break
                ctx.check()
                out.rows.append(list(row))
        finally:
            rows.close()
        out.num_rows = len(out.rows)
        return out

    def run_meta(self, text: str) -> ResultSet:
        """Answer a meta: query from registry state."""
        if text != "meta:named":
            raise NotFoundError(f"unknown meta-query {text!r}")
        rows = []
        for h in self.registry.list():
            label, named = h.label, h.named
            for name in sorted(named):
                rows.append([h.source, label, name, named[name]])
        return ResultSet(columns=list(META_COLUMNS), rows=rows, num_rows=len(rows))

    def run_json(self, caller: str, source: str, text: str,
                 ctx: QueryContext | None = None) -> list[dict]:
        """Like run, but as one column -> value mapping per row."""
        return list(json_rows(self.run(caller, source, text, ctx)))
