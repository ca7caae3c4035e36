"""
sqlgate: a small multi-tenant SQL query gateway.

Callers name a data source and send SQL. The gateway authorizes them,
runs the query with a timeout and a row cap, and renders the result as
HTML, CSV, or line-delimited JSON.

Layout:
  core.py       queryable sources, row sets, the SQLite driver
  handle.py     hot-swappable source handles
  registry.py   ordered, append-only source registry
  query.py      query value object, syntax and length guards
  router.py     named/meta query resolution and bounded execution
  render.py     result rendering (HTML cells, CSV, JSON rows)
  uirules.py    stock HTML decorations for UI cells
  named.py      named queries from annotated .sql files
  querylog.py   local query log with schema migrations
  auth.py       caller identity and per-source authorization
  secrets.py    secret-backed connection strings and rotation
  metrics.py    request and error counters
  options.py    JSON configuration and source opening
  server.py     starlette app: /, /csv, /json, /meta
  client.py     httpx client for a running server
  cli.py        `sqlgate` command
"""

__version__ = "0.3.0"
