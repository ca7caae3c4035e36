"""
HTTP surface of the gateway.

Routes (all GET, optionally under a route prefix):
    /          HTML UI; q and src query parameters run a query inline
    /csv       query result as text/csv
    /json      query result as one JSON object per line
    /meta      sources, named queries, links and query timeout as JSON
    /static/*  UI assets

Browser protections. Every UI response plants the same-site cookie
sqlgateQuery=1. A UI request carrying a query but neither that cookie
nor the Sec-Sqlgate header is redirected to itself instead of executed.
/csv accepts the header or the cookie; /json only the header.

Per request: check_query hook -> identify (401) -> authorize (403, not
for the bare UI) -> route handler. Queries run on the default executor;
while one runs the handler watches for the client going away and
cancels the query if it does.
"""

import asyncio
import io
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import (
    JSONResponse, PlainTextResponse, RedirectResponse, Response, StreamingResponse,
)
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles
from starlette.templating import Jinja2Templates

from sqlgate import __version__
from sqlgate.auth import default_authorize
from sqlgate.core import Queryable
from sqlgate.errors import (
    AuthError, ConfigError, GatewayError, NotLoggedIn, ValidationError, error_code,
)
from sqlgate.handle import SourceHandle
from sqlgate.metrics import Metrics
from sqlgate.options import Options, check_sources, format_duration, open_sources
from sqlgate.query import Query, default_check_query
from sqlgate.querylog import QueryLog
from sqlgate.registry import SourceRegistry
from sqlgate.render import (
    ResultSet, format_elapsed, iter_ndjson, truncate_for_display, ui_output, write_csv,
)
from sqlgate.router import QueryRouter

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES = Jinja2Templates(directory=str(BASE_DIR / "templates"))
TEMPLATES.env.filters["elapsed"] = format_elapsed

# Set on requests that do not come from a browser.
NO_BROWSERS_HEADER = "Sec-Sqlgate"

# Planted by the UI; proves a request came from a page this server served.
ACCESS_COOKIE = "sqlgateQuery"

CONTENT_SECURITY_POLICY = (
    "default-src 'none'; script-src 'self'; connect-src 'self'; img-src 'self'; "
    "style-src 'self'; frame-ancestors 'self'; form-action 'self';"
)
UI_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Frame-Options": "DENY",
}

LOCAL_LABEL = "sqlgate local state"
LOCAL_NAMED = {"schema": "select * from sqlite_schema"}

# How often a running query checks whether its client is still there.
DISCONNECT_POLL = 0.25


def has_secure_header(request: Request) -> bool:
    return request.headers.get(NO_BROWSERS_HEADER, "") != ""


def has_site_access(request: Request) -> bool:
    return request.cookies.get(ACCESS_COOKIE) == "1"


class Server:
    """A query gateway over the sources described by options."""

    def __init__(self, options: Options):
        check_sources(options)
        handles, self.updaters = open_sources(options)

        self.query_log: QueryLog | None = None
        try:
            if options.local_state:
                self.query_log = QueryLog(options.local_state_path())
                if options.local_source:
                    handles.append(SourceHandle(options.local_source, self.query_log.reader(),
                                                LOCAL_LABEL, LOCAL_NAMED))
        except (sqlite3.Error, ConfigError) as e:
            for h in handles:
                h.close()
            if self.query_log is not None:
                self.query_log.close()
            raise ConfigError(f"local state: {e}") from e

        self.registry = SourceRegistry(handles)
        self.router = QueryRouter(
            self.registry,
            query_log=self.query_log,
            self_source=options.local_source if self.query_log else "",
            timeout=options.query_timeout or None,
            max_rows=options.max_rows,
        )
        self.links = list(options.links)
        self.rules = list(options.rewrite_rules)
        self.identify = options.get_identify()
        self.authorize = options.get_authorize() or default_authorize
        self.check_query = options.check_query or default_check_query
        self.metrics = options.metrics or Metrics()
        self.prefix = options.prefix()
        self.max_ui_rows = options.max_ui_rows
        self.poll_interval = options.secret_poll_interval
        self.app = self._build_app()

    def set_db(self, source: str, db: Queryable, label: str = "",
               named: dict[str, str] | None = None) -> bool:
        """Add or replace the database for source.

        Reports True if an existing source was swapped, False if added.
        """
        return self.registry.register(source, db, label, named)

    def close(self):
        """Close every source and the query log. Safe to call twice."""
        try:
            self.registry.close()
        finally:
            if self.query_log is not None:
                self.query_log.close()

    # ============================================================
    # App
    # ============================================================

    def _build_app(self) -> Starlette:
        routes = [
            Route("/", self.serve_ui, methods=["GET"]),
            Route("/csv", self.serve_csv, methods=["GET"]),
            Route("/json", self.serve_json, methods=["GET"]),
            Route("/meta", self.serve_meta, methods=["GET"]),
            Mount("/static", app=StaticFiles(directory=str(BASE_DIR / "static")), name="static"),
        ]
        if self.prefix:
            routes = [Mount(self.prefix, routes=routes)]

        @asynccontextmanager
        async def lifespan(app):
            tasks = [asyncio.create_task(u.run(self.poll_interval)) for u in self.updaters]
            try:
                yield
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        return Starlette(
            debug=False,
            lifespan=lifespan,
            routes=routes,
            middleware=[Middleware(GZipMiddleware, minimum_size=500)],
        )

    # ============================================================
    # Request plumbing
    # ============================================================

    async def serve_ui(self, request: Request) -> Response:
        return await self._dispatch(request, "html", self._serve_ui)

    async def serve_csv(self, request: Request) -> Response:
        return await self._dispatch(request, "csv", self._serve_csv)

    async def serve_json(self, request: Request) -> Response:
        return await self._dispatch(request, "json", self._serve_json)

    async def serve_meta(self, request: Request) -> Response:
        return await self._dispatch(request, "meta", self._serve_meta)

    async def _dispatch(self, request: Request, kind: str, handler) -> Response:
        src = request.query_params.get("src", "")
        if not src:
            first = self.registry.default()
            src = first.source if first is not None else ""
        text = request.query_params.get("q", "").strip()

        try:
            q = self.check_query(Query(src, text))
        except GatewayError as e:
            self.metrics.error("bad_request")
            return PlainTextResponse(str(e), status_code=error_code(e))

        try:
            caller = self._check_auth(request, kind, q)
        except AuthError as e:
            self.metrics.error("auth")
            return PlainTextResponse(str(e), status_code=e.status)

        self.metrics.request(kind)
        try:
            return await handler(request, caller, q.source, q.text)
        except GatewayError as e:
            code = error_code(e)
            if isinstance(e, AuthError):
                self.metrics.error("auth")
            else:
                self.metrics.error("bad_request" if 400 <= code < 500 else "internal")
            return PlainTextResponse(str(e), status_code=code)

    def _check_auth(self, request: Request, kind: str, q: Query) -> str:
        """The caller's name, once identified and authorized for q.source."""
        if self.identify is None:
            return ""
        caller = self.identify(request)
        if caller is None:
            raise NotLoggedIn("not logged in")

        # The bare UI runs nothing, so any source will do.
        if kind == "html" and not q.text:
            return caller.name
        self.authorize(q.source, caller)
        return caller.name

    async def _run_query(self, request: Request, caller: str, src: str,
                         text: str) -> ResultSet | None:
        ctx = self.router.new_context()
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(None, self.router.run, caller, src, text, ctx)
        try:
            while not fut.done():
                await asyncio.wait({fut}, timeout=DISCONNECT_POLL)
                if not fut.done() and not ctx.cancelled and await request.is_disconnected():
                    log.info("client went away, cancelling query on %r", src)
                    ctx.cancel()
            return fut.result()
        except GatewayError:
            self.metrics.error("query")
            raise

    def _plant_cookie(self, response: Response):
        response.set_cookie(ACCESS_COOKIE, "1", path=self.prefix + "/",
                            httponly=True, samesite="lax")

    # ============================================================
    # Handlers
    # ============================================================

    async def _serve_ui(self, request: Request, caller: str, src: str, text: str) -> Response:
        if text and not has_secure_header(request) and not has_site_access(request):
            resp = RedirectResponse(str(request.url), status_code=302, headers=UI_HEADERS)
            self._plant_cookie(resp)
            return resp

        context = {
            "query": text,
            "source": src,
            "sources": self.registry.list(),
            "links": self.links,
            "prefix": self.prefix,
            "version": __version__,
            "output": None,
            "error": None,
        }
        try:
            out = await self._run_query(request, caller, src, text)
        except GatewayError as e:
            context["error"] = str(e)
        else:
            # The DOM only handles so many rows; num_rows keeps the real count.
            out = truncate_for_display(out, self.max_ui_rows)
            context["output"] = ui_output(out, "(null)", self.rules)

        resp = TEMPLATES.TemplateResponse(request, "ui.html", context, headers=UI_HEADERS)
        self._plant_cookie(resp)
        return resp

    async def _serve_csv(self, request: Request, caller: str, src: str, text: str) -> Response:
        if not text:
            raise ValidationError("no query provided")
        if not has_secure_header(request) and not has_site_access(request):
            raise AuthError("query access denied")

        out = await self._run_query(request, caller, src, text)
        buf = io.StringIO()
        write_csv(out, buf)
        return Response(buf.getvalue(), media_type="text/csv")

    async def _serve_json(self, request: Request, caller: str, src: str, text: str) -> Response:
        if not text:
            raise ValidationError("no query provided")
        if not has_secure_header(request):
            raise AuthError("query access denied")

        out = await self._run_query(request, caller, src, text)
        return StreamingResponse(iter_ndjson(out), media_type="application/json")

    async def _serve_meta(self, request: Request, caller: str, src: str, text: str) -> Response:
        sources = []
        for h in self.registry.list():
            # Never the connection string or key file.
            sources.append({"source": h.source, "label": h.label, "named": h.named})
        return JSONResponse({"meta": {
            "sources": sources,
            "links": [{"anchor": l.anchor, "url": l.url} for l in self.links],
            "queryTimeout": format_duration(self.router.timeout),
        }})
