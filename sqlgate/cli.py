"""
sqlgate CLI: run a gateway from a config file.

Usage:
    sqlgate --config config.json [--host 127.0.0.1] [--port 8080] [--debug]
    sqlgate --init-config demo.json
"""

import argparse
import logging
import os
import sys

from sqlgate import __version__
from sqlgate.errors import ConfigError
from sqlgate.options import CONFIG_ENV, format_duration, generate_basic_config, load_options
from sqlgate.uirules import DEFAULT_RULES


def _setup_logging(debug: bool):
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=debug)],
    )


def _print_summary(console, server, host: str, port: int):
    from rich.table import Table

    table = Table(title="sources", show_edge=False, header_style="dim")
    table.add_column("source", style="bold")
    table.add_column("label")
    table.add_column("named", justify="right")
    for h in server.registry.list():
        table.add_row(h.source, h.label, str(len(h.named)))

    console.print()
    console.print(f"  [bold]sqlgate {__version__}[/bold]")
    console.print()
    console.print(table)
    console.print()
    console.print(f"  [dim]query timeout[/dim]  {format_duration(server.router.timeout)}")
    if server.query_log is not None:
        console.print(f"  [dim]query log[/dim]      {server.query_log.path}")
    console.print(f"  [dim]listening[/dim]      [blue]http://{host}:{port}{server.prefix}/[/blue]")
    console.print()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="sqlgate",
        description="Serve SQL queries against configured data sources over HTTP.",
    )
    parser.add_argument("--config", default=os.environ.get(CONFIG_ENV, ""),
                        help=f"Configuration file (JSON; default ${CONFIG_ENV})")
    parser.add_argument("--host", default="127.0.0.1", help="Listen address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Listen port (default: 8080)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--init-config", metavar="PATH",
                        help="Write a basic configuration file to PATH and exit")
    args = parser.parse_args(argv)

    from rich.console import Console
    console = Console(stderr=True)
    _setup_logging(args.debug)

    if args.init_config:
        try:
            generate_basic_config(args.init_config)
        except ConfigError as e:
            console.print(f"  [red]{e}[/red]")
            return 1
        console.print(f"  Generated sample config in [bold]{args.init_config}[/bold]")
        return 0

    if not args.config:
        parser.error(f"a --config path is required (or set ${CONFIG_ENV})")

    from sqlgate.server import Server
    import uvicorn

    try:
        opts = load_options(args.config)
        opts.rewrite_rules = list(DEFAULT_RULES)
        server = Server(opts)
    except ConfigError as e:
        console.print(f"  [red]config error:[/red] {e}")
        return 1

    _print_summary(console, server, args.host, args.port)
    try:
        uvicorn.run(server.app, host=args.host, port=args.port,
                    log_level="debug" if args.debug else "info", log_config=None)
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
