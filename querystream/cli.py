"""
querystream CLI - run the server or query it from the command line

Usage:
    querystream serve --port 8080
    querystream query "SELECT 1 AS a, 2 AS b"
    querystream query "SELECT * FROM orders" --json
    querystream health
"""

import json
import sys

import click
import httpx
import uvicorn
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from querystream import __version__
from querystream.client import (
    IncompleteStreamError,
    QueryStreamClient,
    QueryStreamError,
)
from querystream.core.config import get_settings
from querystream.core.logging import configure_logging

# =============================================================================
# CONFIGURATION
# =============================================================================

console = Console()
err_console = Console(stderr=True)

DEFAULT_URL = "http://localhost:8080"


def _format_cell(value) -> str:
    if value is None:
        return "[dim]NULL[/dim]"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


# =============================================================================
# MAIN CLI GROUP
# =============================================================================

@click.group()
@click.option("--url", envvar="QUERYSTREAM_URL", default=DEFAULT_URL, show_default=True, help="querystream server URL")
@click.version_option(version=__version__, prog_name="querystream")
@click.pass_context
def cli(ctx, url):
    """
    querystream - stream SQL query results as compressed JSON.

    \b
    Environment Variables:
        DATABASE_URL     - PostgreSQL connection string (serve)
        QUERYSTREAM_URL  - Server URL (query, health)
    """
    ctx.ensure_object(dict)
    ctx.obj["url"] = url


# =============================================================================
# SERVE COMMAND
# =============================================================================

@cli.command()
@click.option("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Port (default: PORT or 8080)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host, port, reload):
    """Start the HTTP server."""
    try:
        settings = get_settings()
    except ValidationError as e:
        if any(err["loc"][:1] == ("database_url",) for err in e.errors()):
            err_console.print("[bold red]DATABASE_URL environment variable is required[/bold red]")
        else:
            err_console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        sys.exit(1)

    configure_logging(settings.log_level)
    uvicorn.run(
        "querystream.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


# =============================================================================
# QUERY COMMAND
# =============================================================================

@cli.command()
@click.argument("sql")
@click.option("--url", "url", default=None, help="Server URL (overrides the global --url)")
@click.option("--json", "output_json", is_flag=True, help="Print JSON lines instead of a table")
@click.pass_context
def query(ctx, sql, url, output_json):
    """Run SQL on the server and print the rows as they arrive."""
    client = QueryStreamClient(url or ctx.obj["url"])
    try:
        reader = client.iter_rows(sql)
        if output_json:
            click.echo(json.dumps({"columns": reader.columns}))
            for row in reader:
                click.echo(json.dumps(row))
            return

        table = Table(show_header=True, header_style="bold cyan")
        for name in reader.columns:
            table.add_column(name)
        for row in reader:
            table.add_row(*(_format_cell(value) for value in row))
        console.print(table)
        console.print(f"[dim]{reader.rows_read} rows[/dim]")
    except IncompleteStreamError as e:
        err_console.print(f"[bold red]Result incomplete:[/bold red] {e.message}")
        sys.exit(1)
    except QueryStreamError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        client.close()


# =============================================================================
# HEALTH COMMAND
# =============================================================================

@cli.command()
@click.pass_context
def health(ctx):
    """Check server and database health."""
    url = ctx.obj["url"]
    try:
        with httpx.Client(base_url=url, timeout=10.0) as client:
            response = client.get("/health")
    except httpx.ConnectError:
        err_console.print("[red]✗ Cannot connect to server[/red]")
        err_console.print(f"[dim]URL: {url}[/dim]")
        sys.exit(1)

    data = response.json()
    status = data.get("status", "unknown")
    status_color = "green" if status == "ok" else "red"
    console.print(Panel(
        f"[{status_color} bold]{status.upper()}[/{status_color} bold]",
        title="Server Status",
        expand=False
    ))

    table = Table(title="Streams", show_header=True)
    table.add_column("Counter", style="cyan")
    table.add_column("Value", style="green")
    for name, value in data.get("streams", {}).items():
        table.add_row(name, str(value))
    console.print(table)

    if response.status_code != 200:
        sys.exit(1)


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
