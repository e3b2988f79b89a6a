"""
CLI interface for the metering proxy.

Serves the proxy and administers users and usage reports.
"""

import logging
import sqlite3
import sys
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import typer
import uvicorn
import yaml
from rich.console import Console
from rich.table import Table

from metered_proxy.config.loader import ProxyConfig, load_proxy_config
from metered_proxy.server.app import create_app
from metered_proxy.storage.repository import UsageRepository

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

DEFAULT_LISTEN = "127.0.0.1:8080"
LOG_FORMAT = "%(asctime)s %(levelname).3s %(name)s %(message)s"

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    envvar="METERED_PROXY_CONFIG",
    help="Path to YAML configuration file",
)


def _load_config(config_path: Optional[str]) -> ProxyConfig:
    try:
        return load_proxy_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        err_console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def open_repository(config: ProxyConfig) -> UsageRepository:
    """Open the configured database, creating the schema if needed."""
    repository = UsageRepository(config.storage.path, pool_size=1)
    try:
        repository.initialize_schema()
    except sqlite3.Error:
        repository.close()
        raise
    return repository


@contextmanager
def admin_repository(config_path: Optional[str], action: str) -> Iterator[UsageRepository]:
    """Open the database for one admin command; storage errors exit with failure."""
    config = _load_config(config_path)
    repository = None
    try:
        repository = open_repository(config)
        yield repository
    except sqlite3.Error as e:
        err_console.print(f"[red]Failed to {action}:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        if repository is not None:
            repository.close()


def parse_listen(listen: str) -> Tuple[str, int]:
    """Split ``host:port``; an empty host means all interfaces."""
    host, sep, port = listen.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"listen address must be host:port, got {listen!r}")
    return host.strip("[]") or "0.0.0.0", int(port)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Metering proxy for chat-completion APIs."""
    if ctx.invoked_subcommand is None:
        console.print("Metered Proxy - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = ConfigOption):
    """Initialize the database."""
    config = _load_config(config_path)
    try:
        open_repository(config).close()
    except sqlite3.Error as e:
        err_console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Database {config.storage.path} initialized successfully")
    sys.exit(EXIT_CODE_OK)


@app.command()
def serve(
    listen: str = typer.Argument(DEFAULT_LISTEN, help="Address to listen on, host:port"),
    config_path: Optional[str] = ConfigOption,
    log_level: str = typer.Option("info", "--log-level", "-l", help="Logging level"),
):
    """Run the proxy."""
    config = _load_config(config_path)
    try:
        host, port = parse_listen(listen)
    except ValueError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        log_level=log_level.lower(),
        log_config=None,
    )


@app.command("list-users")
def list_users(config_path: Optional[str] = ConfigOption):
    """List users and their API keys."""
    with admin_repository(config_path, "list users") as repository:
        users = repository.list_users()

    table = Table("User", "Key")
    for user in users:
        table.add_row(user.name, user.key)
    console.print(table)


@app.command("set-user-key")
def set_user_key(
    name: str = typer.Argument(..., help="User name"),
    key: str = typer.Argument(..., help="API key the user authenticates with"),
    config_path: Optional[str] = ConfigOption,
):
    """Create a user, or replace an existing user's key."""
    with admin_repository(config_path, "set user key") as repository:
        repository.set_user_key(name, key)
    console.print(f"User {name} is created/updated")


@app.command("delete-user")
def delete_user(
    name: str = typer.Argument(..., help="User name"),
    config_path: Optional[str] = ConfigOption,
):
    """Delete a user that owns no projects."""
    with admin_repository(config_path, "delete user") as repository:
        deleted = repository.delete_user(name)

    if deleted:
        console.print(f"User {name} is deleted")
    else:
        console.print(f"User {name} is not found")


@app.command("get-usage")
def get_usage(config_path: Optional[str] = ConfigOption):
    """Show token usage per month, user and project."""
    with admin_repository(config_path, "get usage") as repository:
        report = repository.get_usage_report()

    if not report:
        console.print("[dim]No usage recorded yet.[/]")
        sys.exit(EXIT_CODE_OK)

    for month in report:
        table = Table("User", "Project", "Tokens", title=month.month, title_justify="left")
        for usage in month.projects:
            table.add_row(usage.user, usage.project, f"{usage.tokens:,}")
        table.add_section()
        table.add_row("[bold]Total[/]", "", f"[bold]{month.total_tokens:,}[/]")
        console.print(table)


@app.command("list-usage")
def list_usage(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    config_path: Optional[str] = ConfigOption,
):
    """Show the most recent usage records."""
    with admin_repository(config_path, "list usage") as repository:
        records = repository.fetch_recent_usage(limit=limit)

    table = Table("Time", "User", "Project", "Model", "Tokens")
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.user,
            record.project,
            record.model,
            f"{record.tokens:,}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
