"""Columnar CLI — main entry point and shared utilities."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console

console = Console()

# Color per column position in the session config
COLUMN_COLORS = ["blue", "green", "yellow", "magenta", "cyan", "red"]

# Copy of the last applied config, kept next to the column data
SESSION_SNAPSHOT = "session.json"


def get_column_style(index: int) -> str:
    """Return Rich style string for the column at ``index``."""
    return COLUMN_COLORS[index % len(COLUMN_COLORS)]


def load_config_or_exit(config_path: str):
    """Load a session config, printing the error and exiting on failure."""
    from columnar.core.errors import ConfigError
    from columnar.session import load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Invalid config:[/red] {e}")
        sys.exit(1)


def resolve_settings(data_dir: str | None):
    """Current settings, with ``--data-dir`` taking precedence over the environment."""
    from columnar.config import get_settings

    settings = get_settings()
    if data_dir:
        settings.data_dir = Path(data_dir)
    return settings


def data_dir_option(fn):
    """Shared Click option for the column data directory."""
    return click.option(
        "--data-dir",
        default=None,
        help="Directory holding column values (default: $COLUMNAR_DATA_DIR or .columnar)",
    )(fn)


@click.group()
def main():
    """Columnar — incremental dataflow over step-indexed columns."""
    pass


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from columnar.cli.config_commands import diff, validate  # noqa: E402, F401
from columnar.cli.run_commands import push, run, show  # noqa: E402, F401

# Register commands
main.add_command(validate)
main.add_command(diff)
main.add_command(push)
main.add_command(run)
main.add_command(show)
