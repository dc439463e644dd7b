"""Config commands — validate a session config and compare two of them."""

from __future__ import annotations

import click
from rich.table import Table

from columnar.cli.main import console, get_column_style, load_config_or_exit


@click.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def validate(config_path: str):
    """Check a session config for structural problems.

    Reports the columns and their context when the config is valid.
    """
    config = load_config_or_exit(config_path)

    table = Table(title=f"Session config ({len(config)} columns)")
    table.add_column("Column", style="bold")
    table.add_column("Context")
    table.add_column("Reminder", style="dim")
    for i, cfg in enumerate(config):
        refs = ", ".join(
            f"{ref.column}[{ref.row}, {f'window({ref.window})' if ref.count == 'window' else ref.count}]"
            for ref in cfg.context
        )
        table.add_row(f"[{get_column_style(i)}]{cfg.name}[/]", refs, "yes" if cfg.reminder else "")

    console.print(table)
    console.print("[green]Config is valid.[/green]")


@click.command()
@click.argument("old_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("new_path", type=click.Path(exists=True, dir_okay=False))
def diff(old_path: str, new_path: str):
    """Show which columns change between two session configs.

    Modified columns (and everything reading them) are recomputed from
    scratch on the next run.
    """
    from columnar.session import diff_configs

    changes = diff_configs(load_config_or_exit(old_path), load_config_or_exit(new_path))
    if changes.is_empty:
        console.print("[dim]No column changes.[/dim]")
        return

    for name in changes.removed:
        console.print(f"  [red]-[/red] {name}")
    for cfg in changes.added:
        console.print(f"  [green]+[/green] {cfg.name}")
    for cfg in changes.modified:
        console.print(f"  [yellow]~[/yellow] {cfg.name}")
