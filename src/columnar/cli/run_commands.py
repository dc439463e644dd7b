"""Run commands — push input, run the session flow, show stored values."""

from __future__ import annotations

import asyncio
import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from columnar.cli.main import (
    SESSION_SNAPSHOT,
    console,
    data_dir_option,
    get_column_style,
    load_config_or_exit,
    resolve_settings,
)


def open_session(config, settings, compute_factory, verbosity: int = 0):
    """Build the session for ``config`` over the configured storage.

    When the data directory holds a snapshot of the previously applied
    config, the session is rebuilt from it and then updated, so changed
    columns (and their dependents) are invalidated instead of reused.
    """
    from columnar.core.errors import atomic_write
    from columnar.core.logging import Verbosity
    from columnar.session import apply_config_update, create_session, diff_configs, load_config

    storage = settings.storage_provider()
    flow_kwargs = {
        "verbosity": Verbosity(min(max(verbosity, settings.verbosity), Verbosity.DEBUG)),
        "log_dir": settings.log_dir,
    }
    snapshot = settings.data_dir / SESSION_SNAPSHOT

    if snapshot.exists():
        previous = load_config(snapshot)
        session = create_session(previous, compute_factory, storage, **flow_kwargs)
        changes = diff_configs(previous, config)
        if not changes.is_empty:
            apply_config_update(session, changes, config)
            console.print(
                f"[yellow]Config changed:[/yellow] {len(changes.removed)} removed, "
                f"{len(changes.added)} added, {len(changes.modified)} modified"
            )
    else:
        session = create_session(config, compute_factory, storage, **flow_kwargs)

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    atomic_write(snapshot, json.dumps([cfg.model_dump() for cfg in config], indent=2))
    return session


def llm_compute_factory(settings, stream: bool):
    """Compute factory answering each column with its system prompt via one shared client."""
    from columnar.llm import LLMClient, prompt

    client = LLMClient(settings.llm_config())
    return lambda cfg: prompt(client, cfg.system_prompt, stream=stream)


@click.command()
@click.argument("text")
@data_dir_option
def push(text: str, data_dir: str | None):
    """Append TEXT as the next value of the input column."""
    from columnar.core.columns import source
    from columnar.session import INPUT_COLUMN

    settings = resolve_settings(data_dir)
    input_col = source(INPUT_COLUMN, storage=settings.storage_provider())
    step = len(input_col.storage)
    input_col.push(text)
    console.print(f"[green]+[/green] input @ {step}")


@click.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@data_dir_option
@click.option("--stream/--no-stream", default=True, help="Stream LLM replies as they arrive")
@click.option("-v", "--verbose", count=True, help="Verbosity: -v for per-column results, -vv for compute details")
def run(config_path: str, data_dir: str | None, stream: bool, verbose: int):
    """Compute every column for every input step not yet computed.

    Changes to CONFIG_PATH since the last run invalidate the affected
    columns, which are then recomputed from the first step.
    """
    from columnar.core.models import ValueEvent

    config = load_config_or_exit(config_path)
    settings = resolve_settings(data_dir)
    try:
        session = open_session(config, settings, llm_compute_factory(settings, stream), verbose)
    except Exception as e:
        console.print(f"[red]Error opening session:[/red] {e}")
        sys.exit(1)

    styles = {name: get_column_style(i) for i, name in enumerate(session.column_order)}

    async def drive() -> int:
        flow_run = session.flow.run()
        async for event in flow_run:
            if isinstance(event, ValueEvent):
                console.print(Panel(
                    event.value,
                    title=f"[{styles.get(event.column, 'white')}]{event.column}[/] @ {event.step}",
                    title_align="left",
                ))
        return flow_run.committed

    try:
        committed = asyncio.run(drive())
    except Exception as e:
        console.print(f"[red]Run failed:[/red] {e}")
        sys.exit(1)

    if committed:
        console.print(f"[green]Computed {committed} value(s).[/green]")
    else:
        console.print("[dim]Nothing to compute.[/dim]")


@click.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@data_dir_option
def show(config_path: str, data_dir: str | None):
    """Show stored values per step, one table column per session column."""
    from columnar.session import INPUT_COLUMN

    config = load_config_or_exit(config_path)
    settings = resolve_settings(data_dir)
    provider = settings.storage_provider()

    names = [INPUT_COLUMN] + [cfg.name for cfg in config]
    storages = [provider(name) for name in names]
    steps = max((len(s) for s in storages), default=0)

    if steps == 0:
        console.print("[dim]No values stored yet.[/dim]")
        return

    table = Table(title=f"{settings.data_dir}")
    table.add_column("Step", justify="right", style="dim")
    for i, name in enumerate(names):
        table.add_column(name, style="bold" if i == 0 else get_column_style(i - 1))

    for step in range(steps):
        table.add_row(str(step), *[(s.get(step) or "") for s in storages])

    console.print(table)
