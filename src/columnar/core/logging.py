"""Structured logging and verbosity levels for flow runs."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Nothing per column
    VERBOSE = 1   # + per-column step results
    DEBUG = 2     # + compute call details, timing


@dataclass
class ColumnLog:
    """Per-column run statistics."""

    name: str
    computed_steps: list[int] = field(default_factory=list)
    deltas: int = 0
    chars: int = 0
    time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "computed_steps": list(self.computed_steps),
            "deltas": self.deltas,
            "chars": self.chars,
            "time_seconds": self.time_seconds,
        }


@dataclass
class RunLog:
    """Structured log of a single ``Flow.run()`` invocation.

    The dict format is::

        {
            "run_id": "20260207T120000Z",
            "start_step": 0,
            "max_steps": 3,
            "columns": {
                "assistant": {
                    "computed_steps": [0, 1, 2],
                    "deltas": 14,
                    "chars": 220,
                    "time_seconds": 2.3,
                },
                ...
            },
            "total_values": 3,
            "total_time": 2.4,
            "status": "completed",
            "error": None,
        }
    """

    run_id: str = ""
    start_step: int = 0
    max_steps: int = 0
    columns: dict[str, ColumnLog] = field(default_factory=dict)
    total_values: int = 0
    total_time: float = 0.0
    status: str = "running"
    error: str | None = None

    def get_or_create_column(self, name: str) -> ColumnLog:
        """Get existing column log or create a new one."""
        if name not in self.columns:
            self.columns[name] = ColumnLog(name=name)
        return self.columns[name]

    def finalize(self) -> None:
        """Compute totals from column data."""
        self.total_values = sum(len(c.computed_steps) for c in self.columns.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "start_step": self.start_step,
            "max_steps": self.max_steps,
            "columns": {name: col.to_dict() for name, col in self.columns.items()},
            "total_values": self.total_values,
            "total_time": self.total_time,
            "status": self.status,
            "error": self.error,
        }


class FlowLogger:
    """Structured logger for one flow run.

    Writes JSONL events to ``log_dir/<run_id>.jsonl`` when a log directory is
    given and optionally emits console output via Rich based on verbosity.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        log_dir: Path | None = None,
    ):
        self.verbosity = verbosity
        self.log_dir = log_dir
        self.run_log = RunLog(
            run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"),
        )
        self._log_file = None
        self._log_path: Path | None = None
        self._run_start: float = 0.0

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = log_dir / f"{self.run_log.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        """Print to console if verbosity is high enough."""
        if self.verbosity >= min_verbosity:
            from rich.console import Console

            Console(stderr=True).print(message)

    # -- Run lifecycle --

    def run_start(self, column_count: int, start_step: int, max_steps: int) -> None:
        self._run_start = time.time()
        self.run_log.start_step = start_step
        self.run_log.max_steps = max_steps
        self._write_event({
            "event": "run_start",
            "column_count": column_count,
            "start_step": start_step,
            "max_steps": max_steps,
        })
        self._console_print(
            f"[bold]Run {self.run_log.run_id}:[/bold] steps {start_step}..{max_steps - 1}"
            if max_steps > start_step
            else f"[bold]Run {self.run_log.run_id}:[/bold] up to date",
            Verbosity.VERBOSE,
        )

    def run_finish(self) -> None:
        self.run_log.total_time = time.time() - self._run_start
        self.run_log.status = "completed"
        self.run_log.finalize()
        self._write_event({
            "event": "run_finish",
            "total_values": self.run_log.total_values,
            "total_time": round(self.run_log.total_time, 3),
        })
        self.close()

    def run_failed(self, error: BaseException) -> None:
        self.run_log.total_time = time.time() - self._run_start
        self.run_log.status = "failed"
        self.run_log.error = str(error)
        self.run_log.finalize()
        self._write_event({
            "event": "run_failed",
            "error": str(error),
            "error_type": type(error).__name__,
            "total_values": self.run_log.total_values,
        })
        self._console_print(f"[red]Run failed:[/red] {error}", Verbosity.DEFAULT)
        self.close()

    # -- Column events --

    def column_start(self, name: str, step: int, message_count: int) -> None:
        self.run_log.get_or_create_column(name)
        self._write_event({
            "event": "column_start",
            "column": name,
            "step": step,
            "message_count": message_count,
        })
        self._console_print(
            f"        [dim]compute {name} @ {step} ({message_count} messages)[/dim]",
            Verbosity.DEBUG,
        )

    def column_finish(self, name: str, step: int, chars: int, deltas: int, start_time: float) -> None:
        elapsed = time.time() - start_time
        col = self.run_log.get_or_create_column(name)
        col.computed_steps.append(step)
        col.deltas += deltas
        col.chars += chars
        col.time_seconds += elapsed
        self._write_event({
            "event": "column_finish",
            "column": name,
            "step": step,
            "chars": chars,
            "deltas": deltas,
            "duration_seconds": round(elapsed, 3),
        })
        self._console_print(
            f"      [green]+[/green] {name} @ {step} ({chars} chars, {elapsed:.1f}s)",
            Verbosity.VERBOSE,
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
