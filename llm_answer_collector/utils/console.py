"""
Rich console utilities for dual-mode CLI output.

Human mode (--format text):
    - Rich spinners, colored tables and summary panels

Agent mode (--format json):
    - Messages and data buffered, then written to stdout as one JSON object
    - No ANSI codes or spinners

Examples:
    >>> from llm_answer_collector.utils.console import output_mode, spinner, success
    >>> output_mode.format = "text"
    >>> with spinner("Loading config..."):
    ...     config = load_config(path)
    >>> success("Config loaded")
"""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


class OutputMode:
    """
    Output mode configuration for dual-mode CLI.

    Attributes:
        format: "text" (human) or "json" (agent)
        quiet: If True, suppress info messages
    """

    def __init__(self, format_type: str = "text", quiet: bool = False):
        if format_type not in ["text", "json"]:
            raise ValueError(f"Invalid format: {format_type}. Must be 'text' or 'json'")

        self.format = format_type
        self.quiet = quiet
        self._json_buffer: dict[str, Any] = {}

    def is_human(self) -> bool:
        return self.format == "text"

    def is_agent(self) -> bool:
        return self.format == "json"

    def add_json(self, key: str, value: Any) -> None:
        """Buffer a key for the final JSON document (agent mode)."""
        self._json_buffer[key] = value

    def flush_json(self) -> None:
        """
        Write buffered JSON to stdout and clear the buffer.

        No-op in human mode.
        """
        if self.is_agent() and self._json_buffer:
            json.dump(self._json_buffer, sys.stdout, indent=2, default=str)
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._json_buffer.clear()


# Global output mode instance (set by CLI flags)
output_mode = OutputMode()

# Global Rich console instances for human mode
console = Console()  # stdout
console_err = Console(stderr=True)  # stderr


@contextmanager
def spinner(message: str):
    """
    Show a spinner while the block runs (human mode only).

    Examples:
        >>> with spinner("Dispatching batch..."):
        ...     summary = asyncio.run(orchestrator.submit_batch(queries))
    """
    if output_mode.is_human():
        with console.status(f"[bold blue]{message}", spinner="dots") as status:
            yield status
    else:
        yield None


def success(message: str) -> None:
    if output_mode.is_human():
        console.print(f"[green]✓[/green] {message}")
    elif output_mode.is_agent():
        output_mode.add_json("status", "success")
        output_mode.add_json("message", message)


def error(message: str) -> None:
    if output_mode.is_human():
        console_err.print(f"[red]✗[/red] {message}", style="red")
    elif output_mode.is_agent():
        output_mode.add_json("status", "error")
        output_mode.add_json("error", message)


def warning(message: str) -> None:
    if output_mode.is_human():
        console.print(f"[yellow]⚠[/yellow] {message}", style="yellow")
    elif output_mode.is_agent():
        output_mode.add_json("warning", message)


def info(message: str) -> None:
    # Silent for agents and quiet mode
    if output_mode.is_human() and not output_mode.quiet:
        console.print(f"[blue]ℹ[/blue] {message}")


def _status_markup(status: str) -> str:
    colors = {"completed": "green", "failed": "red", "running": "yellow", "pending": "dim"}
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def print_executions_table(rows: list[dict[str, Any]]) -> None:
    """
    Print one row per Execution.

    Expected keys: query_id, collector_type, status, provider,
    fallback_chain, error (dict or None).

    Agent mode buffers the rows under "executions".
    """
    if output_mode.is_agent():
        output_mode.add_json("executions", rows)
        return

    if output_mode.quiet:
        return

    table = Table(title="Executions", box=box.ROUNDED)
    table.add_column("Query", style="cyan", no_wrap=True)
    table.add_column("Collector", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Provider")
    table.add_column("Chain", style="dim")
    table.add_column("Error", style="red")

    for row in rows:
        error_info = row.get("error") or {}
        table.add_row(
            row.get("query_id", ""),
            row.get("collector_type", ""),
            _status_markup(row.get("status", "unknown")),
            row.get("provider") or "",
            " → ".join(row.get("fallback_chain") or []),
            error_info.get("reason", "") if isinstance(error_info, dict) else str(error_info),
        )

    console.print(table)


def print_final_summary(
    run_id: str, succeeded: int, failed: int, deferred: int, batches: int
) -> None:
    """
    Print the run summary.

    Human mode: panel with a green/yellow/red border
    Agent mode: adds the counts and flushes all buffered JSON
    """
    total = succeeded + failed + deferred

    if output_mode.is_agent():
        output_mode.add_json("run_id", run_id)
        output_mode.add_json("succeeded", succeeded)
        output_mode.add_json("failed", failed)
        output_mode.add_json("deferred", deferred)
        output_mode.add_json("total_executions", total)
        output_mode.add_json("batches", batches)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"{run_id}\t{succeeded}\t{failed}\t{deferred}\t{total}")
        return

    success_rate = (succeeded / total * 100) if total > 0 else 0.0

    summary_text = f"""
[bold]Run ID:[/bold] {run_id}
[bold]Batches:[/bold] {batches}
[bold]Executions:[/bold] {succeeded}/{total} completed ({success_rate:.1f}%)
[bold]Failed:[/bold] {failed}
[bold]Deferred:[/bold] {deferred}
"""

    if total > 0 and failed == 0 and deferred == 0:
        border_style = "green"
        title = "[bold green]✓ Run Completed Successfully[/bold green]"
    elif succeeded > 0 or deferred > 0:
        border_style = "yellow"
        title = "[bold yellow]⚠ Run Completed with Partial Failures[/bold yellow]"
    else:
        border_style = "red"
        title = "[bold red]✗ Run Failed[/bold red]"

    console.print(
        Panel(summary_text.strip(), title=title, border_style=border_style, box=box.ROUNDED)
    )


def print_key_health(snapshot: list[dict[str, Any]]) -> None:
    """Print masked key health per pool (human mode only)."""
    if not output_mode.is_human() or output_mode.quiet:
        return

    table = Table(title="API Key Pools", box=box.ROUNDED)
    table.add_column("Operation", style="cyan")
    table.add_column("Key")
    table.add_column("Status", justify="center")
    table.add_column("Success", justify="right", style="green")
    table.add_column("Errors", justify="right", style="red")

    for pool in snapshot:
        for key in pool.get("keys", []):
            table.add_row(
                pool.get("operation", ""),
                key.get("key", ""),
                key.get("status", ""),
                str(key.get("success_count", 0)),
                str(key.get("error_count", 0)),
            )

    console.print(table)
