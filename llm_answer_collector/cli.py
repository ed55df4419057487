"""
CLI entrypoint for LLM Answer Collector.

Provides a dual-mode command-line interface with:
- Human-friendly output: Rich spinners, tables and colored text
- Agent-friendly output: Structured JSON for automation

Commands:
    run: Dispatch queries to every enabled collector
    validate: Validate configuration without dispatching
    status: Show the stored state of one execution
    sweep: Run one stale-execution sweep pass (or report stuck executions)

Exit codes:
    0: Success - every execution completed (or is deferred to the poller)
    1: Configuration error (invalid YAML, missing API keys)
    2: Database error (cannot create/access SQLite)
    3: Partial failure (some executions failed)
    4: Complete failure (no execution completed)

Examples:
    llm-answer-collector run --config collector.config.yaml --queries queries.yaml
    llm-answer-collector run -c collector.config.yaml -q queries.yaml --format json
    llm-answer-collector status -c collector.config.yaml 5b0e...
    llm-answer-collector sweep -c collector.config.yaml --dry-run

Security:
    - API keys are loaded from environment variables only
    - Errors may contain file paths but never API keys
"""

import asyncio
import sqlite3
import traceback
from pathlib import Path

import typer
from rich.traceback import install as install_rich_traceback

from llm_answer_collector import __version__
from llm_answer_collector.collector.orchestrator import Orchestrator
from llm_answer_collector.config.loader import load_config, load_queries
from llm_answer_collector.config.schema import RuntimeConfig
from llm_answer_collector.exceptions import (
    APIKeyMissingError,
    ConfigFileNotFoundError,
    ConfigurationError,
    ConfigValidationError,
    DatabaseError,
    ExecutionNotFoundError,
)
from llm_answer_collector.storage.db import init_db_if_needed, list_transitions
from llm_answer_collector.tracking.verifier import ExecutionVerifier
from llm_answer_collector.utils.console import (
    error,
    info,
    output_mode,
    print_executions_table,
    print_final_summary,
    print_key_health,
    spinner,
    success,
    warning,
)
from llm_answer_collector.utils.logging import setup_logging

install_rich_traceback(show_locals=False)

# Exit codes
EXIT_SUCCESS = 0  # Every execution completed or deferred
EXIT_CONFIG_ERROR = 1  # Config validation failed
EXIT_DB_ERROR = 2  # Database initialization failed
EXIT_PARTIAL_FAILURE = 3  # Some executions failed
EXIT_COMPLETE_FAILURE = 4  # No execution completed

app = typer.Typer(
    name="llm-answer-collector",
    help="Collect answers from AI answer-engines with provider fallback",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    ...,
    "--config",
    "-c",
    help="Path to YAML configuration file",
    exists=True,
    file_okay=True,
    dir_okay=False,
)
FORMAT_OPTION = typer.Option(
    "text",
    "--format",
    "-f",
    help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
)


def _set_output(format: str, verbose: bool = False) -> None:
    if format not in ("text", "json"):
        output_mode.format = "text"
        error(f"Invalid format: {format}. Must be 'text' or 'json'")
        raise typer.Exit(EXIT_CONFIG_ERROR)
    output_mode.format = format
    # JSON logs stay on stderr; human mode only shows warnings unless verbose
    setup_logging(verbose=verbose, quiet_logs=output_mode.is_human())


def _load_runtime_config(config: Path, verbose: bool) -> RuntimeConfig:
    try:
        with spinner("Loading configuration..."):
            return load_config(config)
    except ConfigFileNotFoundError as e:
        error(f"Configuration file not found: {e}")
    except APIKeyMissingError as e:
        error(f"API key missing: {e}")
    except ConfigValidationError as e:
        error(f"Configuration validation failed: {e}")
    except ConfigurationError as e:
        error(f"Configuration error: {e}")

    if verbose:
        traceback.print_exc()
    output_mode.flush_json()
    raise typer.Exit(EXIT_CONFIG_ERROR)


def _init_database(db_path: str, verbose: bool) -> None:
    try:
        with spinner("Initializing database..."):
            init_db_if_needed(db_path)
    except DatabaseError as e:
        error(f"Failed to initialize database: {e}")
        if verbose:
            traceback.print_exc()
        output_mode.flush_json()
        raise typer.Exit(EXIT_DB_ERROR)


@app.command()
def run(
    config: Path = CONFIG_OPTION,
    queries: Path = typer.Option(
        ...,
        "--queries",
        "-q",
        help="Path to YAML file with the queries to dispatch",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    wait_deferred: bool = typer.Option(
        False,
        "--wait-deferred",
        help="Wait for async provider jobs to settle before exiting",
    ),
    format: str = FORMAT_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    Dispatch queries to their collectors and record every execution.

    Queries are processed in batches; each query fans out to all of its
    enabled collectors, and each collector walks its provider chain until a
    provider answers.

    Exit codes:
      0: Every execution completed (or was deferred)
      1: Configuration error
      2: Database error
      3: Partial failure (some executions failed)
      4: Complete failure (no execution completed)
    """
    _set_output(format, verbose)

    runtime_config = _load_runtime_config(config, verbose)

    try:
        query_list = load_queries(queries)
    except ConfigurationError as e:
        error(f"Invalid queries file: {e}")
        output_mode.flush_json()
        raise typer.Exit(EXIT_CONFIG_ERROR)

    success(
        f"Loaded {len(query_list)} queries, "
        f"{len(runtime_config.collectors)} collectors, "
        f"{len(runtime_config.all_providers())} providers"
    )

    _init_database(runtime_config.store.sqlite_db_path, verbose)

    async def _submit():
        async with Orchestrator(runtime_config) as orchestrator:
            summary = await orchestrator.submit_batch(
                query_list, wait_for_deferred=wait_deferred
            )
            return summary, orchestrator.key_pool_health()

    try:
        with spinner(f"Dispatching {len(query_list)} queries..."):
            summary, key_health = asyncio.run(_submit())
    except (DatabaseError, sqlite3.Error) as e:
        error(f"Run failed: {e}")
        if verbose:
            traceback.print_exc()
        output_mode.flush_json()
        raise typer.Exit(EXIT_DB_ERROR)

    print_executions_table(
        [
            {
                "execution_id": outcome.execution_id,
                "query_id": outcome.query_id,
                "collector_type": outcome.collector_type,
                "status": outcome.status,
                "provider": outcome.provider,
                "fallback_chain": outcome.fallback_chain,
                "error": outcome.error,
            }
            for outcome in summary.outcomes
        ]
    )
    if verbose:
        print_key_health(key_health)

    if summary.deferred_count and output_mode.is_human():
        warning(
            f"{summary.deferred_count} executions are still running as async jobs; "
            f"they resume on the next run or are settled by the stale sweep"
        )

    print_final_summary(
        run_id=summary.run_id,
        succeeded=summary.succeeded_count,
        failed=summary.failed_count,
        deferred=summary.deferred_count,
        batches=len(summary.batch_sizes),
    )

    if summary.total == 0:
        raise typer.Exit(EXIT_SUCCESS)
    if summary.succeeded_count == 0 and summary.deferred_count == 0:
        raise typer.Exit(EXIT_COMPLETE_FAILURE)
    if summary.failed_count > 0:
        raise typer.Exit(EXIT_PARTIAL_FAILURE)
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def validate(
    config: Path = CONFIG_OPTION,
    format: str = FORMAT_OPTION,
):
    """
    Validate configuration without dispatching queries.

    Checks YAML syntax, schema rules, provider chains and that every key
    pool's environment variables are set.

    Exit codes:
      0: Configuration is valid
      1: Configuration is invalid
    """
    _set_output(format)

    runtime_config = _load_runtime_config(config, verbose=False)

    success("Configuration is valid")
    for collector_type, providers in runtime_config.collectors.items():
        chain = " → ".join(p.name for p in providers) or "(no enabled providers)"
        info(f"{collector_type}: {chain}")
    info(f"Key pools: {len(runtime_config.key_pools)}")

    if output_mode.is_agent():
        output_mode.add_json("valid", True)
        output_mode.add_json(
            "collectors",
            {ct: [p.name for p in providers] for ct, providers in runtime_config.collectors.items()},
        )
        output_mode.add_json("key_pools_count", len(runtime_config.key_pools))
        output_mode.flush_json()

    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution identifier"),
    config: Path = CONFIG_OPTION,
    format: str = FORMAT_OPTION,
):
    """
    Show the stored status, result and transition history of an execution.

    Exit codes:
      0: Execution found
      1: Configuration error or unknown execution
      2: Database error
    """
    _set_output(format)

    runtime_config = _load_runtime_config(config, verbose=False)
    db_path = runtime_config.store.sqlite_db_path
    _init_database(db_path, verbose=False)

    orchestrator = Orchestrator(runtime_config)
    try:
        state = orchestrator.get_execution_status(execution_id)
    except ExecutionNotFoundError as e:
        error(str(e))
        output_mode.flush_json()
        raise typer.Exit(EXIT_CONFIG_ERROR)

    with sqlite3.connect(db_path) as conn:
        transitions = list_transitions(conn, execution_id)

    if output_mode.is_agent():
        output_mode.add_json("execution_id", execution_id)
        output_mode.add_json("status", state["status"])
        output_mode.add_json("result_id", state["result_id"])
        output_mode.add_json("error", state["error"])
        output_mode.add_json("transitions", transitions)
        output_mode.flush_json()
        raise typer.Exit(EXIT_SUCCESS)

    info(f"Execution {execution_id}: {state['status']}")
    if state["result_id"]:
        info(f"Result: {state['result_id']}")
    if state["error"]:
        warning(f"Error: {state['error'].get('reason')}")
    for transition in transitions:
        forced = " (forced)" if transition["forced"] else ""
        info(
            f"{transition['at']}  {transition['from'] or '-'} → {transition['to']}  "
            f"[{transition['source']}]{forced} {transition['reason'] or ''}"
        )
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def sweep(
    config: Path = CONFIG_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Only report stuck executions; do not change any state",
    ),
    format: str = FORMAT_OPTION,
):
    """
    Run one stale-execution sweep pass.

    Running executions untouched beyond the staleness threshold are
    completed when a Result exists, otherwise failed as timed out.

    Exit codes:
      0: Sweep finished
      1: Configuration error
      2: Database error
    """
    _set_output(format)

    runtime_config = _load_runtime_config(config, verbose=False)
    db_path = runtime_config.store.sqlite_db_path
    _init_database(db_path, verbose=False)

    verifier = ExecutionVerifier(db_path, runtime_config.sweep)

    try:
        if dry_run:
            stats = verifier.stuck_execution_stats()
        else:
            with spinner("Sweeping stale executions..."):
                stats = verifier.sweep_stale_executions()
    except sqlite3.Error as e:
        error(f"Sweep failed: {e}")
        output_mode.flush_json()
        raise typer.Exit(EXIT_DB_ERROR)

    if output_mode.is_agent():
        output_mode.add_json("dry_run", dry_run)
        output_mode.add_json("stats", stats)
        output_mode.flush_json()
        raise typer.Exit(EXIT_SUCCESS)

    if dry_run:
        info(f"Stuck executions: {stats['total_stuck']}")
        for collector_type, count in stats["by_collector_type"].items():
            info(f"  {collector_type}: {count}")
        if stats["oldest_stuck"]:
            info(f"Oldest stuck since: {stats['oldest_stuck']}")
    else:
        success(
            f"Checked {stats['checked']} stale executions: "
            f"{stats['completed']} completed, {stats['failed']} failed, "
            f"{stats['skipped']} skipped"
        )
        if stats["errors"]:
            warning(f"{stats['errors']} executions could not be swept")
    raise typer.Exit(EXIT_SUCCESS)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-V", help="Show version and exit"),
):
    """
    LLM Answer Collector - reliable answer collection from AI answer-engines.

    Use 'llm-answer-collector COMMAND --help' for detailed command documentation.
    """
    if version:
        typer.echo(f"llm-answer-collector version {__version__}")
        raise typer.Exit(EXIT_SUCCESS)

    if ctx.invoked_subcommand is None:
        typer.echo("Use --help to see available commands")


if __name__ == "__main__":
    app()
