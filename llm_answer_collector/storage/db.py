"""
SQLite Execution/Result store for LLM Answer Collector.

This module provides database setup with schema versioning plus every read
and write the orchestrator performs. All timestamps are stored in ISO 8601
format with 'Z' suffix (UTC).

The database tracks:
- executions: One row per (run, query, collector) with a versioned status
- results: Stored answer payloads, at most one per execution
- execution_transitions: Audit trail of every status change
- cached_analyses: Consolidated downstream analysis keyed by result id

The store is mutated concurrently by the dispatcher, the async poller and the
stale sweep. Every status write is a compare-and-swap on the expected current
status (and optionally the row version), so a stale writer never overwrites a
fresher state; callers learn from the boolean return whether they won.

Security:
    - ALL queries use parameterized statements to prevent SQL injection
    - NO API keys are ever stored in the database
"""

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any

from llm_answer_collector.exceptions import DatabaseInitError, DatabaseMigrationError
from llm_answer_collector.tracking.state import (
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    check_transition,
)
from llm_answer_collector.utils.time import utc_timestamp

logger = logging.getLogger(__name__)

# Current schema version - increment when migrations are added
CURRENT_SCHEMA_VERSION = 1

_EXECUTION_COLUMNS = (
    "id",
    "run_id",
    "query_id",
    "brand_id",
    "collector_type",
    "status",
    "provider",
    "job_id",
    "result_id",
    "error_json",
    "fallback_chain_json",
    "version",
    "created_at",
    "updated_at",
)
_EXECUTION_SELECT = f"SELECT {', '.join(_EXECUTION_COLUMNS)} FROM executions"

_RESULT_COLUMNS = (
    "id",
    "execution_id",
    "text",
    "citations_json",
    "urls_json",
    "metadata_json",
    "created_at",
)
_RESULT_SELECT = f"SELECT {', '.join(_RESULT_COLUMNS)} FROM results"


def init_db_if_needed(db_path: str) -> None:
    """
    Initialize SQLite database with schema versioning.

    Creates the database file if it doesn't exist, initializes the schema_version
    table, checks the current schema version, and applies any needed migrations.
    Idempotent: a no-op when the schema is already current.

    Args:
        db_path: Filesystem path to SQLite database file.
                 Parent directory is created if needed.

    Raises:
        DatabaseInitError: If the database cannot be created or opened, or its
            schema is newer than this software
        DatabaseMigrationError: If a migration fails
    """
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)
            conn.commit()

            current_version = get_schema_version(conn)

            if current_version < CURRENT_SCHEMA_VERSION:
                logger.info(
                    f"Database schema upgrade needed: "
                    f"v{current_version} -> v{CURRENT_SCHEMA_VERSION}"
                )
                apply_migrations(conn, current_version, CURRENT_SCHEMA_VERSION)
            elif current_version > CURRENT_SCHEMA_VERSION:
                raise DatabaseInitError(
                    f"Database schema version {current_version} is newer than "
                    f"expected {CURRENT_SCHEMA_VERSION}. Update your software or "
                    f"use a different database file."
                )
    except (sqlite3.Error, OSError) as e:
        raise DatabaseInitError(f"Failed to initialize database {db_path}: {e}") from e


def get_schema_version(conn: sqlite3.Connection) -> int:
    """
    Get current schema version from database (0 for a fresh database).

    Note:
        Call init_db_if_needed() first to ensure the schema_version table exists.
    """
    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    result = cursor.fetchone()[0]
    return result if result is not None else 0


def apply_migrations(
    conn: sqlite3.Connection, from_version: int, to_version: int
) -> None:
    """
    Apply schema migrations from one version to another.

    Each migration runs in its own transaction; if migration to version N
    fails, the database remains at version N-1.

    Raises:
        DatabaseMigrationError: If any migration fails or a downgrade is requested
    """
    if from_version > to_version:
        raise DatabaseMigrationError(
            f"Cannot downgrade schema from v{from_version} to v{to_version}. "
            f"Downgrades are not supported. Use a database backup instead."
        )

    for target_version in range(from_version + 1, to_version + 1):
        logger.info(f"Applying migration to schema version {target_version}")

        try:
            conn.execute("BEGIN")

            if target_version == 1:
                _migrate_to_v1(conn)
            else:
                raise ValueError(f"No migration defined for version {target_version}")

            timestamp = utc_timestamp()
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (target_version, timestamp),
            )
            conn.commit()
            logger.info(f"Successfully migrated to schema version {target_version}")

        except (sqlite3.Error, ValueError) as e:
            conn.rollback()
            logger.error(
                f"Migration to version {target_version} failed: {e}", exc_info=True
            )
            raise DatabaseMigrationError(
                f"Failed to migrate database to version {target_version}: {e}"
            ) from e


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """
    Create the initial schema.

    Schema design:
    - UNIQUE(run_id, query_id, collector_type) gives one execution per pair
    - results.execution_id is UNIQUE so a result is written at most once
    - cached_analyses keyed by result_id; first writer wins
    - version column backs optimistic concurrency on executions
    """
    conn.execute("""
        CREATE TABLE IF NOT EXISTS executions (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            query_id TEXT NOT NULL,
            brand_id TEXT NOT NULL,
            collector_type TEXT NOT NULL,
            status TEXT NOT NULL,
            provider TEXT,
            job_id TEXT,
            result_id TEXT,
            error_json TEXT,
            fallback_chain_json TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(run_id, query_id, collector_type)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS results (
            id TEXT PRIMARY KEY,
            execution_id TEXT NOT NULL UNIQUE,
            text TEXT NOT NULL,
            citations_json TEXT NOT NULL,
            urls_json TEXT NOT NULL,
            metadata_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (execution_id) REFERENCES executions(id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS execution_transitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            execution_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            source TEXT NOT NULL,
            reason TEXT,
            forced INTEGER NOT NULL DEFAULT 0,
            at TEXT NOT NULL,
            FOREIGN KEY (execution_id) REFERENCES executions(id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS cached_analyses (
            result_id TEXT PRIMARY KEY,
            entities_json TEXT NOT NULL,
            citation_categories_json TEXT NOT NULL,
            sentiment_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    # Stale sweep scans running rows by last update
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_executions_status_updated
        ON executions(status, updated_at)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_executions_run
        ON executions(run_id, query_id)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_transitions_execution
        ON execution_transitions(execution_id)
    """)

    logger.debug("Created schema v1 tables and indexes")


# ============================================================================
# Executions
# ============================================================================


def _execution_from_row(row: tuple) -> dict[str, Any]:
    record = dict(zip(_EXECUTION_COLUMNS, row, strict=True))
    error_json = record.pop("error_json")
    chain_json = record.pop("fallback_chain_json")
    record["error"] = json.loads(error_json) if error_json else None
    record["fallback_chain"] = json.loads(chain_json) if chain_json else []
    return record


def _record_transition(
    conn: sqlite3.Connection,
    execution_id: str,
    from_status: str | None,
    to_status: str,
    source: str,
    reason: str | None,
    forced: bool,
    timestamp_utc: str,
) -> None:
    conn.execute(
        """
        INSERT INTO execution_transitions (
            execution_id, from_status, to_status, source, reason, forced, at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (execution_id, from_status, to_status, source, reason, int(forced), timestamp_utc),
    )


def create_execution(
    conn: sqlite3.Connection,
    run_id: str,
    query_id: str,
    brand_id: str,
    collector_type: str,
    timestamp_utc: str | None = None,
) -> str:
    """
    Ensure a pending execution exists for (run_id, query_id, collector_type).

    Idempotent: if the row already exists its id is returned unchanged.

    Returns:
        Execution id

    Note:
        Always call conn.commit() (or use the connection as a context manager)
        to persist changes.
    """
    timestamp = timestamp_utc or utc_timestamp()
    execution_id = str(uuid.uuid4())

    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO executions (
            id, run_id, query_id, brand_id, collector_type, status,
            version, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (execution_id, run_id, query_id, brand_id, collector_type, PENDING,
         timestamp, timestamp),
    )

    if cursor.rowcount == 1:
        _record_transition(
            conn, execution_id, None, PENDING, "dispatcher", "created", False, timestamp
        )
        logger.debug(
            f"Created execution {execution_id} for query {query_id} / {collector_type}"
        )
        return execution_id

    row = conn.execute(
        """
        SELECT id FROM executions
        WHERE run_id = ? AND query_id = ? AND collector_type = ?
        """,
        (run_id, query_id, collector_type),
    ).fetchone()
    return row[0]


def get_execution(conn: sqlite3.Connection, execution_id: str) -> dict[str, Any] | None:
    """
    Fetch one execution.

    Returns:
        dict with keys id, run_id, query_id, brand_id, collector_type, status,
        provider, job_id, result_id, error, fallback_chain, version,
        created_at, updated_at; None if the execution does not exist
    """
    row = conn.execute(f"{_EXECUTION_SELECT} WHERE id = ?", (execution_id,)).fetchone()
    return _execution_from_row(row) if row else None


def list_executions(
    conn: sqlite3.Connection, run_id: str, query_ids: list[str] | None = None
) -> list[dict[str, Any]]:
    """List executions of a run, optionally restricted to some queries."""
    if query_ids is None:
        rows = conn.execute(
            f"{_EXECUTION_SELECT} WHERE run_id = ? ORDER BY created_at, id", (run_id,)
        ).fetchall()
    elif not query_ids:
        return []
    else:
        placeholders = ", ".join("?" for _ in query_ids)
        rows = conn.execute(
            f"{_EXECUTION_SELECT} WHERE run_id = ? AND query_id IN ({placeholders}) "
            f"ORDER BY created_at, id",
            (run_id, *query_ids),
        ).fetchall()
    return [_execution_from_row(row) for row in rows]


def update_execution_status(
    conn: sqlite3.Connection,
    execution_id: str,
    expected_status: str,
    new_status: str,
    source: str,
    reason: str | None = None,
    result_id: str | None = None,
    error: dict[str, Any] | None = None,
    provider: str | None = None,
    fallback_chain: list[str] | None = None,
    expected_version: int | None = None,
    forced: bool = False,
    timestamp_utc: str | None = None,
) -> bool:
    """
    Compare-and-swap an execution's status.

    The update applies only if the row's current status equals
    expected_status (and its version equals expected_version, when given).
    A successful write bumps the version and appends an audit row.

    completed always carries a result_id and clears any error; failed always
    clears result_id and stores the structured error.

    Args:
        conn: Active SQLite database connection
        execution_id: Execution to update
        expected_status: Status the caller observed
        new_status: Target status
        source: Writer name recorded in the audit trail (dispatcher, poller,
            verifier.immediate, verifier.batch, verifier.sweep)
        reason: Optional human-readable reason for the audit trail
        result_id: Required when new_status is completed
        error: Structured error stored when new_status is failed
        provider: Provider that produced the outcome
        fallback_chain: Providers attempted, in order
        expected_version: Optional optimistic-concurrency version guard
        forced: Corrective transition outside the legal lifecycle (verifier only)
        timestamp_utc: Override for the update timestamp

    Returns:
        True if this writer won the swap, False if the row had moved on

    Raises:
        IllegalTransitionError: If a non-forced transition is not legal
        ValueError: If completed is requested without a result_id
    """
    if not forced:
        check_transition(expected_status, new_status)

    if new_status == COMPLETED and not result_id:
        raise ValueError("A completed execution requires a result_id")

    timestamp = timestamp_utc or utc_timestamp()

    assignments = ["status = ?", "updated_at = ?", "version = version + 1"]
    params: list[Any] = [new_status, timestamp]

    if new_status == COMPLETED:
        assignments += ["result_id = ?", "error_json = NULL"]
        params.append(result_id)
    elif new_status == FAILED:
        assignments += ["result_id = NULL", "error_json = ?"]
        params.append(json.dumps(error) if error is not None else None)

    if provider is not None:
        assignments.append("provider = ?")
        params.append(provider)

    if fallback_chain is not None:
        assignments.append("fallback_chain_json = ?")
        params.append(json.dumps(fallback_chain))

    sql = f"UPDATE executions SET {', '.join(assignments)} WHERE id = ? AND status = ?"
    params += [execution_id, expected_status]

    if expected_version is not None:
        sql += " AND version = ?"
        params.append(expected_version)

    cursor = conn.execute(sql, params)
    if cursor.rowcount != 1:
        logger.debug(
            f"Status swap {expected_status} -> {new_status} lost for execution "
            f"{execution_id} (source={source})"
        )
        return False

    _record_transition(
        conn, execution_id, expected_status, new_status, source, reason, forced, timestamp
    )
    return True


def touch_execution(
    conn: sqlite3.Connection,
    execution_id: str,
    expected_status: str = RUNNING,
    job_id: str | None = None,
    provider: str | None = None,
    fallback_chain: list[str] | None = None,
    timestamp_utc: str | None = None,
) -> bool:
    """
    Refresh updated_at (and optionally record job handle data) without
    changing status.

    Used by the fallback chain to persist a deferred job handle and by the
    poller as a heartbeat, so actively polled executions are not stale.

    Returns:
        True if the execution was still in expected_status
    """
    assignments = ["updated_at = ?", "version = version + 1"]
    params: list[Any] = [timestamp_utc or utc_timestamp()]

    if job_id is not None:
        assignments.append("job_id = ?")
        params.append(job_id)
    if provider is not None:
        assignments.append("provider = ?")
        params.append(provider)
    if fallback_chain is not None:
        assignments.append("fallback_chain_json = ?")
        params.append(json.dumps(fallback_chain))

    cursor = conn.execute(
        f"UPDATE executions SET {', '.join(assignments)} WHERE id = ? AND status = ?",
        (*params, execution_id, expected_status),
    )
    return cursor.rowcount == 1


def find_stale_running(
    conn: sqlite3.Connection, updated_before: str
) -> list[dict[str, Any]]:
    """
    Find running executions whose last update is older than updated_before.

    Args:
        updated_before: ISO 8601 'Z' timestamp; fixed-width format makes the
            lexical comparison chronological
    """
    rows = conn.execute(
        f"{_EXECUTION_SELECT} WHERE status = ? AND updated_at < ? ORDER BY updated_at",
        (RUNNING, updated_before),
    ).fetchall()
    return [_execution_from_row(row) for row in rows]


def list_deferred_running(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """List running executions that hold an async job handle."""
    rows = conn.execute(
        f"{_EXECUTION_SELECT} WHERE status = ? AND job_id IS NOT NULL ORDER BY updated_at",
        (RUNNING,),
    ).fetchall()
    return [_execution_from_row(row) for row in rows]


def get_stuck_execution_stats(
    conn: sqlite3.Connection, updated_before: str
) -> dict[str, Any]:
    """
    Summarize running executions untouched since updated_before.

    Returns:
        dict with total_stuck, by_collector_type ({type: count}) and
        oldest_stuck (updated_at of the oldest row, or None)
    """
    rows = conn.execute(
        """
        SELECT collector_type, COUNT(*), MIN(updated_at)
        FROM executions
        WHERE status = ? AND updated_at < ?
        GROUP BY collector_type
        ORDER BY collector_type
        """,
        (RUNNING, updated_before),
    ).fetchall()

    by_collector_type = {row[0]: row[1] for row in rows}
    oldest = min((row[2] for row in rows), default=None)

    return {
        "total_stuck": sum(by_collector_type.values()),
        "by_collector_type": by_collector_type,
        "oldest_stuck": oldest,
    }


def list_transitions(conn: sqlite3.Connection, execution_id: str) -> list[dict[str, Any]]:
    """Return the audit trail of an execution, oldest first."""
    rows = conn.execute(
        """
        SELECT from_status, to_status, source, reason, forced, at
        FROM execution_transitions
        WHERE execution_id = ?
        ORDER BY id
        """,
        (execution_id,),
    ).fetchall()

    return [
        {
            "from": row[0],
            "to": row[1],
            "source": row[2],
            "reason": row[3],
            "forced": bool(row[4]),
            "at": row[5],
        }
        for row in rows
    ]


def get_run_summary(conn: sqlite3.Connection, run_id: str) -> dict[str, int]:
    """
    Count a run's executions by status.

    Returns:
        dict with pending, running, completed, failed and total counts
    """
    rows = conn.execute(
        "SELECT status, COUNT(*) FROM executions WHERE run_id = ? GROUP BY status",
        (run_id,),
    ).fetchall()

    summary = {PENDING: 0, RUNNING: 0, COMPLETED: 0, FAILED: 0}
    summary.update({row[0]: row[1] for row in rows})
    summary["total"] = sum(summary.values())
    return summary


# ============================================================================
# Results
# ============================================================================


def _result_from_row(row: tuple) -> dict[str, Any]:
    record = dict(zip(_RESULT_COLUMNS, row, strict=True))
    record["citations"] = json.loads(record.pop("citations_json"))
    record["urls"] = json.loads(record.pop("urls_json"))
    record["metadata"] = json.loads(record.pop("metadata_json"))
    return record


def insert_result(
    conn: sqlite3.Connection,
    execution_id: str,
    text: str,
    citations: list[Any] | None = None,
    urls: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp_utc: str | None = None,
) -> str:
    """
    Write the Result of an execution if none exists yet.

    Idempotent: a second write for the same execution keeps the first Result
    and returns its id.

    Returns:
        Id of the stored Result
    """
    result_id = str(uuid.uuid4())

    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO results (
            id, execution_id, text, citations_json, urls_json, metadata_json, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            result_id,
            execution_id,
            text,
            json.dumps(citations or []),
            json.dumps(urls or []),
            json.dumps(metadata or {}),
            timestamp_utc or utc_timestamp(),
        ),
    )

    if cursor.rowcount == 1:
        logger.debug(f"Inserted result {result_id} for execution {execution_id}")
        return result_id

    row = conn.execute(
        "SELECT id FROM results WHERE execution_id = ?", (execution_id,)
    ).fetchone()
    return row[0]


def get_result(conn: sqlite3.Connection, result_id: str) -> dict[str, Any] | None:
    """Fetch a Result by id (None if absent)."""
    row = conn.execute(f"{_RESULT_SELECT} WHERE id = ?", (result_id,)).fetchone()
    return _result_from_row(row) if row else None


def get_result_for_execution(
    conn: sqlite3.Connection, execution_id: str
) -> dict[str, Any] | None:
    """Fetch the Result owned by an execution (None if absent)."""
    row = conn.execute(
        f"{_RESULT_SELECT} WHERE execution_id = ?", (execution_id,)
    ).fetchone()
    return _result_from_row(row) if row else None


# ============================================================================
# Cached analyses
# ============================================================================


def lookup_cached_analysis(
    conn: sqlite3.Connection, result_id: str
) -> dict[str, Any] | None:
    """
    Look up the consolidated analysis of a Result.

    Returns:
        dict with result_id, entities, citation_categories, sentiment_by_entity
        and created_at; None on cache miss
    """
    row = conn.execute(
        """
        SELECT result_id, entities_json, citation_categories_json, sentiment_json, created_at
        FROM cached_analyses
        WHERE result_id = ?
        """,
        (result_id,),
    ).fetchone()

    if row is None:
        return None

    return {
        "result_id": row[0],
        "entities": json.loads(row[1]),
        "citation_categories": json.loads(row[2]),
        "sentiment_by_entity": json.loads(row[3]),
        "created_at": row[4],
    }


def store_cached_analysis(
    conn: sqlite3.Connection,
    result_id: str,
    entities: list[Any],
    citation_categories: dict[str, Any],
    sentiment_by_entity: dict[str, Any],
) -> bool:
    """
    Store a consolidated analysis; the first writer wins.

    Returns:
        True if this call stored the row, False if one already existed
    """
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO cached_analyses (
            result_id, entities_json, citation_categories_json, sentiment_json, created_at
        ) VALUES (?, ?, ?, ?, ?)
        """,
        (
            result_id,
            json.dumps(entities),
            json.dumps(citation_categories),
            json.dumps(sentiment_by_entity),
            utc_timestamp(),
        ),
    )
    return cursor.rowcount == 1


def delete_cached_analyses(conn: sqlite3.Connection, result_id: str | None = None) -> int:
    """
    Delete one cached analysis, or all of them when result_id is None.

    Returns:
        Number of rows deleted
    """
    if result_id is None:
        cursor = conn.execute("DELETE FROM cached_analyses")
    else:
        cursor = conn.execute(
            "DELETE FROM cached_analyses WHERE result_id = ?", (result_id,)
        )
    return cursor.rowcount
