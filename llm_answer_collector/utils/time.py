"""
UTC timestamp utilities for LLM Answer Collector.

All timestamps MUST be in UTC with explicit timezone markers. Timestamps are
stored as fixed-width ISO 8601 strings, so lexical comparison in SQL matches
chronological order (the stale-execution sweep relies on this).

This module provides:
- utc_now(): Current time as timezone-aware datetime
- utc_timestamp(): ISO 8601 timestamp string with 'Z' suffix
- format_timestamp(): Same format for an arbitrary aware datetime
- run_id_from_timestamp(): Filesystem-safe timestamp slug for batch run IDs
- parse_timestamp(): Parse ISO 8601 string to datetime
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Return current time in UTC with timezone info.

    Note:
        NEVER use datetime.now() without timezone parameter.
        NEVER use datetime.utcnow() (deprecated, returns naive datetime).
    """
    return datetime.now(UTC)


def format_timestamp(dt: datetime) -> str:
    """
    Format an aware datetime as YYYY-MM-DDTHH:MM:SSZ.

    Raises:
        ValueError: If dt is naive

    Example:
        >>> format_timestamp(datetime(2025, 11, 2, 8, 30, 45, tzinfo=UTC))
        '2025-11-02T08:30:45Z'
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Datetime must be timezone-aware (use timezone.utc). "
            "Got naive datetime. Use utc_now() or ensure dt has tzinfo set."
        )
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_timestamp() -> str:
    """
    Return current time as an ISO 8601 timestamp string with 'Z' suffix.

    Example:
        >>> utc_timestamp()
        '2025-11-02T08:30:45Z'
    """
    return format_timestamp(utc_now())


def run_id_from_timestamp(dt: datetime | None = None) -> str:
    """
    Generate a run_id slug from a UTC timestamp.

    Format: YYYY-MM-DDTHH-MM-SSZ (hyphens instead of colons). Sorts
    chronologically and identifies one submit_batch call.

    Raises:
        ValueError: If dt is provided but is naive (missing timezone)

    Example:
        >>> run_id_from_timestamp(datetime(2025, 11, 2, 8, 30, 45, tzinfo=UTC))
        '2025-11-02T08-30-45Z'
    """
    if dt is None:
        dt = utc_now()

    if dt.tzinfo is None:
        raise ValueError(
            "Datetime must be timezone-aware (use timezone.utc). "
            "Got naive datetime. Use utc_now() or ensure dt has tzinfo set."
        )

    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%SZ")


def parse_timestamp(timestamp_str: str) -> datetime:
    """
    Parse ISO 8601 timestamp string to timezone-aware datetime.

    Expects format: YYYY-MM-DDTHH:MM:SSZ (with 'Z' suffix for UTC).

    Raises:
        ValueError: If timestamp doesn't end with 'Z' or has invalid format

    Examples:
        >>> parse_timestamp('2025-11-02T08:30:45Z').year
        2025
        >>> parse_timestamp('2025-11-02T08:30:45')
        Traceback (most recent call last):
        ...
        ValueError: Timestamp must end with 'Z' (UTC): 2025-11-02T08:30:45
    """
    if not timestamp_str.endswith("Z"):
        raise ValueError(f"Timestamp must end with 'Z' (UTC): {timestamp_str}")

    try:
        return datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid ISO 8601 timestamp format: {timestamp_str}") from e
