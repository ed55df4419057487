"""
Structured JSON logging for LLM Answer Collector.

Provides standardized logging with:
- JSON formatted output to stderr
- UTC timestamps with timezone info
- Structured context fields (run_id, execution_id, context dict)
- Secret redaction for pooled provider keys

Provider keys are registered with register_secret() when the key pool is
built, so any accidental occurrence of a pooled key in a log line is masked
down to its last 4 characters. Well-known token shapes (sk-*, Bearer) are
masked even when never registered.

Examples:
    >>> from llm_answer_collector.utils.logging import setup_logging, log_with_context
    >>> setup_logging(verbose=True)
    >>> logger = logging.getLogger("collector.fallback")
    >>> log_with_context(logger, logging.INFO, "Provider succeeded",
    ...                  context={"provider": "serpapi"}, execution_id="e1")
"""

import json
import logging
import re
import sys
import threading
from typing import Any

from llm_answer_collector.utils.time import utc_timestamp

_registered_secrets: set[str] = set()
_secrets_lock = threading.Lock()

# Shorter values would mask ordinary words in log messages
MIN_REGISTERED_SECRET_LENGTH = 8


def register_secret(value: str) -> None:
    """
    Register a secret value that must never appear in logs.

    Args:
        value: Raw secret (e.g. a provider API key)
    """
    if value and len(value) >= MIN_REGISTERED_SECRET_LENGTH:
        with _secrets_lock:
            _registered_secrets.add(value)


def mask_secret(value: str) -> str:
    """
    Mask a secret for display, keeping only the last 4 characters.

    Examples:
        >>> mask_secret("bd-key-1234567890")
        '***7890'
        >>> mask_secret("abc")
        '***'
    """
    if len(value) <= 4:
        return "***"
    return f"***{value[-4:]}"


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs each log record as one JSON object.

    Fields:
    - timestamp: ISO 8601 UTC timestamp
    - level: Log level name
    - component: Logger name
    - message: Rendered log message
    - context / run_id / execution_id: present when passed via extra
    - exception: Formatted traceback when exc_info is set
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": utc_timestamp(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry["context"] = record.context

        if hasattr(record, "run_id"):
            log_entry["run_id"] = record.run_id

        if hasattr(record, "execution_id"):
            log_entry["execution_id"] = record.execution_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts secrets from messages, args and context.

    Redacts every value registered through register_secret() plus common
    token shapes:
    "sk-proj-abcdef123456..." -> "sk-...3456"
    "Bearer abc123xyz789..." -> "Bearer ***z789"
    """

    SECRET_PATTERNS = [
        (re.compile(r"\bsk-[a-zA-Z0-9_-]{20,}\b"), "sk-...{last4}"),
        (re.compile(r"\bBearer\s+[a-zA-Z0-9_.-]{20,}\b"), "Bearer ***{last4}"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact_secrets(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._redact_secrets(str(v)) for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._redact_secrets(str(arg)) for arg in record.args
                )

        if hasattr(record, "context") and isinstance(record.context, dict):
            record.context = self._redact_dict(record.context)

        return True

    def _redact_secrets(self, text: str) -> str:
        with _secrets_lock:
            secrets = sorted(_registered_secrets, key=len, reverse=True)

        for secret in secrets:
            if secret in text:
                text = text.replace(secret, mask_secret(secret))

        for pattern, template in self.SECRET_PATTERNS:

            def redact_match(match: re.Match) -> str:
                return template.format(last4=match.group(0)[-4:])

            text = pattern.sub(redact_match, text)

        return text

    def _redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in data.items():
            if isinstance(value, str):
                result[key] = self._redact_secrets(value)
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, list):
                result[key] = [
                    self._redact_secrets(v) if isinstance(v, str) else v for v in value
                ]
            else:
                result[key] = value
        return result


def setup_logging(verbose: bool = False, quiet_logs: bool = False) -> None:
    """
    Configure structured JSON logging for the application.

    Sets up a stderr handler (stdout is reserved for CLI output) with the
    JSON formatter and secret redaction filter. Log level is DEBUG when
    verbose, INFO otherwise.

    Args:
        verbose: If True, set log level to DEBUG.
        quiet_logs: If True (and not verbose), only WARNING and above reach
            stderr; used when the CLI renders human output itself.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Prevent duplicate logs when called more than once
    root_logger.handlers.clear()

    if verbose:
        handler_level = logging.DEBUG
    elif quiet_logs:
        handler_level = logging.WARNING
    else:
        handler_level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(handler_level)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SecretRedactingFilter())

    root_logger.addHandler(handler)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    run_id: str | None = None,
    execution_id: str | None = None,
) -> None:
    """
    Log a message with structured context, run_id and execution_id.

    Equivalent to logger.log(level, message, extra={...}) with only the
    provided fields set.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, logging.WARNING, etc.)
        message: Human-readable log message
        context: Optional dict with additional structured data
        run_id: Optional batch submission identifier
        execution_id: Optional Execution identifier
    """
    extra: dict[str, Any] = {}

    if context is not None:
        extra["context"] = context

    if run_id is not None:
        extra["run_id"] = run_id

    if execution_id is not None:
        extra["execution_id"] = execution_id

    logger.log(level, message, extra=extra if extra else None)
