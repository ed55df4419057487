"""
Custom exceptions for LLM Answer Collector.

This module provides a hierarchy of exceptions that enable type-safe error
handling throughout the orchestrator. All exceptions inherit from the base
AnswerCollectorError for consistent catching.

Exception Hierarchy:
    AnswerCollectorError (base)
    ├── ConfigurationError
    │   ├── ConfigFileNotFoundError
    │   ├── ConfigValidationError
    │   └── APIKeyMissingError
    ├── DatabaseError
    │   ├── DatabaseInitError
    │   ├── DatabaseMigrationError
    │   └── DatabaseQueryError
    ├── ProviderError
    │   ├── ProviderTimeoutError
    │   ├── ProviderRateLimitedError
    │   ├── ProviderHardError
    │   ├── ProviderTransientError
    │   ├── ProviderResponseError
    │   └── KeyPoolExhaustedError
    ├── AsyncJobError
    │   ├── AsyncJobFailedError
    │   └── AsyncJobAbandonedError
    ├── ExecutionStateError
    │   ├── IllegalTransitionError
    │   ├── PersistenceInconsistencyError
    │   └── ExecutionNotFoundError
    ├── FallbackExhaustedError
    ├── OrchestratorClosedError
    └── AnalysisError
        ├── ResultNotFoundError
        └── AnalysisBackendError

Usage:
    from llm_answer_collector.exceptions import ProviderRateLimitedError

    try:
        response = await client.submit(prompt, api_key)
    except ProviderRateLimitedError as e:
        pool.report_rate_limited(operation, api_key, retry_after=e.retry_after)
        raise
"""


class AnswerCollectorError(Exception):
    """
    Base exception for all LLM Answer Collector errors.

    All custom exceptions in this application should inherit from this class.
    This enables catching all application-specific errors with a single except clause.
    """

    pass


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(AnswerCollectorError):
    """
    Base class for configuration-related errors.

    Raised when configuration loading, parsing, or validation fails.
    Should be caught and result in exit code 1 (configuration error).
    """

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """
    Configuration file does not exist at the specified path.

    Example:
        raise ConfigFileNotFoundError("/path/to/collector.config.yaml")
    """

    pass


class ConfigValidationError(ConfigurationError):
    """
    Configuration file is invalid (schema validation failed).

    Should include details about which field(s) failed validation.

    Example:
        raise ConfigValidationError("collectors.0.providers: must not be empty")
    """

    pass


class APIKeyMissingError(ConfigurationError):
    """
    Required API key environment variable is not set.

    Example:
        raise APIKeyMissingError("BRIGHTDATA_API_KEY_1 environment variable not set")
    """

    pass


# ============================================================================
# Database Errors
# ============================================================================


class DatabaseError(AnswerCollectorError):
    """
    Base class for database-related errors.

    Should be caught and result in exit code 2 (database error).
    """

    pass


class DatabaseInitError(DatabaseError):
    """
    Database initialization failed.

    Raised when SQLite database cannot be created or opened.
    """

    pass


class DatabaseMigrationError(DatabaseError):
    """
    Database schema migration failed.

    Example:
        raise DatabaseMigrationError("Failed to migrate from v1 to v2")
    """

    pass


class DatabaseQueryError(DatabaseError):
    """
    Database query execution failed.

    Example:
        raise DatabaseQueryError("Failed to insert result: constraint violation")
    """

    pass


# ============================================================================
# Provider Errors
# ============================================================================


class ProviderError(AnswerCollectorError):
    """
    Base class for provider backend errors.

    Provider errors are recovered inside the fallback chain (local retry, then
    fallback) and never propagate past it unless every provider is exhausted.

    Attributes:
        provider: Name of the provider that raised the error
        status_code: HTTP status code, if the error came from a response
        retryable: Whether a local retry against the same provider may succeed
    """

    retryable = False

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """
    A single provider attempt exceeded its deadline.

    Retried locally (reusing the same timeout), then escalated to fallback.

    Example:
        raise ProviderTimeoutError("brightdata_chatgpt timed out after 10.0s")
    """

    retryable = True


class ProviderRateLimitedError(ProviderError):
    """
    Provider rejected the call because of rate limiting (HTTP 429).

    The key used for the call is marked rate_limited; the retry acquires a
    different key from the pool.

    Attributes:
        retry_after: Seconds suggested by the provider's Retry-After header
    """

    retryable = True

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after = retry_after


class ProviderHardError(ProviderError):
    """
    Provider returned a non-retryable response.

    No local retry happens; the chain escalates to fallback immediately.

    Attributes:
        credential_failure: True when the response rejected the API key itself
            (401/403), which marks the key as error in the pool

    Example:
        raise ProviderHardError("Invalid API key", provider="serpapi",
                                status_code=401, credential_failure=True)
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        credential_failure: bool = False,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.credential_failure = credential_failure


class ProviderTransientError(ProviderError):
    """
    Provider failed with a server-side or connection error (5xx, reset).

    Retried locally like a timeout.
    """

    retryable = True


class ProviderResponseError(ProviderError):
    """
    Provider returned a malformed or unexpected payload.

    Example:
        raise ProviderResponseError("Response missing 'text' field")
    """

    pass


class KeyPoolExhaustedError(ProviderError):
    """
    No usable key exists for an operation and no fallback key is configured.

    Treated like any other provider failure by the fallback chain.
    """

    pass


# ============================================================================
# Async Job Errors
# ============================================================================


class AsyncJobError(AnswerCollectorError):
    """Base class for deferred provider job errors raised by the poller."""

    def __init__(self, message: str, provider: str | None = None, job_id: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.job_id = job_id


class AsyncJobFailedError(AsyncJobError):
    """
    A deferred job reported failure at poll time.

    Example:
        raise AsyncJobFailedError("Snapshot failed: upstream blocked", job_id="s_123")
    """

    pass


class AsyncJobAbandonedError(AsyncJobError):
    """
    The poller exceeded its maximum total wait with no terminal job state.
    """

    pass


# ============================================================================
# Execution State Errors
# ============================================================================


class ExecutionStateError(AnswerCollectorError):
    """Base class for execution lifecycle errors."""

    pass


class IllegalTransitionError(ExecutionStateError):
    """
    A normal (non-corrective) writer requested a transition outside
    pending→running→{completed|failed}.

    Example:
        raise IllegalTransitionError("pending -> completed is not a legal transition")
    """

    pass


class PersistenceInconsistencyError(ExecutionStateError):
    """
    A Result was written but the status write failed, or vice versa.

    Only ever raised and handled internally; the verifier resolves it and it
    is never surfaced to callers.
    """

    def __init__(self, message: str, execution_id: str | None = None):
        super().__init__(message)
        self.execution_id = execution_id


class ExecutionNotFoundError(ExecutionStateError):
    """
    No Execution exists with the requested id.

    Example:
        raise ExecutionNotFoundError("Execution 'a1b2' not found")
    """

    pass


# ============================================================================
# Orchestration Errors
# ============================================================================


class FallbackExhaustedError(AnswerCollectorError):
    """
    Every provider of a collector's fallback chain failed.

    Attributes:
        collector_type: Collector whose chain was exhausted
        attempted: Provider names in the order they were attempted
    """

    def __init__(self, message: str, collector_type: str, attempted: list[str]):
        super().__init__(message)
        self.collector_type = collector_type
        self.attempted = attempted


class OrchestratorClosedError(AnswerCollectorError):
    """
    A batch was submitted after orchestrator shutdown began.
    """

    pass


# ============================================================================
# Analysis Errors
# ============================================================================


class AnalysisError(AnswerCollectorError):
    """
    Base class for consolidated-analysis cache errors.

    Failed computations are never cached; the next caller recomputes.
    """

    pass


class ResultNotFoundError(AnalysisError):
    """
    Analysis was requested for a Result id that does not exist.

    Example:
        raise ResultNotFoundError("Result not found: 7f3c...")
    """

    pass


class AnalysisBackendError(AnalysisError):
    """
    The consolidated analysis backend failed or returned an unusable payload.
    """

    pass
