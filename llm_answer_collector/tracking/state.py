"""
Execution lifecycle states and structured errors.

States: pending (initial), running, completed and failed (terminal).
Normal writers (dispatcher, poller) may only take the legal steps
pending→running→{completed|failed}. Any other step is a corrective
force-transition and is only ever performed by the verifier.

A Result whose text is empty, or whose metadata carries an "error" entry, is
a failure marker: it never counts as a successful answer. The owning
Execution is failed (error copied from the marker) and keeps no result_id.
"""

from dataclasses import asdict, dataclass
from typing import Any, Literal

from llm_answer_collector.exceptions import IllegalTransitionError

ExecutionStatus = Literal["pending", "running", "completed", "failed"]

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = frozenset([COMPLETED, FAILED])

LEGAL_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset([RUNNING]),
    RUNNING: frozenset([COMPLETED, FAILED]),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_legal_transition(from_status: str, to_status: str) -> bool:
    return to_status in LEGAL_TRANSITIONS.get(from_status, frozenset())


def check_transition(from_status: str, to_status: str) -> None:
    """
    Validate a normal (non-corrective) transition.

    Raises:
        IllegalTransitionError: If from_status → to_status is not legal
    """
    if not is_legal_transition(from_status, to_status):
        raise IllegalTransitionError(
            f"{from_status} -> {to_status} is not a legal transition"
        )


@dataclass(frozen=True)
class StructuredError:
    """
    Error stored on a failed Execution.

    Attributes:
        provider: Provider that produced the error (None for orchestration-side
            failures such as the stale sweep)
        error_class: Exception class name or synthetic category
        message: Technical detail
        reason: Human-readable reason shown to operators
    """

    provider: str | None
    error_class: str
    message: str
    reason: str

    @classmethod
    def from_exception(
        cls, exc: BaseException, provider: str | None = None, reason: str | None = None
    ) -> "StructuredError":
        provider = provider or getattr(exc, "provider", None)
        message = str(exc) or exc.__class__.__name__
        return cls(
            provider=provider,
            error_class=exc.__class__.__name__,
            message=message,
            reason=reason or message,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StructuredError":
        message = str(data.get("message") or data.get("error") or "unknown error")
        return cls(
            provider=data.get("provider"),
            error_class=str(data.get("error_class") or "ProviderError"),
            message=message,
            reason=str(data.get("reason") or message),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def failure_marker(text: str | None, metadata: dict[str, Any] | None) -> StructuredError | None:
    """
    Return the captured failure a Result encodes, or None for a real answer.

    Examples:
        >>> failure_marker("Answer text", {}) is None
        True
        >>> failure_marker("", {}).error_class
        'EmptyResult'
        >>> failure_marker("x", {"error": {"message": "blocked"}}).message
        'blocked'
    """
    metadata = metadata or {}
    error = metadata.get("error")

    if error:
        if isinstance(error, dict):
            marker = StructuredError.from_dict(
                {"provider": metadata.get("provider"), **error}
            )
        else:
            marker = StructuredError(
                provider=metadata.get("provider"),
                error_class="ProviderError",
                message=str(error),
                reason=str(error),
            )
        return marker

    if not text or not text.strip():
        return StructuredError(
            provider=metadata.get("provider"),
            error_class="EmptyResult",
            message="Result contains no answer text",
            reason="provider returned an empty answer",
        )

    return None
