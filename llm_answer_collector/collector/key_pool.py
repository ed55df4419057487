"""
API key pool manager.

Each provider operation (e.g. "brightdata", "serpapi") owns a pool of 1..N
interchangeable keys plus an optional designated fallback key. Health is
tracked per (operation, key):

    healthy --rate limit--> rate_limited --cooldown elapsed--> healthy
    healthy --credential failure, or error_threshold consecutive errors--> error
    error --reset()--> healthy

Unhealthy keys are skipped by every selection strategy. When no primary key
is usable the fallback key is returned instead of blocking the caller.

Pools are owned objects built from the RuntimeConfig and injected into the
fallback chain. Every method is synchronous and never awaits, so each call
runs to completion inside the event loop; counters are plain per-key fields
and no lock is held across provider calls.
"""

import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from llm_answer_collector.config.constants import (
    DEFAULT_KEY_ERROR_THRESHOLD,
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
)
from llm_answer_collector.config.schema import KeySelectionStrategy, RuntimeConfig
from llm_answer_collector.exceptions import KeyPoolExhaustedError
from llm_answer_collector.utils.logging import mask_secret, register_secret

logger = logging.getLogger(__name__)

KeyStatus = Literal["healthy", "rate_limited", "error"]

KEY_HEALTHY = "healthy"
KEY_RATE_LIMITED = "rate_limited"
KEY_ERROR = "error"


@dataclass
class ApiKeyState:
    """
    Health record of one key within one operation.

    Timestamps (cooldown_until, last_used_at) come from the pool's monotonic
    clock, not wall time.
    """

    key: str
    operation: str
    is_fallback: bool = False
    status: KeyStatus = KEY_HEALTHY
    cooldown_until: float | None = None
    success_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    last_used_at: float = 0.0

    def refresh(self, now: float) -> None:
        """Revert a rate-limited key to healthy once its cooldown has elapsed."""
        if (
            self.status == KEY_RATE_LIMITED
            and self.cooldown_until is not None
            and now >= self.cooldown_until
        ):
            self.status = KEY_HEALTHY
            self.cooldown_until = None
            logger.info(
                f"Key {mask_secret(self.key)} for '{self.operation}' cooled down, healthy again"
            )

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.error_count
        if total == 0:
            return 1.0
        return self.success_count / total

    def snapshot(self, now: float) -> dict[str, Any]:
        cooldown_remaining = None
        if self.cooldown_until is not None:
            cooldown_remaining = max(0.0, self.cooldown_until - now)
        return {
            "key": mask_secret(self.key),
            "is_fallback": self.is_fallback,
            "status": self.status,
            "cooldown_remaining_seconds": cooldown_remaining,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
        }


@dataclass(frozen=True)
class KeyLease:
    """A key handed to one provider attempt."""

    operation: str
    key: str
    is_fallback: bool = False

    def __repr__(self) -> str:
        return (
            f"KeyLease(operation={self.operation!r}, key={mask_secret(self.key)!r}, "
            f"is_fallback={self.is_fallback})"
        )


@dataclass
class ApiKeyPool:
    """
    Keys for one operation with health tracking and a selection strategy.

    Attributes:
        operation: Operation name (matches ProviderConfig.service)
        keys: Interchangeable primary keys
        fallback_key: Designated key used when every primary key is unhealthy
        strategy: round_robin (default), lru or health_weighted
        cooldown_seconds: Default rate-limit cooldown
        error_threshold: Consecutive errors before a key is marked error
        clock: Monotonic time source in seconds
    """

    operation: str
    keys: list[str]
    fallback_key: str | None = None
    strategy: KeySelectionStrategy = "round_robin"
    cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS
    error_threshold: int = DEFAULT_KEY_ERROR_THRESHOLD
    clock: Callable[[], float] = time.monotonic
    _states: dict[str, ApiKeyState] = field(init=False, repr=False)
    _fallback_state: ApiKeyState | None = field(init=False, repr=False)
    _cursor: itertools.count = field(init=False, repr=False)

    def __post_init__(self):
        if not self.keys:
            raise ValueError(f"Key pool '{self.operation}' needs at least one key")

        # dict.fromkeys drops duplicate keys while keeping order
        self._states = {
            key: ApiKeyState(key=key, operation=self.operation)
            for key in dict.fromkeys(self.keys)
        }
        self._fallback_state = None
        if self.fallback_key:
            self._fallback_state = ApiKeyState(
                key=self.fallback_key, operation=self.operation, is_fallback=True
            )
        self._cursor = itertools.count()

        for key in self._states:
            register_secret(key)
        if self.fallback_key:
            register_secret(self.fallback_key)

    def _state_for(self, key: str) -> ApiKeyState | None:
        state = self._states.get(key)
        if state is None and self._fallback_state and self._fallback_state.key == key:
            state = self._fallback_state
        return state

    def available_keys(self) -> list[ApiKeyState]:
        """Return primary keys currently eligible for selection."""
        now = self.clock()
        for state in self._states.values():
            state.refresh(now)
        return [s for s in self._states.values() if s.status == KEY_HEALTHY]

    def acquire(self) -> KeyLease:
        """
        Select a key for one provider attempt.

        Returns:
            KeyLease with the selected key

        Raises:
            KeyPoolExhaustedError: If no primary key is usable and no fallback
                key is configured
        """
        candidates = self.available_keys()
        now = self.clock()

        if candidates:
            if self.strategy == "lru":
                state = min(candidates, key=lambda s: s.last_used_at)
            elif self.strategy == "health_weighted":
                state = max(candidates, key=lambda s: (s.success_rate, -s.last_used_at))
            else:
                state = candidates[next(self._cursor) % len(candidates)]
        elif self._fallback_state is not None:
            state = self._fallback_state
            state.refresh(now)
            logger.warning(
                f"All {len(self._states)} keys for '{self.operation}' are unhealthy, "
                f"using fallback key {mask_secret(state.key)}"
            )
        else:
            raise KeyPoolExhaustedError(
                f"No healthy key for '{self.operation}' and no fallback key configured"
            )

        state.last_used_at = now
        return KeyLease(operation=self.operation, key=state.key, is_fallback=state.is_fallback)

    def report_success(self, key: str) -> None:
        state = self._state_for(key)
        if state is None:
            return
        state.success_count += 1
        state.consecutive_errors = 0
        if state.is_fallback and state.status == KEY_RATE_LIMITED:
            state.status = KEY_HEALTHY
            state.cooldown_until = None

    def report_rate_limited(self, key: str, retry_after: float | None = None) -> None:
        """Mark a key rate_limited for retry_after seconds (default cooldown otherwise)."""
        state = self._state_for(key)
        if state is None:
            return
        cooldown = retry_after if retry_after is not None else self.cooldown_seconds
        state.error_count += 1
        if state.status != KEY_ERROR:
            state.status = KEY_RATE_LIMITED
            state.cooldown_until = self.clock() + cooldown
        logger.warning(
            f"Key {mask_secret(key)} for '{self.operation}' rate limited, "
            f"cooling down for {cooldown:.0f}s"
        )

    def report_error(self, key: str, credential_failure: bool = False) -> None:
        """
        Count a hard error against a key.

        A credential failure marks the key error immediately; other errors do
        so once error_threshold consecutive errors are reached.
        """
        state = self._state_for(key)
        if state is None:
            return
        state.error_count += 1
        state.consecutive_errors += 1

        if credential_failure or state.consecutive_errors >= self.error_threshold:
            if state.status != KEY_ERROR:
                logger.warning(
                    f"Key {mask_secret(key)} for '{self.operation}' marked error after "
                    f"{state.consecutive_errors} consecutive errors"
                    + (" (credential rejected)" if credential_failure else "")
                )
            state.status = KEY_ERROR
            state.cooldown_until = None

    def reset(self, key: str | None = None) -> None:
        """Restore one key (or every key, fallback included) to healthy."""
        states = list(self._states.values())
        if self._fallback_state is not None:
            states.append(self._fallback_state)
        if key is not None:
            states = [s for s in states if s.key == key]

        for state in states:
            state.status = KEY_HEALTHY
            state.cooldown_until = None
            state.consecutive_errors = 0

    def health_snapshot(self) -> dict[str, Any]:
        now = self.clock()
        for state in self._states.values():
            state.refresh(now)
        snapshot = {
            "operation": self.operation,
            "strategy": self.strategy,
            "healthy": sum(1 for s in self._states.values() if s.status == KEY_HEALTHY),
            "keys": [s.snapshot(now) for s in self._states.values()],
            "fallback": None,
        }
        if self._fallback_state is not None:
            self._fallback_state.refresh(now)
            snapshot["fallback"] = self._fallback_state.snapshot(now)
        return snapshot


class KeyPoolManager:
    """
    Key pools for every operation.

    Example:
        >>> manager = KeyPoolManager([ApiKeyPool("serpapi", ["k1-abcdefgh"])])
        >>> lease = manager.acquire("serpapi")
        >>> manager.report_success("serpapi", lease.key)
    """

    def __init__(self, pools: list[ApiKeyPool]):
        self._pools = {pool.operation: pool for pool in pools}

    @classmethod
    def from_runtime_config(
        cls, config: RuntimeConfig, clock: Callable[[], float] = time.monotonic
    ) -> "KeyPoolManager":
        return cls(
            [
                ApiKeyPool(
                    operation=pool.operation,
                    keys=pool.keys,
                    fallback_key=pool.fallback_key,
                    strategy=pool.strategy,
                    cooldown_seconds=pool.rate_limit_cooldown_seconds,
                    error_threshold=pool.error_threshold,
                    clock=clock,
                )
                for pool in config.key_pools
            ]
        )

    def pool(self, operation: str) -> ApiKeyPool:
        """
        Raises:
            KeyPoolExhaustedError: If no pool exists for the operation
        """
        pool = self._pools.get(operation)
        if pool is None:
            raise KeyPoolExhaustedError(f"No key pool configured for '{operation}'")
        return pool

    def acquire(self, operation: str) -> KeyLease:
        return self.pool(operation).acquire()

    def report_success(self, operation: str, key: str) -> None:
        self.pool(operation).report_success(key)

    def report_rate_limited(
        self, operation: str, key: str, retry_after: float | None = None
    ) -> None:
        self.pool(operation).report_rate_limited(key, retry_after=retry_after)

    def report_error(self, operation: str, key: str, credential_failure: bool = False) -> None:
        self.pool(operation).report_error(key, credential_failure=credential_failure)

    def reset(self, operation: str, key: str | None = None) -> None:
        self.pool(operation).reset(key)

    def health_snapshot(self) -> list[dict[str, Any]]:
        return [pool.health_snapshot() for pool in self._pools.values()]
