"""Timeout, circuit breaker and health tracking for the external commit.

A commit moves money and may have been applied even when its response is
lost, so the guard makes exactly one attempt per call. Trying an action again
means enqueuing it again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class CircuitOpenError(RuntimeError):
    """Raised instead of committing while the breaker is open."""


@dataclass(frozen=True)
class CommitPolicy:
    timeout_s: float = 10.0
    failure_threshold: int = 3
    cooldown_s: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError("Commit 'timeout_s' must be positive.")
        if self.failure_threshold < 1:
            raise ValueError("Commit 'failure_threshold' must be at least 1.")
        if self.cooldown_s < 0:
            raise ValueError("Commit 'cooldown_s' must not be negative.")

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "CommitPolicy":
        if not payload:
            return cls()
        if payload.get("max_retries"):
            raise ValueError(
                "Commits are never retried automatically; remove 'max_retries' and re-enqueue failed actions."
            )
        try:
            return cls(
                timeout_s=float(payload.get("timeout_s", cls.timeout_s)),
                failure_threshold=int(payload.get("failure_threshold", cls.failure_threshold)),
                cooldown_s=float(payload.get("cooldown_s", cls.cooldown_s)),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid commit policy: {exc}") from exc


class CommitGuard:
    """Runs each commit once under a timeout and trips after repeated failures.

    ``failure_threshold`` consecutive failures open the breaker for
    ``cooldown_s`` seconds; while open, calls are refused without reaching the
    committer. The first call after the cooldown goes through and a single
    success closes the breaker again.
    """

    def __init__(
        self, policy: Optional[CommitPolicy] = None, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.policy = policy or CommitPolicy()
        self._clock = clock
        self._consecutive_failures = 0
        self._open_until: Optional[float] = None
        self._last_error: Optional[str] = None
        self._last_success: Optional[datetime] = None
        self._counts = {"committed": 0, "failed": 0, "refused": 0}

    @property
    def is_open(self) -> bool:
        if self._open_until is None:
            return False
        if self._clock() < self._open_until:
            return True
        self._open_until = None
        self._consecutive_failures = 0
        logger.info("Commit circuit cooled down; allowing the next commit")
        return False

    async def call(self, commit: Callable[[], Awaitable[Any]]) -> Any:
        if self.is_open:
            self._counts["refused"] += 1
            logger.warning("Commit circuit open; refusing commit")
            raise CircuitOpenError("Commit circuit is open")
        try:
            result = await asyncio.wait_for(commit(), timeout=self.policy.timeout_s)
        except Exception as exc:
            self._record_failure(exc)
            raise
        self._consecutive_failures = 0
        self._last_error = None
        self._last_success = datetime.now(timezone.utc)
        self._counts["committed"] += 1
        return result

    def _record_failure(self, exc: BaseException) -> None:
        self._consecutive_failures += 1
        self._last_error = type(exc).__name__
        self._counts["failed"] += 1
        if self._consecutive_failures >= self.policy.failure_threshold and self._open_until is None:
            self._open_until = self._clock() + self.policy.cooldown_s
            logger.error(
                "Commit circuit opened",
                extra={"failures": self._consecutive_failures, "cooldown_s": self.policy.cooldown_s},
            )

    def health(self) -> Dict[str, Any]:
        if self.is_open:
            status = "open"
        elif self._consecutive_failures:
            status = "degraded"
        elif self._counts["committed"]:
            status = "healthy"
        else:
            status = "idle"
        return {
            "status": status,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "last_success": self._last_success.isoformat() if self._last_success else None,
            **self._counts,
        }


__all__ = ["CircuitOpenError", "CommitGuard", "CommitPolicy"]
