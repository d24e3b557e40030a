from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock


@dataclass
class BackoffDecision:
    delay_seconds: float
    consecutive_failures: int
    # True while the delay window since the last failure has not elapsed
    cooling_down: bool = False


class TenantBackoffService(ABC):
    @abstractmethod
    def before_request(self, *, tenant_id: int, integration: str) -> BackoffDecision:
        """Return the delay that applies before the next external call."""

    @abstractmethod
    def register_success(self, *, tenant_id: int, integration: str) -> None:
        """Reset the consecutive failure counter."""

    @abstractmethod
    def register_failure(self, *, tenant_id: int, integration: str) -> int:
        """Increment consecutive failures and return the current total."""


class InMemoryTenantBackoffService(TenantBackoffService):
    """Exponential backoff per (tenant, integration) after `threshold` failures in a row.

    Model calls sit inside a customer turn, so callers skip the integration while
    `cooling_down` instead of sleeping.
    """

    def __init__(self, *, threshold: int = 3, max_backoff_seconds: float = 30.0, clock=time.monotonic) -> None:
        self.threshold = threshold
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._failures: dict[tuple[int, str], int] = {}
        self._last_failure_at: dict[tuple[int, str], float] = {}
        self._lock = Lock()

    def before_request(self, *, tenant_id: int, integration: str) -> BackoffDecision:
        key = (tenant_id, integration)
        with self._lock:
            failures = self._failures.get(key, 0)
            if failures < self.threshold:
                return BackoffDecision(delay_seconds=0.0, consecutive_failures=failures)

            power = failures - self.threshold
            delay = float(min((2 ** power), self.max_backoff_seconds))
            elapsed = self._clock() - self._last_failure_at.get(key, 0.0)
            return BackoffDecision(
                delay_seconds=delay,
                consecutive_failures=failures,
                cooling_down=elapsed < delay,
            )

    def register_success(self, *, tenant_id: int, integration: str) -> None:
        key = (tenant_id, integration)
        with self._lock:
            self._failures.pop(key, None)
            self._last_failure_at.pop(key, None)

    def register_failure(self, *, tenant_id: int, integration: str) -> int:
        key = (tenant_id, integration)
        with self._lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            self._last_failure_at[key] = self._clock()
            return failures
