from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


@dataclass
class EndpointMetric:
    total_requests: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0


@dataclass
class TurnMetric:
    total_turns: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0
    extraction_fallbacks: int = 0
    states: dict[str, int] = field(default_factory=dict)


class InMemoryRequestMetrics:
    def __init__(self) -> None:
        self._metrics: dict[tuple[str, str], EndpointMetric] = {}
        self._lock = Lock()

    def observe(self, endpoint: str, method: str, status_code: int, duration_ms: float) -> None:
        key = (endpoint, method)
        with self._lock:
            metric = self._metrics.setdefault(key, EndpointMetric())
            metric.total_requests += 1
            metric.total_duration_ms += duration_ms
            if status_code >= 400:
                metric.error_count += 1

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            result: dict[str, dict[str, float | int]] = {}
            for (endpoint, method), metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_requests if metric.total_requests else 0.0
                result[f"{method} {endpoint}"] = {
                    "total_requests": metric.total_requests,
                    "total_duration_ms": round(metric.total_duration_ms, 2),
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                }
            return result


class InMemoryTurnMetrics:
    """Per-tenant counters for conversation turns."""

    def __init__(self) -> None:
        self._metrics: dict[str, TurnMetric] = {}
        self._lock = Lock()

    def observe(
        self,
        tenant_id: int | str,
        state: str,
        duration_ms: float,
        *,
        error: bool = False,
        fallback: bool = False,
    ) -> None:
        with self._lock:
            metric = self._metrics.setdefault(str(tenant_id), TurnMetric())
            metric.total_turns += 1
            metric.total_duration_ms += duration_ms
            metric.states[state] = metric.states.get(state, 0) + 1
            if error:
                metric.error_count += 1
            if fallback:
                metric.extraction_fallbacks += 1

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            result: dict[str, dict] = {}
            for tenant_id, metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_turns if metric.total_turns else 0.0
                result[tenant_id] = {
                    "total_turns": metric.total_turns,
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                    "extraction_fallbacks": metric.extraction_fallbacks,
                    "states": dict(metric.states),
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


request_metrics = InMemoryRequestMetrics()
turn_metrics = InMemoryTurnMetrics()
