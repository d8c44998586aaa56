from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock


@dataclass
class EndpointStats:
    request_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


@dataclass
class SearchStats:
    accepted: int = 0
    exhausted: int = 0
    failed: int = 0
    provider_attempts: int = 0
    provider_failures: int = 0
    attempt_histogram: dict[int, int] = field(default_factory=dict)


class ConvergenceMetrics:
    """In-process diagnostics: how searches end and how many provider calls they take."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._endpoints: dict[str, EndpointStats] = {}
        self._search = SearchStats()

    def record_request(self, endpoint: str, *, duration_ms: float, error: bool = False) -> None:
        name = endpoint.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._endpoints.setdefault(name, EndpointStats())
            stats.request_count += 1
            if error:
                stats.error_count += 1
            stats.total_duration_ms += d_ms
            if d_ms > stats.max_duration_ms:
                stats.max_duration_ms = d_ms

    def record_search(self, status: str, *, attempts: int, failures: int = 0) -> None:
        attempts_i = max(0, int(attempts))
        with self._lock:
            s = self._search
            if status == "accepted":
                s.accepted += 1
            elif status == "exhausted":
                s.exhausted += 1
            else:
                s.failed += 1
            s.provider_attempts += attempts_i
            s.provider_failures += max(0, int(failures))
            s.attempt_histogram[attempts_i] = s.attempt_histogram.get(attempts_i, 0) + 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            for name in sorted(self._endpoints):
                stats = self._endpoints[name]
                avg_duration_ms = (
                    stats.total_duration_ms / stats.request_count if stats.request_count else 0.0
                )
                endpoints[name] = {
                    "request_count": stats.request_count,
                    "error_count": stats.error_count,
                    "avg_duration_ms": round(avg_duration_ms, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                }

            s = self._search
            searches = s.accepted + s.exhausted + s.failed
            return {
                "created_at": self._created_at,
                "searches": {
                    "total": searches,
                    "accepted": s.accepted,
                    "exhausted": s.exhausted,
                    "failed": s.failed,
                    "acceptance_rate": round(s.accepted / searches, 4) if searches else 0.0,
                    "provider_attempts": s.provider_attempts,
                    "provider_failures": s.provider_failures,
                    "avg_attempts": round(s.provider_attempts / searches, 3) if searches else 0.0,
                    "attempt_histogram": {str(k): v for k, v in sorted(s.attempt_histogram.items())},
                },
                "endpoints": endpoints,
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._endpoints.clear()
            self._search = SearchStats()


METRICS = ConvergenceMetrics()


def record_request(endpoint: str, *, duration_ms: float, error: bool = False) -> None:
    METRICS.record_request(endpoint, duration_ms=duration_ms, error=error)


def record_search(status: str, *, attempts: int, failures: int = 0) -> None:
    METRICS.record_search(status, attempts=attempts, failures=failures)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
