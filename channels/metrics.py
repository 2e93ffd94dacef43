"""
Resilience metrics for outbound delivery.

Tracks lifetime counters plus a trailing window of recent requests used
for latency percentiles and the top error types. The window is bounded
both in time (5 minutes) and in size (1000 samples).
"""
from __future__ import annotations

import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

RECENT_WINDOW_SECONDS = 300.0
MAX_RECENT_SAMPLES = 1000
TOP_ERRORS = 5


@dataclass
class RequestSample:
    at: float
    latency_ms: float
    ok: bool
    error_type: Optional[str] = None


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile: index ceil(p/100 * n) - 1, clamped to the list."""
    if not sorted_values:
        return 0.0
    idx = math.ceil(p / 100.0 * len(sorted_values)) - 1
    idx = max(0, min(idx, len(sorted_values) - 1))
    return sorted_values[idx]


class ResilienceMetrics:
    """Thread-safe counters for one downstream dependency."""

    def __init__(self, service: str = "whatsapp", clock: Callable[[], float] = time.monotonic):
        self.service = service
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.total_requests = 0
            self.successful_requests = 0
            self.failed_requests = 0
            self.circuit_opened = 0
            self.circuit_half_opened = 0
            self.circuit_closed = 0
            self.timeouts = 0
            self.retries = 0
            self._recent: deque[RequestSample] = deque(maxlen=MAX_RECENT_SAMPLES)

    # ── Recording ─────────────────────────────────────────────

    def record_success(self, latency_ms: float) -> None:
        with self._lock:
            self.total_requests += 1
            self.successful_requests += 1
            self._recent.append(RequestSample(self._clock(), latency_ms, True))

    def record_failure(self, latency_ms: float, error_type: str) -> None:
        with self._lock:
            self.total_requests += 1
            self.failed_requests += 1
            self._recent.append(RequestSample(self._clock(), latency_ms, False, error_type))

    def record_timeout(self) -> None:
        with self._lock:
            self.timeouts += 1

    def record_retry(self, attempt: int = 0) -> None:
        with self._lock:
            self.retries += 1

    def record_circuit_opened(self) -> None:
        with self._lock:
            self.circuit_opened += 1

    def record_circuit_half_opened(self) -> None:
        with self._lock:
            self.circuit_half_opened += 1

    def record_circuit_closed(self) -> None:
        with self._lock:
            self.circuit_closed += 1

    # ── Queries ───────────────────────────────────────────────

    def _window(self) -> list[RequestSample]:
        cutoff = self._clock() - RECENT_WINDOW_SECONDS
        return [s for s in self._recent if s.at >= cutoff]

    @staticmethod
    def _rate(part: int, whole: int) -> float:
        return round(part / whole * 100.0, 2) if whole else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            recent = self._window()
            latencies = sorted(s.latency_ms for s in recent)
            recent_ok = sum(1 for s in recent if s.ok)
            errors = Counter(s.error_type for s in recent if not s.ok and s.error_type)

            return {
                "service": self.service,
                "total_requests": self.total_requests,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "success_rate": self._rate(self.successful_requests, self.total_requests),
                "error_rate": self._rate(self.failed_requests, self.total_requests),
                "latency_ms": {
                    "avg": round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
                    "p50": percentile(latencies, 50),
                    "p95": percentile(latencies, 95),
                    "p99": percentile(latencies, 99),
                    "min": latencies[0] if latencies else 0.0,
                    "max": latencies[-1] if latencies else 0.0,
                },
                "circuit": {
                    "opened": self.circuit_opened,
                    "half_opened": self.circuit_half_opened,
                    "closed": self.circuit_closed,
                },
                "timeouts": self.timeouts,
                "retries": self.retries,
                "recent": {
                    "window_minutes": int(RECENT_WINDOW_SECONDS // 60),
                    "requests": len(recent),
                    "success_rate": self._rate(recent_ok, len(recent)),
                    "error_rate": self._rate(len(recent) - recent_ok, len(recent)),
                },
                "top_errors": [
                    {"error": name, "count": count}
                    for name, count in errors.most_common(TOP_ERRORS)
                ],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
