"""
Resilience pipeline — timeout, retry and circuit breaker around provider calls.

Provides:
- CircuitState / CircuitBreaker: ratio-based breaker over a rolling
  sampling window, driven by a monotonic clock, with a single half-open trial call
- DeliveryOutcome: what the pipeline reports back (never an exception)
- ResiliencePipeline: Timeout → Retry → CircuitBreaker composition

Policy order (outermost first):
    Timeout   bounds the whole call including retries and backoff
    Retry     bounded attempts, exponential backoff with jitter, transient errors only
    Breaker   gates every single attempt; while open, attempts fail fast
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt,
    wait_exponential, wait_random,
)

from channels.base import ChannelError, CircuitOpenError, SendResult
from channels.metrics import ResilienceMetrics
from config.settings import ResilienceConfig

logger = structlog.get_logger()

REASON_BROKEN_CIRCUIT = "BrokenCircuit"
REASON_TIMEOUT = "Timeout"
REASON_RETURNED_FALSE = "OperationReturnedFalse"


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Failure-ratio circuit breaker.

    closed → open       failures/total ≥ ratio over the sampling window and
                        total ≥ minimum_throughput
    open → half_open    first call after break_duration (that call is the trial)
    half_open → closed  trial succeeded
    half_open → open    trial failed; break timer restarts

    State is shared by every caller of one dependency, so all transitions
    happen under a lock.
    """

    def __init__(
        self,
        name: str = "whatsapp",
        failure_ratio: float = 0.5,
        minimum_throughput: int = 10,
        sampling_duration: float = 60.0,
        break_duration: float = 30.0,
        metrics: Optional[ResilienceMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_ratio = failure_ratio
        self.minimum_throughput = minimum_throughput
        self.sampling_duration = sampling_duration
        self.break_duration = break_duration
        self._metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque(maxlen=10_000)
        self._opened_at: float = 0.0
        self._trial_in_flight = False

    @classmethod
    def from_config(cls, config: ResilienceConfig, metrics: Optional[ResilienceMetrics] = None,
                    clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
        return cls(
            failure_ratio=config.failure_rate_threshold / 100.0,
            minimum_throughput=config.minimum_throughput,
            sampling_duration=config.sampling_duration_seconds,
            break_duration=config.break_duration_seconds,
            metrics=metrics,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    # ── Gate ──────────────────────────────────────────────────

    def acquire(self) -> None:
        """Admit one attempt or raise CircuitOpenError without side effects."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.break_duration:
                    raise CircuitOpenError(self.name)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                if self._metrics:
                    self._metrics.record_circuit_half_opened()
                logger.warning("circuit_half_opened", dependency=self.name)
                return
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def release_trial(self) -> None:
        """An admitted trial call was cancelled before it produced an outcome."""
        with self._lock:
            self._trial_in_flight = False

    # ── Outcomes ──────────────────────────────────────────────

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._close()
                return
            self._add_outcome(True)

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._open(reason="trial_failed")
                return
            if self._state == CircuitState.OPEN:
                return
            self._add_outcome(False)
            total = len(self._outcomes)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            if total >= self.minimum_throughput and failures / total >= self.failure_ratio:
                self._open(reason="failure_ratio", failures=failures, total=total)

    def _add_outcome(self, ok: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, ok))
        cutoff = now - self.sampling_duration
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _open(self, **log_fields: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._outcomes.clear()
        if self._metrics:
            self._metrics.record_circuit_opened()
        logger.error("circuit_opened", dependency=self.name,
                     break_seconds=self.break_duration, **log_fields)

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self._outcomes.clear()
        if self._metrics:
            self._metrics.record_circuit_closed()
        logger.info("circuit_closed", dependency=self.name)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
            self._outcomes.clear()

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            failures = sum(1 for _, ok in self._outcomes if not ok)
            return {
                "state": self._state.value,
                "window_calls": len(self._outcomes),
                "window_failures": failures,
                "failure_ratio_threshold": self.failure_ratio,
                "minimum_throughput": self.minimum_throughput,
                "break_duration_s": self.break_duration,
            }


# ══════════════════════════════════════════════════════════════
#  PIPELINE
# ══════════════════════════════════════════════════════════════

@dataclass
class DeliveryOutcome:
    ok: bool
    provider_message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ChannelError) and exc.retryable


class ResiliencePipeline:
    """
    Runs an outbound operation under timeout, retry and circuit breaker and
    reports a DeliveryOutcome. Delivery errors stop here: callers only ever
    see ok=False with a reason.
    """

    def __init__(
        self,
        config: Optional[ResilienceConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[ResilienceMetrics] = None,
    ):
        self.config = config or ResilienceConfig()
        self.metrics = metrics or ResilienceMetrics()
        self.breaker = breaker or CircuitBreaker.from_config(self.config, metrics=self.metrics)

    def _retrying(self) -> AsyncRetrying:
        base = self.config.retry_base_delay_seconds
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=(wait_exponential(multiplier=base, max=self.config.retry_max_delay_seconds)
                  + wait_random(0, base)),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._before_sleep,
            reraise=True,
        )

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.metrics.record_retry(retry_state.attempt_number)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "outbound_retry",
            attempt=retry_state.attempt_number,
            max_retries=self.config.max_retries,
            delay_s=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
            error=str(exc) if exc else "",
        )

    async def _guarded(self, operation: Callable[[], Awaitable[SendResult]]) -> SendResult:
        self.breaker.acquire()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self.breaker.release_trial()
            raise
        except Exception:
            self.breaker.record_failure()
            raise
        if result.ok:
            self.breaker.record_success()
        else:
            self.breaker.record_failure()
        return result

    async def _with_retry(self, operation: Callable[[], Awaitable[SendResult]],
                          attempts: list[int]) -> SendResult:
        result = SendResult(ok=False)
        async for attempt in self._retrying():
            with attempt:
                attempts[0] = attempt.retry_state.attempt_number
                result = await self._guarded(operation)
        return result

    async def execute(self, operation: Callable[[], Awaitable[SendResult]],
                      operation_name: str = "") -> DeliveryOutcome:
        start = time.monotonic()
        attempts = [0]

        def elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000

        try:
            result = await asyncio.wait_for(
                self._with_retry(operation, attempts),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.metrics.record_timeout()
            self.metrics.record_failure(elapsed_ms(), REASON_TIMEOUT)
            logger.warning("outbound_timeout", operation=operation_name,
                           timeout_s=self.config.timeout_seconds)
            return DeliveryOutcome(False, failure_reason=REASON_TIMEOUT, attempts=attempts[0])
        except CircuitOpenError:
            self.metrics.record_failure(elapsed_ms(), REASON_BROKEN_CIRCUIT)
            logger.warning("outbound_rejected_circuit_open", operation=operation_name)
            return DeliveryOutcome(False, failure_reason=REASON_BROKEN_CIRCUIT, attempts=attempts[0])
        except Exception as e:
            error_type = type(e).__name__
            self.metrics.record_failure(elapsed_ms(), error_type)
            logger.error("outbound_failed", operation=operation_name, error_type=error_type,
                         error=str(e), attempts=attempts[0])
            return DeliveryOutcome(False, failure_reason=f"{error_type}: {e}", attempts=attempts[0])

        if not result.ok:
            self.metrics.record_failure(elapsed_ms(), REASON_RETURNED_FALSE)
            return DeliveryOutcome(False, failure_reason=result.error or REASON_RETURNED_FALSE,
                                   attempts=attempts[0])

        self.metrics.record_success(elapsed_ms())
        return DeliveryOutcome(True, provider_message_id=result.provider_message_id,
                               attempts=attempts[0])
