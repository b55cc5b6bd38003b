"""Domain Guardrails - Skip-Rate Circuit Breaker.

A stage skips items for data-quality reasons (codes not valid on the event date,
missing references, ...). A handful of skips is normal; a stage where most items
are skipped usually means a broken vocabulary load or a wrong date window. The
CircuitBreaker watches the item outcomes of a stage and aborts it when the skip
rate in a sliding window exceeds a threshold.

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Works with the per-item Result objects produced by the mappers
    - Thread-safe; the chunk pipeline records results from the committing thread
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional

from fhir_to_omop.domain.ports import SKIP_DEFERRED, SKIP_FILTERED, EtlError, Result

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """Configuration for CircuitBreaker behavior.

    Attributes:
        failure_threshold_percent: Percentage of skipped items that opens the circuit (0-100)
        window_size: Number of items evaluated in the sliding window
        min_records_before_check: Minimum items processed before checking the threshold
        abort_on_open: If True, raise CircuitBreakerOpenError when the threshold is exceeded;
                      if False, only log and continue
        ignored_error_types: Skip reasons that are expected and never count as failures
    """
    failure_threshold_percent: float = 50.0
    window_size: int = 100
    min_records_before_check: int = 10
    abort_on_open: bool = True
    ignored_error_types: frozenset = field(default_factory=lambda: frozenset({SKIP_DEFERRED, SKIP_FILTERED}))


class CircuitBreakerOpenError(EtlError):
    """Raised when the CircuitBreaker opens due to excessive skips.

    Attributes:
        failure_rate: The calculated skip rate percentage
        threshold: The configured threshold that was exceeded
        records_processed: Number of items processed when the circuit opened
        failures: Number of skipped items when the circuit opened
    """

    def __init__(
        self,
        message: str,
        failure_rate: float,
        threshold: float,
        records_processed: int,
        failures: int
    ):
        super().__init__(message)
        self.failure_rate = failure_rate
        self.threshold = threshold
        self.records_processed = records_processed
        self.failures = failures


class CircuitBreaker:
    """Circuit Breaker monitoring the skip rate of one stage.

    Example Usage:
        ```python
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold_percent=80.0))

        for result in results_of_chunk:
            breaker.record_result(result)   # raises CircuitBreakerOpenError
        ```
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self._results: deque[bool] = deque(maxlen=self.config.window_size)
        self._lock = Lock()
        self._is_open = False
        self._total_processed = 0
        self._total_failures = 0

    def record_result(self, result: Result) -> None:
        """Record the outcome of one item and check the threshold.

        Parameters:
            result: Result returned by a mapper for one source resource

        Raises:
            CircuitBreakerOpenError: If abort_on_open=True and the threshold is exceeded
        """
        with self._lock:
            if result.is_failure() and result.error_type in self.config.ignored_error_types:
                return

            is_success = result.is_success()
            self._results.append(is_success)
            self._total_processed += 1
            if not is_success:
                self._total_failures += 1

            if self._total_processed >= self.config.min_records_before_check:
                self._check_threshold()

    def _check_threshold(self) -> None:
        if len(self._results) == 0:
            return

        failures_in_window = sum(1 for r in self._results if not r)
        total_in_window = len(self._results)
        failure_rate = (failures_in_window / total_in_window) * 100.0

        if failure_rate >= self.config.failure_threshold_percent:
            if not self._is_open:
                self._is_open = True

                logger.error(
                    f"CircuitBreaker OPEN: Skip rate {failure_rate:.1f}% "
                    f"exceeds threshold {self.config.failure_threshold_percent}% "
                    f"(skipped: {failures_in_window}/{total_in_window} in window, "
                    f"total: {self._total_failures}/{self._total_processed})"
                )

                if self.config.abort_on_open:
                    raise CircuitBreakerOpenError(
                        f"CircuitBreaker opened: {failure_rate:.1f}% skip rate "
                        f"exceeds threshold {self.config.failure_threshold_percent}%",
                        failure_rate=failure_rate,
                        threshold=self.config.failure_threshold_percent,
                        records_processed=self._total_processed,
                        failures=self._total_failures
                    )
        elif self._is_open:
            self._is_open = False
            logger.info(
                f"CircuitBreaker CLOSED: Skip rate {failure_rate:.1f}% "
                f"is below threshold {self.config.failure_threshold_percent}%"
            )

    def is_open(self) -> bool:
        with self._lock:
            return self._is_open

    def reset(self) -> None:
        """Clear all recorded outcomes (called before each stage)."""
        with self._lock:
            self._results.clear()
            self._is_open = False
            self._total_processed = 0
            self._total_failures = 0

    def get_statistics(self) -> dict:
        """Get current statistics about the circuit breaker.

        Returns:
            dict: is_open, total_processed, total_failures, records_in_window,
                failures_in_window, failure_rate and threshold
        """
        with self._lock:
            failures_in_window = sum(1 for r in self._results if not r)
            total_in_window = len(self._results)
            failure_rate = (failures_in_window / total_in_window * 100.0) if total_in_window > 0 else 0.0

            return {
                'is_open': self._is_open,
                'total_processed': self._total_processed,
                'total_failures': self._total_failures,
                'records_in_window': total_in_window,
                'failures_in_window': failures_in_window,
                'failure_rate': failure_rate,
                'threshold': self.config.failure_threshold_percent,
            }
