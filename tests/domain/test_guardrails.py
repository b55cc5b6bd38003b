"""Unit tests for the skip-rate circuit breaker."""

import pytest

from fhir_to_omop.domain.guardrails import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerOpenError
from fhir_to_omop.domain.ports import SKIP_DEFERRED, SKIP_NO_VALID_CONCEPT, Result


def ok():
    return Result.success_result([])


def skip(error_type=SKIP_NO_VALID_CONCEPT):
    return Result.failure_result("skipped", error_type=error_type)


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    def test_opens_above_threshold(self):
        """Test the breaker aborts once the skip rate reaches the threshold."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold_percent=50.0, min_records_before_check=4))
        breaker.record_result(ok())
        breaker.record_result(skip())
        breaker.record_result(ok())

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            breaker.record_result(skip())

        assert exc_info.value.failure_rate == 50.0
        assert exc_info.value.records_processed == 4
        assert breaker.is_open()

    def test_waits_for_minimum_records(self):
        """Test no decision is taken before the minimum number of items."""
        breaker = CircuitBreaker(CircuitBreakerConfig(min_records_before_check=10))
        for _ in range(9):
            breaker.record_result(skip())

        assert not breaker.is_open()

    def test_deferrals_are_ignored(self):
        """Test deferred items never count as failures."""
        breaker = CircuitBreaker(CircuitBreakerConfig(min_records_before_check=1))
        for _ in range(20):
            breaker.record_result(skip(SKIP_DEFERRED))

        assert breaker.get_statistics()['total_processed'] == 0
        assert not breaker.is_open()

    def test_log_only_mode(self):
        """Test abort_on_open=False opens the breaker without raising."""
        breaker = CircuitBreaker(CircuitBreakerConfig(min_records_before_check=2, abort_on_open=False))
        breaker.record_result(skip())
        breaker.record_result(skip())

        assert breaker.is_open()

    def test_reset(self):
        """Test reset clears the window and closes the breaker."""
        breaker = CircuitBreaker(CircuitBreakerConfig(min_records_before_check=1, abort_on_open=False))
        breaker.record_result(skip())
        breaker.reset()

        statistics = breaker.get_statistics()
        assert not statistics['is_open']
        assert statistics['total_processed'] == 0
