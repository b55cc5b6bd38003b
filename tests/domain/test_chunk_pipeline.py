"""Unit tests for the chunked stage pipeline."""

import threading
from datetime import date
from unittest.mock import Mock

import pytest

from fhir_to_omop.domain.guardrails import CircuitBreakerConfig
from fhir_to_omop.domain.models import ConditionOccurrence, SourceResource
from fhir_to_omop.domain.ports import (
    SKIP_DEFERRED,
    SKIP_FILTERED,
    SKIP_NO_VALID_CONCEPT,
    Result,
    StepFailedError,
    StorageError,
)
from fhir_to_omop.domain.services.chunk_pipeline import ChunkPipeline, PipelineConfig, StepDefinition


def resource(i):
    return SourceResource(id=i, fhir_id=f"c{i}", type="Condition", data={"id": f"c{i}"})


def chunks_of(count, size):
    resources = [resource(i) for i in range(1, count + 1)]
    return [resources[i:i + size] for i in range(0, count, size)]


class ConditionMapperStub:
    """Maps every resource to one condition row; chosen ids become skips."""

    def __init__(self, skips=None):
        self.skips = skips or {}
        self.threads = set()

    def map(self, source):
        self.threads.add(threading.current_thread().name)
        if source.id in self.skips:
            return Result.failure_result("skip", error_type=self.skips[source.id])
        return Result.success_result([
            ConditionOccurrence(person_id=1, condition_start_date=date(2021, 1, 1), fhir_logical_id=f"con-{source.fhir_id}")
        ])


@pytest.fixture
def reader():
    reader = Mock()
    reader.read_chunks.side_effect = lambda *args, **kwargs: iter(chunks_of(10, 3))
    return reader


@pytest.fixture
def writer():
    writer = Mock()
    writer.write_chunk.side_effect = lambda records: Result.success_result(len(records))
    return writer


def step(mapper):
    return StepDefinition(name="Condition", resource_type="Condition", mapper=mapper, tables=("condition_occurrence",))


class TestSequentialPipeline:
    """Test incremental (single-threaded) execution."""

    def test_counts_and_commits(self, reader, writer):
        """Test every chunk is committed once and counters add up."""
        mapper = ConditionMapperStub(skips={2: SKIP_NO_VALID_CONCEPT, 5: SKIP_FILTERED, 7: SKIP_DEFERRED})
        pipeline = ChunkPipeline(reader, writer, PipelineConfig(chunk_size=3, concurrent=False))

        statistics = pipeline.run(step(mapper))

        assert statistics.status == "COMPLETED"
        assert statistics.read_count == 10
        assert statistics.processed_count == 7
        assert statistics.write_count == 7
        assert statistics.filter_count == 1
        assert statistics.skip_count == 2
        assert statistics.deferred_count == 1
        assert statistics.chunk_count == 4
        assert writer.write_chunk.call_count == 4
        assert threading.current_thread().name in mapper.threads

    def test_passes_read_options(self, reader, writer):
        """Test chunk size, date window and deleted flag reach the reader."""
        pipeline = ChunkPipeline(reader, writer, PipelineConfig(chunk_size=3, concurrent=False, include_deleted=True))

        pipeline.run(step(ConditionMapperStub()))

        reader.read_chunks.assert_called_once_with("Condition", 3, begin=None, end=None, include_deleted=True)

    def test_empty_chunk_not_written(self, reader, writer):
        """Test a chunk with only skips is not sent to the writer."""
        reader.read_chunks.side_effect = lambda *args, **kwargs: iter([[resource(1)]])
        mapper = ConditionMapperStub(skips={1: SKIP_NO_VALID_CONCEPT})

        statistics = ChunkPipeline(reader, writer, PipelineConfig(concurrent=False)).run(step(mapper))

        writer.write_chunk.assert_not_called()
        assert statistics.chunk_count == 1


class TestConcurrentPipeline:
    """Test bulk (bounded-concurrency) execution."""

    def test_commits_in_read_order(self, reader, writer):
        """Test chunks transformed on workers are committed in read order."""
        mapper = ConditionMapperStub()
        pipeline = ChunkPipeline(reader, writer, PipelineConfig(chunk_size=3, throttle_limit=3, concurrent=True))

        statistics = pipeline.run(step(mapper))

        committed = [
            record.fhir_logical_id
            for call in writer.write_chunk.call_args_list
            for record in call.args[0]
        ]
        assert committed == [f"con-c{i}" for i in range(1, 11)]
        assert statistics.write_count == 10
        assert all(name.startswith("Condition-worker") for name in mapper.threads)


class TestFailures:
    """Test retry and failure handling."""

    def test_retries_failed_commit(self, reader, writer):
        """Test a failed commit is retried and counted."""
        failures = iter([True])

        def write(records):
            if next(failures, False):
                return Result.failure_result("deadlock", error_type="StorageError")
            return Result.success_result(len(records))

        writer.write_chunk.side_effect = write
        pipeline = ChunkPipeline(reader, writer, PipelineConfig(chunk_size=3, concurrent=False, max_chunk_retries=1))

        statistics = pipeline.run(step(ConditionMapperStub()))

        assert statistics.retry_count == 1
        assert statistics.write_count == 10

    def test_exhausted_retries_fail_step(self, reader, writer):
        """Test the stage fails after the retries and keeps earlier commits."""
        writer.write_chunk.side_effect = lambda records: Result.failure_result("down", error_type="StorageError")
        pipeline = ChunkPipeline(reader, writer, PipelineConfig(chunk_size=3, concurrent=False, max_chunk_retries=2))

        with pytest.raises(StepFailedError) as exc_info:
            pipeline.run(step(ConditionMapperStub()))

        assert exc_info.value.statistics.status == "FAILED"
        assert writer.write_chunk.call_count == 3

    def test_read_error_propagates(self, writer):
        """Test a staging read failure aborts the stage."""
        reader = Mock()
        reader.read_chunks.side_effect = StorageError("connection lost", operation="read_chunks")

        with pytest.raises(StorageError):
            ChunkPipeline(reader, writer, PipelineConfig(concurrent=False)).run(step(ConditionMapperStub()))

    def test_circuit_breaker_fails_step(self, reader, writer):
        """Test an excessive skip rate fails the stage."""
        mapper = ConditionMapperStub(skips={i: SKIP_NO_VALID_CONCEPT for i in range(1, 11)})
        config = PipelineConfig(
            chunk_size=3,
            concurrent=False,
            circuit_breaker=CircuitBreakerConfig(failure_threshold_percent=50.0, min_records_before_check=3),
        )

        with pytest.raises(StepFailedError):
            ChunkPipeline(reader, writer, config).run(step(mapper))
