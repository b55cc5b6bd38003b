"""Chunked Stage Pipeline.

Runs one stage: reads staged resources chunk by chunk, transforms every resource
with the stage's mapper and commits the target records of a chunk in one writer
call.

Execution model:
    - Bulk load: chunks are transformed on a ThreadPoolExecutor bounded by the
      throttle limit; at most ``throttle_limit`` chunks are in flight and chunks
      commit in read order on the calling thread
    - Incremental load: chunks are transformed and committed on the calling thread
      (read-your-own-writes against the reference lookups)
    - A failed commit is retried ``max_chunk_retries`` times, then the stage fails
    - Any fatal error cancels the chunks not yet started; committed chunks stay
"""

import logging
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Sequence, Union

from fhir_to_omop.domain.guardrails import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerOpenError
from fhir_to_omop.domain.models import IdentityKind, MappingKind, OmopRecord, SourceResource, Tombstone
from fhir_to_omop.domain.ports import (
    SKIP_DEFERRED,
    SKIP_FILTERED,
    OmopWriter,
    ResourceReader,
    Result,
    StepFailedError,
)

if TYPE_CHECKING:
    from fhir_to_omop.domain.mappers.base import ResourceMapper

logger = logging.getLogger(__name__)

TargetRecords = list[Union[OmopRecord, Tombstone]]


@dataclass
class StepStatistics:
    """Counters of one stage run."""
    step_name: str
    status: str = "STARTING"
    read_count: int = 0
    write_count: int = 0
    processed_count: int = 0
    filter_count: int = 0
    chunk_count: int = 0
    retry_count: int = 0
    skip_counts: Counter = field(default_factory=Counter)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def skip_count(self) -> int:
        return sum(self.skip_counts.values())

    @property
    def deferred_count(self) -> int:
        return self.skip_counts.get(SKIP_DEFERRED, 0)

    def record(self, result: Result) -> None:
        self.read_count += 1
        if result.is_success():
            self.processed_count += 1
        elif result.error_type == SKIP_FILTERED:
            self.filter_count += 1
        else:
            self.skip_counts[result.error_type] += 1

    def as_dict(self) -> dict:
        return {
            'step_name': self.step_name,
            'status': self.status,
            'read_count': self.read_count,
            'write_count': self.write_count,
            'processed_count': self.processed_count,
            'filter_count': self.filter_count,
            'skip_count': self.skip_count,
            'deferred_count': self.deferred_count,
            'skip_counts': dict(self.skip_counts),
            'chunk_count': self.chunk_count,
            'retry_count': self.retry_count,
        }


@dataclass(frozen=True)
class PipelineConfig:
    """Execution options of a stage.

    Attributes:
        chunk_size: Resources per chunk (one commit per chunk)
        throttle_limit: Worker threads and chunks in flight (bulk load)
        max_chunk_retries: Commit attempts after the first failed one
        concurrent: Transform chunks on a worker pool
        include_deleted: Read resources flagged as deleted (incremental load)
        begin: Lower bound on last_updated_at (None = no filter)
        end: Upper bound on last_updated_at (None = no filter)
        circuit_breaker: Skip-rate guard configuration (None disables it)
    """
    chunk_size: int = 1000
    throttle_limit: int = 4
    max_chunk_retries: int = 3
    concurrent: bool = True
    include_deleted: bool = False
    begin: Optional[datetime] = None
    end: Optional[datetime] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = None


@dataclass(frozen=True)
class StepDefinition:
    """One loading stage.

    Attributes:
        name: Step name used in the flow graph and in single-step runs
        resource_type: FHIR resource type read from the staging table
        mapper: Transforms one staged resource into target records
        tables: Target tables the step writes (for single-step re-runs)
        vocabularies: Vocabularies the RAM snapshot must contain
        mapping_kinds: Derived mappings the RAM snapshot must contain
        identity_kinds: Reference dictionaries the step needs in RAM
    """
    name: str
    resource_type: str
    mapper: "ResourceMapper"
    tables: tuple[str, ...] = ()
    vocabularies: tuple[str, ...] = ()
    mapping_kinds: tuple[MappingKind, ...] = ()
    identity_kinds: tuple[IdentityKind, ...] = (IdentityKind.PERSON, IdentityKind.ENCOUNTER)


@dataclass
class _ChunkOutcome:
    index: int
    results: list[Result]
    records: TargetRecords


class ChunkPipeline:
    """Runs a StepDefinition as a chunked, bounded-concurrency pipeline.

    Parameters:
        reader: Source of staged resources
        writer: Target of the produced records
        config: Execution options

    Example Usage:
        ```python
        pipeline = ChunkPipeline(adapter, adapter, PipelineConfig(chunk_size=500, throttle_limit=8))
        statistics = pipeline.run(condition_step)
        ```
    """

    def __init__(self, reader: ResourceReader, writer: OmopWriter, config: Optional[PipelineConfig] = None):
        self.reader = reader
        self.writer = writer
        self.config = config or PipelineConfig()
        self.breaker = CircuitBreaker(self.config.circuit_breaker) if self.config.circuit_breaker else None

    def run(self, step: StepDefinition) -> StepStatistics:
        """Run one stage.

        Returns:
            StepStatistics: Counters of the completed stage

        Raises:
            StepFailedError: If a chunk cannot be committed or the skip-rate guard opens
            IdentityConflictError: If reference resolution hits inconsistent identities
            StorageError: If the staged resources cannot be read
        """
        statistics = StepStatistics(step_name=step.name, started_at=datetime.now(), status="STARTED")
        if self.breaker is not None:
            self.breaker.reset()

        logger.info(f"==== Fetching [{step.resource_type}] resources from source database ====")
        chunks = self.reader.read_chunks(
            step.resource_type,
            self.config.chunk_size,
            begin=self.config.begin,
            end=self.config.end,
            include_deleted=self.config.include_deleted,
        )

        try:
            if self.config.concurrent and self.config.throttle_limit > 1:
                self._run_concurrent(step, chunks, statistics)
            else:
                for index, chunk in enumerate(chunks):
                    self._commit(step, self._transform(step, index, chunk), statistics)
        except CircuitBreakerOpenError as e:
            statistics.status = "FAILED"
            raise StepFailedError(str(e), step_name=step.name, statistics=statistics) from e
        except Exception:
            statistics.status = "FAILED"
            raise
        finally:
            statistics.finished_at = datetime.now()

        statistics.status = "COMPLETED"
        logger.info(
            f"Step [{step.name}] completed: read={statistics.read_count}, "
            f"written={statistics.write_count}, skipped={statistics.skip_count}, "
            f"deferred={statistics.deferred_count}, filtered={statistics.filter_count}"
        )
        return statistics

    def _run_concurrent(self, step: StepDefinition, chunks, statistics: StepStatistics) -> None:
        in_flight: deque[Future] = deque()
        with ThreadPoolExecutor(
            max_workers=self.config.throttle_limit,
            thread_name_prefix=f"{step.name}-worker",
        ) as executor:
            try:
                for index, chunk in enumerate(chunks):
                    if len(in_flight) >= self.config.throttle_limit:
                        self._commit(step, in_flight.popleft().result(), statistics)
                    in_flight.append(executor.submit(self._transform, step, index, chunk))

                while in_flight:
                    self._commit(step, in_flight.popleft().result(), statistics)
            except BaseException:
                for future in in_flight:
                    future.cancel()
                raise

    def _transform(self, step: StepDefinition, index: int, chunk: Sequence[SourceResource]) -> _ChunkOutcome:
        results: list[Result] = []
        records: TargetRecords = []
        for resource in chunk:
            logger.debug(f"Processing {step.resource_type} with id: {resource.fhir_id}")
            result = step.mapper.map(resource)
            results.append(result)
            if result.is_success() and result.value:
                records.extend(result.value)
        return _ChunkOutcome(index=index, results=results, records=records)

    def _commit(self, step: StepDefinition, outcome: _ChunkOutcome, statistics: StepStatistics) -> None:
        for result in outcome.results:
            statistics.record(result)
            if self.breaker is not None:
                self.breaker.record_result(result)

        statistics.chunk_count += 1
        if not outcome.records:
            return

        attempts = self.config.max_chunk_retries + 1
        last_error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            result = self.writer.write_chunk(outcome.records)
            if result.is_success():
                statistics.write_count += result.value or 0
                return

            last_error = result.error
            if attempt < attempts:
                statistics.retry_count += 1
                logger.warning(
                    f"Commit of chunk {outcome.index} of step [{step.name}] failed "
                    f"(attempt {attempt}/{attempts}): {result.error}. Retrying."
                )

        logger.error(f"Chunk {outcome.index} of step [{step.name}] failed after {attempts} attempts: {last_error}")
        raise StepFailedError(
            f"Chunk {outcome.index} of step [{step.name}] could not be committed: {last_error}",
            step_name=step.name,
            statistics=statistics,
        )
