"""Load Mode Orchestrator.

Builds the flow graph of one ETL run and executes it:

    Init -> load_mode{BULKLOAD -> single_step, INCREMENTALLOAD -> Patient}
    single_step{All -> Patient, <step> -> single.<step>}
    Patient -> Encounter -> DepartmentCase -> Medication -> medication_decision
      -> [MedicationStatement] -> MedicationAdministration -> Condition -> Observation
      -> Procedure -> Immunization -> Consent -> DiagnosticReport -> PostProcess
    single.<step> -> PostProcess

Every loading stage is a ChunkPipeline run wrapped in the step listeners: stale
rows are removed before a bulk single-step re-run, reference data the stage needs
is loaded before it and dropped after it.

Architecture:
    - Domain service; storage is reached only through the EtlStore port
    - The concept source and the reference resolver are selected once per run and
      attached to the frozen LoadContext; they are never swapped mid-run
    - Stages run strictly one after another; a failed stage fails the run and
      keeps everything committed so far
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Callable, Optional

from fhir_to_omop.domain.constants import (
    DEFAULT_BEGIN_DATE,
    DEFAULT_END_DATE,
    FHIR_RESOURCE_CONDITION,
    FHIR_RESOURCE_CONSENT,
    FHIR_RESOURCE_DEPARTMENT_CASE,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT,
    FHIR_RESOURCE_ENCOUNTER,
    FHIR_RESOURCE_IMMUNIZATION,
    FHIR_RESOURCE_MEDICATION,
    FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
    FHIR_RESOURCE_MEDICATION_STATEMENT,
    FHIR_RESOURCE_OBSERVATION,
    FHIR_RESOURCE_PATIENT,
    FHIR_RESOURCE_PROCEDURE,
    SINGLE_STEP_NAMES,
    STEP_ALL,
    VOCABULARY_ATC,
    VOCABULARY_ICD10GM,
    VOCABULARY_LOINC,
    VOCABULARY_OPS,
    VOCABULARY_ORPHA,
    VOCABULARY_SNOMED,
    VOCABULARY_UCUM,
)
from fhir_to_omop.domain.flow import END, DecisionNode, Flow, FlowInterpreter, FlowStatus, StepNode
from fhir_to_omop.domain.guardrails import CircuitBreakerConfig
from fhir_to_omop.domain.mappers import (
    ConditionMapper,
    ConsentMapper,
    DiagnosticReportMapper,
    EncounterDepartmentCaseMapper,
    EncounterInstitutionContactMapper,
    ImmunizationMapper,
    MappingContext,
    MedicationAdministrationMapper,
    MedicationMapper,
    MedicationStatementMapper,
    ObservationMapper,
    PatientMapper,
    ProcedureMapper,
    fhir,
)
from fhir_to_omop.domain.models import IdentityKind, LoadMode, MappingKind
from fhir_to_omop.domain.ports import ConceptSource, EtlStore, StepFailedError, StorageError
from fhir_to_omop.domain.services.chunk_pipeline import ChunkPipeline, PipelineConfig, StepDefinition, StepStatistics
from fhir_to_omop.domain.services.concept_resolver import ConceptResolver
from fhir_to_omop.domain.services.identity_cache import IdMappings
from fhir_to_omop.domain.services.reference_resolver import ReferenceResolver
from fhir_to_omop.domain.services.vocabulary import VocabularyRegistry

logger = logging.getLogger(__name__)

INIT_STEP = "Init"
POST_PROCESS_STEP = "PostProcess"
MEDICATION_SKIPPED = "SKIPPED"

# Derived-aggregate scripts, in execution order
POST_PROCESS_SCRIPTS = (
    "observation_period",
    "visit_detail_updates",
    "person_location",
    "condition_era",
    "drug_era",
)

SINGLE_STEP_POST_PROCESS_SCRIPTS = {
    FHIR_RESOURCE_CONDITION: ("condition_era",),
    FHIR_RESOURCE_MEDICATION_ADMINISTRATION: ("drug_era",),
    FHIR_RESOURCE_MEDICATION_STATEMENT: ("drug_era",),
    FHIR_RESOURCE_IMMUNIZATION: ("drug_era",),
    FHIR_RESOURCE_DEPARTMENT_CASE: ("visit_detail_updates",),
}

_PERSON = (IdentityKind.PERSON,)
_PERSON_ENCOUNTER = (IdentityKind.PERSON, IdentityKind.ENCOUNTER)
_DRUG_REFERENCES = (IdentityKind.PERSON, IdentityKind.ENCOUNTER, IdentityKind.MEDICATION)


@dataclass(frozen=True)
class LoadContext:
    """Options of one ETL run.

    Attributes:
        mode: Bulk or incremental load
        single_step: "All" or the name of the one step to re-run (bulk load only)
        begin_date: Lower bound on last_updated_at (1800-01-01 means no filter)
        end_date: Upper bound on last_updated_at (2099-12-31 means no filter)
        dictionary_load_in_ram: Build in-memory reference dictionaries during bulk load
        write_medication_statements: Run the MedicationStatement step
        chunk_size: Resources per chunk
        throttle_limit: Worker threads and chunks in flight (bulk load)
        max_chunk_retries: Commit attempts after the first failed one
        circuit_breaker: Skip-rate guard (None disables it)
        concept_source: Selected at run start
        reference_resolver: Selected at run start
    """
    mode: LoadMode = LoadMode.BULK
    single_step: str = STEP_ALL
    begin_date: date = DEFAULT_BEGIN_DATE
    end_date: date = DEFAULT_END_DATE
    dictionary_load_in_ram: bool = True
    write_medication_statements: bool = True
    chunk_size: int = 1000
    throttle_limit: int = 4
    max_chunk_retries: int = 3
    circuit_breaker: Optional[CircuitBreakerConfig] = None
    concept_source: Optional[ConceptSource] = field(default=None, compare=False, repr=False)
    reference_resolver: Optional[ReferenceResolver] = field(default=None, compare=False, repr=False)

    @property
    def bulk(self) -> bool:
        return self.mode == LoadMode.BULK

    @property
    def single_step_run(self) -> bool:
        return self.bulk and bool(self.single_step) and self.single_step != STEP_ALL

    def date_window(self, now: datetime) -> tuple[Optional[datetime], Optional[datetime]]:
        """Bounds on last_updated_at; (None, None) for the open default range."""
        if self.begin_date == DEFAULT_BEGIN_DATE and self.end_date == DEFAULT_END_DATE:
            return None, None
        begin = datetime.combine(self.begin_date, time.min)
        end = min(datetime.combine(self.end_date, time(23, 59, 59)), now)
        return begin, end

    def pipeline_config(self, now: datetime) -> PipelineConfig:
        begin, end = self.date_window(now)
        return PipelineConfig(
            chunk_size=self.chunk_size,
            throttle_limit=self.throttle_limit,
            max_chunk_retries=self.max_chunk_retries,
            concurrent=self.bulk,
            include_deleted=not self.bulk,
            begin=begin,
            end=end,
            circuit_breaker=self.circuit_breaker,
        )


@dataclass
class RunSummary:
    """Outcome of one orchestrated run."""
    status: FlowStatus
    mode: LoadMode
    single_step: str
    path: list[str] = field(default_factory=list)
    steps: list[StepStatistics] = field(default_factory=list)
    post_process_scripts: list[str] = field(default_factory=list)
    failed_node: Optional[str] = None
    error: Optional[BaseException] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == FlowStatus.COMPLETED

    def as_dict(self) -> dict:
        return {
            'status': self.status.value,
            'mode': self.mode.value,
            'single_step': self.single_step,
            'path': list(self.path),
            'steps': [statistics.as_dict() for statistics in self.steps],
            'post_process_scripts': list(self.post_process_scripts),
            'failed_node': self.failed_node,
            'error': str(self.error) if self.error else None,
        }


def post_process_scripts(context: LoadContext) -> tuple[str, ...]:
    """Scripts run by the PostProcess step of a run."""
    if context.single_step_run:
        return SINGLE_STEP_POST_PROCESS_SCRIPTS.get(context.single_step, ())
    return POST_PROCESS_SCRIPTS


class LoadModeOrchestrator:
    """Runs the bulk or incremental load flow against one store.

    Parameters:
        store: Storage adapter implementing every storage port
        concept_source: Concept lookup selected for this run (RAM snapshot or cached query)
        context: Run options
        registry: Code system routing
        identifier_systems: Accepted patient identifier systems (empty accepts all)
        now: Clock used for the date window and the reschedule watermark

    Example Usage:
        ```python
        orchestrator = LoadModeOrchestrator(
            store=adapter,
            concept_source=InMemoryConceptSource(adapter),
            context=LoadContext(mode=LoadMode.BULK, single_step="Condition"),
        )
        summary = orchestrator.run()
        if not summary.succeeded:
            raise SystemExit(1)
        ```
    """

    def __init__(
        self,
        store: EtlStore,
        concept_source: ConceptSource,
        context: Optional[LoadContext] = None,
        registry: Optional[VocabularyRegistry] = None,
        identifier_systems: tuple[str, ...] = (),
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.registry = registry or VocabularyRegistry.default()
        self._now = now

        self.id_mappings = IdMappings()
        context = context or LoadContext()
        reference_resolver = ReferenceResolver(
            context.mode,
            context.dictionary_load_in_ram,
            identity_store=store,
            reschedule_hook=store,
            id_mappings=self.id_mappings,
            now=now,
        )
        self.context = replace(context, concept_source=concept_source, reference_resolver=reference_resolver)

        self.mapping_context = MappingContext(
            concept_resolver=ConceptResolver(self.registry, concept_source),
            reference_resolver=reference_resolver,
            id_mappings=self.id_mappings,
            mode=context.mode,
            identifier_systems=identifier_systems,
        )
        self.steps = self.build_steps()
        self._summary: Optional[RunSummary] = None
        self._pipeline: Optional[ChunkPipeline] = None

    # ------------------------------------------------------------------
    # Flow definition
    # ------------------------------------------------------------------

    def build_steps(self) -> dict[str, StepDefinition]:
        context = self.mapping_context
        definitions = [
            StepDefinition(
                name=FHIR_RESOURCE_PATIENT,
                resource_type=FHIR_RESOURCE_PATIENT,
                mapper=PatientMapper(context),
                tables=PatientMapper.tables,
                vocabularies=(VOCABULARY_SNOMED,),
                mapping_kinds=(MappingKind.RACE_STANDARD,),
                identity_kinds=_PERSON,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_ENCOUNTER,
                resource_type=FHIR_RESOURCE_ENCOUNTER,
                mapper=EncounterInstitutionContactMapper(context),
                tables=EncounterInstitutionContactMapper.tables,
                identity_kinds=_PERSON_ENCOUNTER,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_DEPARTMENT_CASE,
                resource_type=FHIR_RESOURCE_ENCOUNTER,
                mapper=EncounterDepartmentCaseMapper(context),
                tables=EncounterDepartmentCaseMapper.tables,
                identity_kinds=_PERSON_ENCOUNTER,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_MEDICATION,
                resource_type=FHIR_RESOURCE_MEDICATION,
                mapper=MedicationMapper(context),
                tables=MedicationMapper.tables,
                identity_kinds=(IdentityKind.MEDICATION,),
            ),
            StepDefinition(
                name=FHIR_RESOURCE_MEDICATION_STATEMENT,
                resource_type=FHIR_RESOURCE_MEDICATION_STATEMENT,
                mapper=MedicationStatementMapper(context),
                tables=MedicationStatementMapper.tables,
                vocabularies=(VOCABULARY_ATC,),
                mapping_kinds=(MappingKind.ATC_STANDARD,),
                identity_kinds=_DRUG_REFERENCES,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
                resource_type=FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
                mapper=MedicationAdministrationMapper(context),
                tables=MedicationAdministrationMapper.tables,
                vocabularies=(VOCABULARY_ATC,),
                mapping_kinds=(MappingKind.ATC_STANDARD,),
                identity_kinds=_DRUG_REFERENCES,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_CONDITION,
                resource_type=FHIR_RESOURCE_CONDITION,
                mapper=ConditionMapper(context),
                tables=ConditionMapper.tables,
                vocabularies=(VOCABULARY_ICD10GM, VOCABULARY_ORPHA, VOCABULARY_SNOMED),
                mapping_kinds=(MappingKind.ICD_SNOMED,),
            ),
            StepDefinition(
                name=FHIR_RESOURCE_OBSERVATION,
                resource_type=FHIR_RESOURCE_OBSERVATION,
                mapper=ObservationMapper(context),
                tables=ObservationMapper.tables,
                vocabularies=(VOCABULARY_LOINC, VOCABULARY_SNOMED, VOCABULARY_UCUM),
                mapping_kinds=(MappingKind.LOINC_STANDARD,),
            ),
            StepDefinition(
                name=FHIR_RESOURCE_PROCEDURE,
                resource_type=FHIR_RESOURCE_PROCEDURE,
                mapper=ProcedureMapper(context),
                tables=ProcedureMapper.tables,
                vocabularies=(VOCABULARY_OPS, VOCABULARY_SNOMED),
                mapping_kinds=(MappingKind.OPS_STANDARD,),
            ),
            StepDefinition(
                name=FHIR_RESOURCE_IMMUNIZATION,
                resource_type=FHIR_RESOURCE_IMMUNIZATION,
                mapper=ImmunizationMapper(context),
                tables=ImmunizationMapper.tables,
                vocabularies=(VOCABULARY_ATC, VOCABULARY_SNOMED),
                mapping_kinds=(MappingKind.ATC_STANDARD, MappingKind.VACCINE_STANDARD),
            ),
            StepDefinition(
                name=FHIR_RESOURCE_CONSENT,
                resource_type=FHIR_RESOURCE_CONSENT,
                mapper=ConsentMapper(context),
                tables=ConsentMapper.tables,
                identity_kinds=_PERSON,
            ),
            StepDefinition(
                name=FHIR_RESOURCE_DIAGNOSTIC_REPORT,
                resource_type=FHIR_RESOURCE_DIAGNOSTIC_REPORT,
                mapper=DiagnosticReportMapper(context),
                tables=DiagnosticReportMapper.tables,
                vocabularies=(VOCABULARY_LOINC, VOCABULARY_SNOMED),
            ),
        ]
        return {definition.name: definition for definition in definitions}

    def build_flow(self) -> Flow:
        """The flow graph of a run; decisions read the LoadContext."""
        nodes = [
            StepNode(INIT_STEP, next_node="load_mode"),
            DecisionNode(
                "load_mode",
                decider=lambda: self.context.mode.value,
                transitions={
                    LoadMode.BULK.value: "single_step",
                    LoadMode.INCREMENTAL.value: FHIR_RESOURCE_PATIENT,
                },
            ),
            DecisionNode(
                "single_step",
                decider=self.decide_single_step,
                transitions={
                    STEP_ALL: FHIR_RESOURCE_PATIENT,
                    **{name: f"single.{name}" for name in SINGLE_STEP_NAMES},
                },
            ),
            StepNode(FHIR_RESOURCE_PATIENT, next_node=FHIR_RESOURCE_ENCOUNTER),
            StepNode(FHIR_RESOURCE_ENCOUNTER, next_node=FHIR_RESOURCE_DEPARTMENT_CASE),
            StepNode(FHIR_RESOURCE_DEPARTMENT_CASE, next_node=FHIR_RESOURCE_MEDICATION),
            StepNode(FHIR_RESOURCE_MEDICATION, next_node="medication_decision"),
            DecisionNode(
                "medication_decision",
                decider=self.decide_medication,
                transitions={
                    FHIR_RESOURCE_MEDICATION_STATEMENT: FHIR_RESOURCE_MEDICATION_STATEMENT,
                    MEDICATION_SKIPPED: FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
                },
            ),
            StepNode(FHIR_RESOURCE_MEDICATION_STATEMENT, next_node=FHIR_RESOURCE_MEDICATION_ADMINISTRATION),
            StepNode(FHIR_RESOURCE_MEDICATION_ADMINISTRATION, next_node=FHIR_RESOURCE_CONDITION),
            StepNode(FHIR_RESOURCE_CONDITION, next_node=FHIR_RESOURCE_OBSERVATION),
            StepNode(FHIR_RESOURCE_OBSERVATION, next_node=FHIR_RESOURCE_PROCEDURE),
            StepNode(FHIR_RESOURCE_PROCEDURE, next_node=FHIR_RESOURCE_IMMUNIZATION),
            StepNode(FHIR_RESOURCE_IMMUNIZATION, next_node=FHIR_RESOURCE_CONSENT),
            StepNode(FHIR_RESOURCE_CONSENT, next_node=FHIR_RESOURCE_DIAGNOSTIC_REPORT),
            StepNode(FHIR_RESOURCE_DIAGNOSTIC_REPORT, next_node=POST_PROCESS_STEP),
            StepNode(POST_PROCESS_STEP, next_node=END),
        ]
        nodes.extend(
            StepNode(f"single.{name}", step=name, next_node=POST_PROCESS_STEP) for name in SINGLE_STEP_NAMES
        )
        return Flow("fhirToOmop", INIT_STEP, nodes)

    def decide_single_step(self) -> str:
        step = self.context.single_step or STEP_ALL
        if step != STEP_ALL and step not in SINGLE_STEP_NAMES:
            logger.warning(f"==== The step [{step}] cannot be run separately. Please try other steps. ====")
        return step

    def decide_medication(self) -> str:
        if self.context.write_medication_statements:
            return FHIR_RESOURCE_MEDICATION_STATEMENT
        logger.info("==== Writing of [MedicationStatement] resources is disabled. Skip step. ====")
        return MEDICATION_SKIPPED

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        """Execute the flow.

        Returns:
            RunSummary: Visited nodes, per-stage statistics and the final status.
                A failed run carries the failing node and its error.
        """
        summary = RunSummary(
            status=FlowStatus.COMPLETED,
            mode=self.context.mode,
            single_step=self.context.single_step,
            started_at=self._now(),
        )
        self._summary = summary
        self._pipeline = ChunkPipeline(self.store, self.store, self.context.pipeline_config(self._now()))

        logger.info(
            f"==== Starting {self.context.mode.value} "
            f"(step: {self.context.single_step}, RAM dictionaries: {self.context.dictionary_load_in_ram}) ===="
        )
        execution = FlowInterpreter(self.build_flow(), self.run_step).run()

        summary.status = execution.status
        summary.path = execution.path
        summary.failed_node = execution.failed_node
        summary.error = execution.error
        summary.finished_at = self._now()

        if execution.succeeded:
            logger.info(f"==== {self.context.mode.value} finished in {summary.finished_at - summary.started_at} ====")
        else:
            logger.error(f"==== {self.context.mode.value} failed at [{execution.failed_node}] ====")
        return summary

    def run_step(self, name: str) -> None:
        if name == INIT_STEP:
            self.initialize()
        elif name == POST_PROCESS_STEP:
            self.post_process()
        else:
            self.load(self.steps[name])

    def initialize(self) -> None:
        result = self.store.initialize_schema()
        if result.is_failure():
            raise StorageError(f"Schema initialization failed: {result.error}", operation="initialize_schema")

        if self.context.bulk and not self.context.single_step_run:
            logger.info("==== Bulk load of all steps: emptying target tables ====")
            result = self.store.reset_target_tables()
            if result.is_failure():
                raise StorageError(f"Resetting target tables failed: {result.error}", operation="reset_target_tables")

    def load(self, step: StepDefinition) -> StepStatistics:
        """Run one loading stage inside its listeners."""
        self.before_step(step)
        try:
            statistics = self._pipeline.run(step)
        except StepFailedError as e:
            if e.statistics is not None and self._summary is not None:
                self._summary.steps.append(e.statistics)
            raise
        finally:
            self.after_step(step)

        if self._summary is not None:
            self._summary.steps.append(statistics)
        return statistics

    def before_step(self, step: StepDefinition) -> None:
        if self.context.single_step_run:
            prefix = fhir.resource_type_prefix(step.resource_type)
            result = self.store.delete_step_data(step.tables, prefix)
            if result.is_failure():
                raise StorageError(
                    f"Deleting previous data of step [{step.name}] failed: {result.error}",
                    operation="delete_step_data",
                )
            logger.info(f"Deleted {result.value} rows previously loaded by step [{step.name}]")

        self.context.concept_source.prepare(step.vocabularies, step.mapping_kinds)
        if self.context.reference_resolver.uses_ram:
            self.context.reference_resolver.load_dictionaries(step.identity_kinds)

    def after_step(self, step: StepDefinition) -> None:
        self.context.concept_source.release()
        self.context.reference_resolver.clear()
        logger.debug(f"Released reference data of step [{step.name}]")

    def post_process(self) -> None:
        scripts = post_process_scripts(self.context)
        if self._summary is not None:
            self._summary.post_process_scripts = list(scripts)
        if not scripts:
            logger.info("==== No post processing needed ====")
            return

        result = self.store.run_scripts(scripts)
        if result.is_failure():
            raise StorageError(f"Post processing failed: {result.error}", operation="run_scripts")
        logger.info(f"==== Post processing finished: {result.value} scripts executed ====")
