"""Main entry point for the FHIR-to-OMOP ETL.

This module wires the configured storage adapter, the concept source and the load
orchestrator together and runs one bulk or incremental load of the staged FHIR
resources into the OMOP CDM tables.

Security Impact:
    - Configuration is loaded securely via configuration manager
    - Credentials are never logged

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is selected via configuration manager
    - The concept source is chosen once per run from the load mode
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from fhir_to_omop.adapters.concept_sources import CachedQueryConceptSource, InMemoryConceptSource
from fhir_to_omop.adapters.storage import DuckDBAdapter, PostgreSQLAdapter
from fhir_to_omop.adapters.storage.base import SqlStore
from fhir_to_omop.domain.ports import ConceptSource, VocabularyStore
from fhir_to_omop.domain.services.orchestrator import LoadContext, LoadModeOrchestrator, RunSummary
from fhir_to_omop.domain.services.vocabulary import VocabularyRegistry
from fhir_to_omop.infrastructure.config_manager import DatabaseConfig, RunConfig
from fhir_to_omop.infrastructure.settings import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> SqlStore:
    """Create storage adapter based on configuration.

    Returns:
        SqlStore: Configured storage adapter instance

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = db_config or settings.db_config

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        return DuckDBAdapter(db_config=db_config, post_processing_dir=settings.post_processing_dir)
    elif db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL adapter with host: {db_config.host}")
        return PostgreSQLAdapter(db_config=db_config, post_processing_dir=settings.post_processing_dir)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_concept_source(store: VocabularyStore, context: LoadContext) -> ConceptSource:
    """RAM snapshots for a bulk load with RAM dictionaries, cached queries otherwise."""
    if context.bulk and context.dictionary_load_in_ram:
        return InMemoryConceptSource(store)
    return CachedQueryConceptSource(store)


def create_registry(routing_file: Optional[Union[str, Path]] = None) -> VocabularyRegistry:
    if routing_file:
        logger.info(f"Loading vocabulary routing from {routing_file}")
        return VocabularyRegistry.from_file(routing_file)
    return VocabularyRegistry.default()


def run_etl(storage: SqlStore, run_config: RunConfig) -> RunSummary:
    """Run one load against ``storage``.

    Parameters:
        storage: Storage adapter holding the staged resources and the OMOP tables
        run_config: Validated run options

    Returns:
        RunSummary: Outcome of the run (never raises for a failed stage)
    """
    context = run_config.to_load_context(settings.circuit_breaker_config())
    orchestrator = LoadModeOrchestrator(
        store=storage,
        concept_source=create_concept_source(storage, context),
        context=context,
        registry=create_registry(settings.vocabulary_routing_file),
        identifier_systems=settings.identifier_systems,
    )
    return orchestrator.run()


def read_fhir_file(path: Union[str, Path]) -> list[dict]:
    """Read FHIR resources from a Bundle, a JSON array, a single resource or NDJSON.

    Raises:
        ValueError: If the file holds no FHIR resources
    """
    text = Path(path).read_text(encoding="utf-8").strip()
    if not text:
        return []

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = [json.loads(line) for line in text.splitlines() if line.strip()]

    if isinstance(document, dict) and document.get("resourceType") == "Bundle":
        resources = [entry["resource"] for entry in document.get("entry", []) if "resource" in entry]
    elif isinstance(document, dict):
        resources = [document]
    else:
        resources = list(document)

    invalid = [resource for resource in resources if not isinstance(resource, dict) or "resourceType" not in resource]
    if invalid:
        raise ValueError(f"{len(invalid)} entries of {path} are not FHIR resources")
    return resources


def main():
    """Main entry point for the FHIR-to-OMOP ETL."""
    parser = argparse.ArgumentParser(
        description=f"{settings.app_name} - FHIR to OMOP CDM batch ETL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Bulk load of all steps
  python -m fhir_to_omop.main --bulk

  # Re-run one step of a bulk load
  python -m fhir_to_omop.main --bulk --step Condition

  # Incremental load of the resources updated in a date window
  python -m fhir_to_omop.main --incremental --begin-date 2024-01-01 --end-date 2024-01-31
        """
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--bulk", dest="bulk_load", action="store_true", default=None, help="Bulk load")
    mode.add_argument("--incremental", dest="bulk_load", action="store_false", help="Incremental load")
    parser.add_argument("--step", dest="single_step", type=str, default=None, help="Single step to re-run")
    parser.add_argument("--begin-date", type=str, default=None, help="Lower bound on last_updated_at")
    parser.add_argument("--end-date", type=str, default=None, help="Upper bound on last_updated_at")
    parser.add_argument("--chunk-size", type=int, default=None, help=f"Resources per chunk (default: {settings.chunk_size})")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        run_config = settings.run_config(
            bulk_load=args.bulk_load,
            single_step=args.single_step,
            begin_date=args.begin_date,
            end_date=args.end_date,
            chunk_size=args.chunk_size,
        )
    except ValueError as e:
        logger.error(f"Invalid run options: {str(e)}")
        sys.exit(1)

    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Database type: {settings.db_config.db_type}")

    try:
        storage = create_storage_adapter()
    except Exception as e:
        logger.error(f"Failed to create storage adapter: {str(e)}")
        sys.exit(1)

    try:
        summary = run_etl(storage, run_config)
    finally:
        storage.close()

    for statistics in summary.steps:
        logger.info(f"Step statistics: {statistics.as_dict()}")
    sys.exit(0 if summary.succeeded else 1)


if __name__ == "__main__":
    main()
