"""Storage adapters for the FHIR-to-OMOP ETL.

This module contains the storage adapters that implement the EtlStore interface:
staging reader, OMOP writer, identity and vocabulary lookups and post-processing.
"""

from fhir_to_omop.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_to_omop.adapters.storage.postgres_adapter import PostgreSQLAdapter

__all__ = ["DuckDBAdapter", "PostgreSQLAdapter"]
