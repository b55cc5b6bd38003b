"""Adapters layer for the FHIR-to-OMOP ETL.

This module contains the adapters that interface with external systems.
Adapters implement Port interfaces defined in the domain layer: the storage
adapters (DuckDB, PostgreSQL) and the concept sources built on top of them.
"""
