"""FHIR-to-OMOP: batch ETL from staged FHIR resources into the OMOP Common Data Model."""

__version__ = "0.1.0"
