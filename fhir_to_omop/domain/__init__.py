"""Domain layer for FHIR-to-OMOP.

This module contains the core ETL logic: reference data and target models, concept
and reference resolution, the per-resource mappers, the chunked stage pipeline and
the load mode orchestration. Nothing in here talks to a database directly; storage
is reached through the ports in ``fhir_to_omop.domain.ports``.
"""

from .models import LoadMode, MappingKind, IdentityKind
from .ports import Result, EtlError

__all__ = [
    "LoadMode",
    "MappingKind",
    "IdentityKind",
    "Result",
    "EtlError",
]
