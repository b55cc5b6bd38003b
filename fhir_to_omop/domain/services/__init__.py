"""Domain Services.

This package contains the domain services that implement the ETL logic
without infrastructure dependencies.
"""

from fhir_to_omop.domain.services.chunk_pipeline import ChunkPipeline, PipelineConfig, StepDefinition, StepStatistics
from fhir_to_omop.domain.services.concept_resolver import ConceptResolver
from fhir_to_omop.domain.services.identity_cache import IdentityIndex, IdMapping, IdMappings
from fhir_to_omop.domain.services.reference_resolver import ReferenceResolution, ReferenceResolver
from fhir_to_omop.domain.services.vocabulary import VocabularyRegistry

__all__ = [
    'ChunkPipeline',
    'PipelineConfig',
    'StepDefinition',
    'StepStatistics',
    'ConceptResolver',
    'IdentityIndex',
    'IdMapping',
    'IdMappings',
    'ReferenceResolution',
    'ReferenceResolver',
    'VocabularyRegistry',
]
