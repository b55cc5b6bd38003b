"""Infrastructure layer: configuration and settings."""

from fhir_to_omop.infrastructure.config_manager import ConfigManager, DatabaseConfig, RunConfig, get_database_config

__all__ = ["ConfigManager", "DatabaseConfig", "RunConfig", "get_database_config"]
