"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from pathlib import Path
from typing import Optional

from fhir_to_omop.domain.guardrails import CircuitBreakerConfig
from fhir_to_omop.infrastructure.config_manager import ConfigManager, DatabaseConfig, RunConfig

# Application metadata
APP_NAME = "fhir-to-omop"
APP_VERSION = "0.1.0"

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_THROTTLE_LIMIT = 4

# Derived-aggregate SQL scripts shipped with the package
DEFAULT_POST_PROCESSING_DIR = Path(__file__).resolve().parent.parent / "sql" / "post_processing"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


class Settings:
    """Application settings loaded from configuration manager and environment.

    Run options default to the ``FTO_*`` environment variables; the CLI can override
    every one of them per invocation.
    """

    def __init__(self):
        self._db_config: Optional[DatabaseConfig] = None
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("FTO_APP_NAME", APP_NAME)
        self.log_level = os.getenv("FTO_LOG_LEVEL", "INFO")

        # Run options
        self.bulk_load = _flag("FTO_BULK_LOAD", "true")
        self.single_step = os.getenv("FTO_SINGLE_STEP", "All")
        self.write_medication_statements = _flag("FTO_WRITE_MEDICATION_STATEMENTS", "true")
        self.dictionary_load_in_ram = _flag("FTO_DICTIONARY_LOAD_IN_RAM", "true")
        self.chunk_size = int(os.getenv("FTO_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))
        self.throttle_limit = int(os.getenv("FTO_THROTTLE_LIMIT", str(DEFAULT_THROTTLE_LIMIT)))
        self.max_chunk_retries = int(os.getenv("FTO_MAX_CHUNK_RETRIES", "3"))
        self.begin_date = os.getenv("FTO_BEGIN_DATE", "1800-01-01")
        self.end_date = os.getenv("FTO_END_DATE", "2099-12-31")

        # Skip-rate guard
        self.circuit_breaker_enabled = _flag("FTO_CIRCUIT_BREAKER_ENABLED", "false")
        self.circuit_breaker_threshold = float(os.getenv("FTO_CIRCUIT_BREAKER_THRESHOLD", "0.5"))
        self.circuit_breaker_min_requests = int(os.getenv("FTO_CIRCUIT_BREAKER_MIN_REQUESTS", "10"))
        self.circuit_breaker_window_size = int(os.getenv("FTO_CIRCUIT_BREAKER_WINDOW_SIZE", "100"))

        # Mapping configuration
        self.vocabulary_routing_file = os.getenv("FTO_VOCABULARY_ROUTING_FILE")
        self.identifier_systems = tuple(
            system.strip() for system in os.getenv("FTO_IDENTIFIER_SYSTEMS", "").split(",") if system.strip()
        )
        self.post_processing_dir = Path(os.getenv("FTO_POST_PROCESSING_DIR", str(DEFAULT_POST_PROCESSING_DIR)))

    @property
    def db_config(self) -> DatabaseConfig:
        """Database configuration, loaded lazily on first access."""
        if self._db_config is None:
            self._db_config = self.config_manager.get_database_config()
        return self._db_config

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    def run_config(self, **overrides) -> RunConfig:
        """Run options from these settings; non-None overrides win.

        Raises:
            pydantic.ValidationError: If an option is out of range
        """
        values = {
            "bulk_load": self.bulk_load,
            "single_step": self.single_step,
            "write_medication_statements": self.write_medication_statements,
            "dictionary_load_in_ram": self.dictionary_load_in_ram,
            "chunk_size": self.chunk_size,
            "throttle_limit": self.throttle_limit,
            "max_chunk_retries": self.max_chunk_retries,
            "begin_date": self.begin_date,
            "end_date": self.end_date,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return RunConfig(**values)

    def circuit_breaker_config(self) -> Optional[CircuitBreakerConfig]:
        if not self.circuit_breaker_enabled:
            return None
        return CircuitBreakerConfig(
            failure_threshold_percent=self.circuit_breaker_threshold * 100,
            window_size=self.circuit_breaker_window_size,
            min_records_before_check=self.circuit_breaker_min_requests,
        )

    def get_connection_string(self) -> str:
        return self.db_config.get_connection_string()


# Global settings instance
settings = Settings()
