"""DuckDB Storage Adapter.

This adapter implements the EtlStore contract on DuckDB, an in-process OLAP database.
It holds the staged FHIR resources, the OMOP vocabulary and the OMOP CDM target tables
of a run in one database file (or in memory for tests).

Security Impact:
    - Database path is validated before the first connection
    - Connection credentials are managed via configuration

Architecture:
    - Implements EtlStore (Hexagonal Architecture) through SqlStore
    - One shared connection; every operation runs on its own cursor so worker
      threads never share a statement
    - Each operation is one explicit transaction
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, Optional, Sequence, Union

import duckdb
import pandas as pd

from fhir_to_omop.adapters.storage.base import DEFAULT_STAGING_TABLE, SqlStore
from fhir_to_omop.domain.ports import StorageError
from fhir_to_omop.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)


class DuckDBAdapter(SqlStore):
    """DuckDB implementation of the ETL storage ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        staging_table: Table holding the staged FHIR resources
        post_processing_dir: Directory of the post-processing SQL scripts

    Example Usage:
        ```python
        from fhir_to_omop.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        result = adapter.initialize_schema()
        if result.is_success():
            for chunk in adapter.read_chunks("Condition", chunk_size=1000):
                ...
        adapter.close()
        ```
    """

    placeholder = "?"
    json_type = "VARCHAR"

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        staging_table: str = DEFAULT_STAGING_TABLE,
        post_processing_dir: Optional[Union[str, Path]] = None,
    ):
        super().__init__(staging_table=staging_table, post_processing_dir=post_processing_dir)

        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        elif db_path:
            self.db_path = db_path
        else:
            self.db_path = ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connect_lock = Lock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the shared DuckDB connection.

        Raises:
            StorageError: If the database cannot be opened
        """
        with self._connect_lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path)
                    logger.info(f"Connected to DuckDB database: {self.db_path}")
                except Exception as e:
                    raise StorageError(
                        f"Failed to connect to DuckDB: {str(e)}",
                        operation="connect",
                        details={"db_path": self.db_path}
                    )
            return self._connection

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cursor = self._get_connection().cursor()
        try:
            cursor.begin()
            yield cursor
            cursor.commit()
        except Exception:
            cursor.rollback()
            raise
        finally:
            cursor.close()

    def _read_frame(self, statement: str, params: Sequence[Any] = ()) -> pd.DataFrame:
        cursor = self._get_connection().cursor()
        try:
            if params:
                return cursor.execute(statement, list(params)).df()
            return cursor.execute(statement).df()
        finally:
            cursor.close()

    def _rowcount(self, cursor) -> int:
        row = cursor.fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")
