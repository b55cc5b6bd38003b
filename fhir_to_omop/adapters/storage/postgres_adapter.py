"""PostgreSQL Storage Adapter.

This adapter implements the EtlStore contract on PostgreSQL, the production target
of the OMOP CDM tables.

Security Impact:
    - Connection credentials are managed via configuration and never logged
    - SSL mode defaults to 'prefer'

Architecture:
    - Implements EtlStore (Hexagonal Architecture) through SqlStore
    - Thread-safe connection pooling (psycopg2 ThreadedConnectionPool); every
      operation borrows one connection and returns it
    - Bulk inserts use execute_values
    - Vocabulary snapshots are read with pandas over a SQLAlchemy engine
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence, Union
from urllib.parse import quote_plus

import pandas as pd
from psycopg2 import pool
from psycopg2.extras import execute_values
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from fhir_to_omop.adapters.storage.base import DEFAULT_STAGING_TABLE, SqlStore
from fhir_to_omop.domain.ports import StorageError
from fhir_to_omop.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)


class PostgreSQLAdapter(SqlStore):
    """PostgreSQL implementation of the ETL storage ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string
        host: Database host (required if no connection_string or db_config)
        port: Database port (default: 5432)
        database: Database name (required if no connection_string or db_config)
        username: Database username
        password: Database password
        ssl_mode: SSL mode (require, prefer, disable)
        db_schema: Schema holding the staging and OMOP tables
        pool_size: Connection pool size (default: 5)
        max_overflow: Maximum connection pool overflow (default: 10)

    Example Usage:
        ```python
        adapter = PostgreSQLAdapter(
            host="localhost",
            database="omop",
            username="etl",
            password="secret",
            db_schema="cds_cdm",
        )
        adapter.initialize_schema()
        ```
    """

    placeholder = "%s"
    json_type = "JSONB"

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
        host: Optional[str] = None,
        port: int = 5432,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ssl_mode: Optional[str] = None,
        db_schema: Optional[str] = None,
        pool_size: int = 5,
        max_overflow: int = 10,
        staging_table: str = DEFAULT_STAGING_TABLE,
        post_processing_dir: Optional[Union[str, Path]] = None,
    ):
        """Initialize PostgreSQL adapter.

        Note:
            Priority order: db_config > connection_string > individual parameters.
            The pool is created lazily on the first operation.

        Raises:
            StorageError: If the configuration is not a PostgreSQL one or lacks host/database
        """
        super().__init__(staging_table=staging_table, post_processing_dir=post_processing_dir)
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._engine: Optional[Engine] = None

        if db_config:
            if db_config.db_type != "postgresql":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL adapter",
                    operation="__init__"
                )

            if db_config.connection_string:
                self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
            else:
                if not all([db_config.host, db_config.database]):
                    raise StorageError(
                        "PostgreSQL DatabaseConfig requires host and database",
                        operation="__init__"
                    )
                self.connection_params = {
                    "host": db_config.host,
                    "port": db_config.port or 5432,
                    "database": db_config.database,
                    "user": db_config.username,
                    "sslmode": db_config.ssl_mode or "prefer",
                }
                if db_config.password:
                    self.connection_params["password"] = db_config.password.get_secret_value()

            self.db_schema = db_config.db_schema
            self.pool_size = db_config.pool_size
            self.max_overflow = db_config.max_overflow

        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.db_schema = db_schema
            self.pool_size = pool_size
            self.max_overflow = max_overflow
        else:
            if not all([host, database]):
                raise StorageError(
                    "PostgreSQL adapter requires either db_config, connection_string, or (host and database)",
                    operation="__init__"
                )
            self.connection_params = {
                "host": host,
                "port": port,
                "database": database,
                "user": username,
                "password": password,
                "sslmode": ssl_mode or "prefer",
            }
            self.db_schema = db_schema
            self.pool_size = pool_size
            self.max_overflow = max_overflow

        if self.db_schema:
            self.connection_params["options"] = f"-c search_path={self.db_schema}"

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create PostgreSQL connection pool.

        Raises:
            StorageError: If the pool cannot be created
        """
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.pool_size + self.max_overflow,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except Exception as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect",
                    details={"host": self.connection_params.get("host", "N/A")}
                )
        return self._connection_pool

    def _get_connection(self):
        """Get a connection from the pool.

        Raises:
            StorageError: If connection cannot be obtained
        """
        try:
            return self._get_connection_pool().getconn()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to get connection from pool: {str(e)}",
                operation="get_connection"
            )

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except Exception as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._return_connection(conn)

    def _connection_string(self) -> str:
        if "dsn" in self.connection_params:
            return self.connection_params["dsn"]

        password = self.connection_params.get("password") or ""
        username = self.connection_params.get("user") or ""
        host = self.connection_params.get("host", "")
        port = self.connection_params.get("port", 5432)
        database = self.connection_params.get("database", "")
        sslmode = self.connection_params.get("sslmode", "prefer")
        return (
            f"postgresql://{quote_plus(username)}:{quote_plus(password)}@{host}:{port}/{database}"
            f"?sslmode={sslmode}"
        )

    def _get_engine(self) -> Engine:
        if self._engine is None:
            connect_args = {}
            if self.db_schema:
                connect_args["options"] = f"-c search_path={self.db_schema}"
            self._engine = create_engine(self._connection_string(), pool_pre_ping=True, connect_args=connect_args)
        return self._engine

    def _read_frame(self, statement: str, params: Sequence[Any] = ()) -> pd.DataFrame:
        return pd.read_sql_query(self._sql(statement), self._get_engine(), params=tuple(params) or None)

    def _rowcount(self, cursor) -> int:
        return max(cursor.rowcount, 0)

    def _insert_rows(self, cursor, table: str, columns: Sequence[str], rows: list[tuple]) -> None:
        execute_values(
            cursor,
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES %s",
            rows,
            page_size=1000,
        )

    def close(self) -> None:
        """Close storage connection pool and release resources."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
