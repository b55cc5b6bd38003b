"""Shared SQL Storage Implementation.

``SqlStore`` implements every storage port of the ETL (staging reader, OMOP writer,
identity store, reschedule hook, vocabulary store, post-processor, schema manager)
on top of a small set of driver hooks. The DuckDB and PostgreSQL adapters supply
the connection handling, the parameter placeholder and the bulk insert.

Architecture:
    - Implements EtlStore (Hexagonal Architecture)
    - Statements are written with ``?`` placeholders and translated per driver
    - One writer call is one transaction: delete markers first, then inserts
    - Surrogate keys left empty by the mappers are assigned here as MAX(key) + 1,
      cached per table; only the committing thread writes
    - Vocabulary snapshots are read into pandas DataFrames
"""

import json
import logging
from abc import abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence, Union, get_args

import pandas as pd

from fhir_to_omop.domain.models import (
    TARGET_RECORD_TYPES,
    Concept,
    IdentityKind,
    IdentityRecord,
    MappingEntry,
    MappingKind,
    MedicationIdMap,
    OmopRecord,
    SourceResource,
    SourceToConceptEntry,
    Tombstone,
)
from fhir_to_omop.domain.mappers.fhir import split_key
from fhir_to_omop.domain.ports import EtlStore, Result, StorageError

logger = logging.getLogger(__name__)

DEFAULT_STAGING_TABLE = "fhir_resources"
DEFAULT_POST_PROCESSING_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "post_processing"

# Tables filled by the post-processing scripts
DERIVED_TABLE_DDL = {
    "condition_era": """
        CREATE TABLE IF NOT EXISTS condition_era (
            condition_era_id BIGINT,
            person_id BIGINT NOT NULL,
            condition_concept_id BIGINT NOT NULL,
            condition_era_start_date DATE NOT NULL,
            condition_era_end_date DATE NOT NULL,
            condition_occurrence_count INTEGER
        )
    """,
    "drug_era": """
        CREATE TABLE IF NOT EXISTS drug_era (
            drug_era_id BIGINT,
            person_id BIGINT NOT NULL,
            drug_concept_id BIGINT NOT NULL,
            drug_era_start_date DATE NOT NULL,
            drug_era_end_date DATE NOT NULL,
            drug_exposure_count INTEGER,
            gap_days INTEGER
        )
    """,
    "observation_period": """
        CREATE TABLE IF NOT EXISTS observation_period (
            observation_period_id BIGINT,
            person_id BIGINT NOT NULL,
            observation_period_start_date DATE NOT NULL,
            observation_period_end_date DATE NOT NULL,
            period_type_concept_id BIGINT NOT NULL
        )
    """,
}

VOCABULARY_TABLE_DDL = {
    "concept": """
        CREATE TABLE IF NOT EXISTS concept (
            concept_id BIGINT NOT NULL,
            concept_name VARCHAR,
            domain_id VARCHAR,
            vocabulary_id VARCHAR NOT NULL,
            concept_class_id VARCHAR,
            standard_concept VARCHAR,
            concept_code VARCHAR NOT NULL,
            valid_start_date DATE,
            valid_end_date DATE,
            invalid_reason VARCHAR
        )
    """,
    "source_to_concept_map": """
        CREATE TABLE IF NOT EXISTS source_to_concept_map (
            source_code VARCHAR NOT NULL,
            source_concept_id BIGINT DEFAULT 0,
            source_vocabulary_id VARCHAR NOT NULL,
            source_code_description VARCHAR,
            target_concept_id BIGINT NOT NULL,
            target_vocabulary_id VARCHAR,
            valid_start_date DATE,
            valid_end_date DATE,
            invalid_reason VARCHAR
        )
    """,
    "concept_mapping": """
        CREATE TABLE IF NOT EXISTS concept_mapping (
            kind VARCHAR NOT NULL,
            source_code VARCHAR NOT NULL,
            source_concept_id BIGINT DEFAULT 0,
            target_concept_id BIGINT DEFAULT 0,
            target_domain_id VARCHAR,
            source_valid_start_date DATE,
            source_valid_end_date DATE,
            mapping_valid_start_date DATE,
            mapping_valid_end_date DATE
        )
    """,
}

_IDENTITY_TABLES = {
    IdentityKind.PERSON: ("person", "person_id"),
    IdentityKind.ENCOUNTER: ("visit_occurrence", "visit_occurrence_id"),
    IdentityKind.MEDICATION: ("medication_id_map", "fhir_omop_id"),
}

_SQL_TYPES = {
    int: "BIGINT",
    float: "FLOAT8",
    str: "VARCHAR",
    bool: "BOOLEAN",
    datetime: "TIMESTAMP",
    date: "DATE",
}

_CONCEPT_COLUMNS = (
    "concept_id, concept_code, vocabulary_id, domain_id, concept_name, concept_class_id, "
    "valid_start_date, valid_end_date"
)
_MAPPING_COLUMNS = (
    "kind, source_code, source_concept_id, target_concept_id, target_domain_id, "
    "source_valid_start_date, source_valid_end_date, mapping_valid_start_date, mapping_valid_end_date"
)
_SOURCE_TO_CONCEPT_COLUMNS = (
    "source_code, source_concept_id, source_vocabulary_id, source_code_description, target_concept_id, "
    "target_vocabulary_id, valid_start_date, valid_end_date, invalid_reason"
)


def _sql_type(annotation: Any) -> str:
    for candidate in (annotation, *get_args(annotation)):
        if candidate in _SQL_TYPES:
            return _SQL_TYPES[candidate]
    return "VARCHAR"


def _latest_per_key(records: list[OmopRecord]) -> list[OmopRecord]:
    """Keep only the last record of every pre-assigned key, in chunk order."""
    seen: set[int] = set()
    kept: list[OmopRecord] = []
    for record in reversed(records):
        key = getattr(record, record.primary_key)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        kept.append(record)
    kept.reverse()
    return kept


def target_table_ddl(record_type: type[OmopRecord]) -> str:
    """CREATE TABLE statement derived from the fields of a target record type."""
    columns = [
        f"{name} {_sql_type(field.annotation)}"
        for name, field in record_type.model_fields.items()
    ]
    return f"CREATE TABLE IF NOT EXISTS {record_type.table_name} ({', '.join(columns)})"


def _missing(value: Any) -> bool:
    return value is None or (not isinstance(value, (str, bytes, dict, list)) and pd.isna(value))


def _int(value: Any) -> Optional[int]:
    return None if _missing(value) else int(value)


def _str(value: Any) -> Optional[str]:
    return None if _missing(value) else str(value)


def _date(value: Any) -> Optional[date]:
    if _missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


class SqlStore(EtlStore):
    """Storage ports over a DB-API style connection.

    Parameters:
        staging_table: Table holding the staged FHIR resources
        post_processing_dir: Directory of the ``<name>.sql`` post-processing scripts
    """

    placeholder = "?"
    json_type = "VARCHAR"

    def __init__(
        self,
        staging_table: str = DEFAULT_STAGING_TABLE,
        post_processing_dir: Optional[Union[str, Path]] = None,
    ):
        self.staging_table = staging_table
        self.post_processing_dir = Path(post_processing_dir or DEFAULT_POST_PROCESSING_DIR)
        self._next_keys: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    @abstractmethod
    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Yield a cursor; commit on success, roll back on error."""
        pass

    @abstractmethod
    def _read_frame(self, statement: str, params: Sequence[Any] = ()) -> pd.DataFrame:
        pass

    @abstractmethod
    def _rowcount(self, cursor) -> int:
        """Rows affected by the last DELETE / UPDATE of the cursor."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection and release resources."""
        pass

    def _insert_rows(self, cursor, table: str, columns: Sequence[str], rows: list[tuple]) -> None:
        values = ", ".join([self.placeholder] * len(columns))
        cursor.executemany(f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({values})", rows)

    def _sql(self, statement: str) -> str:
        if self.placeholder == "?":
            return statement
        return statement.replace("?", self.placeholder)

    def _fetchall(self, statement: str, params: Sequence[Any] = ()) -> list[tuple]:
        with self._transaction() as cursor:
            if params:
                cursor.execute(self._sql(statement), list(params))
            else:
                cursor.execute(statement)
            return cursor.fetchall()

    # ------------------------------------------------------------------
    # SchemaManager
    # ------------------------------------------------------------------

    def schema_statements(self) -> list[str]:
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self.staging_table} (
                id BIGINT NOT NULL,
                fhir_id VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                data {self.json_type},
                last_updated_at TIMESTAMP,
                is_deleted BOOLEAN DEFAULT false
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{self.staging_table}_type ON {self.staging_table}(type, id)",
            f"CREATE INDEX IF NOT EXISTS idx_{self.staging_table}_fhir_id ON {self.staging_table}(fhir_id)",
        ]
        statements.extend(VOCABULARY_TABLE_DDL.values())
        statements.append("CREATE INDEX IF NOT EXISTS idx_concept_code ON concept(vocabulary_id, concept_code)")
        statements.append("CREATE INDEX IF NOT EXISTS idx_concept_mapping_code ON concept_mapping(kind, source_code)")

        for record_type in TARGET_RECORD_TYPES:
            table = record_type.table_name
            statements.append(target_table_ddl(record_type))
            statements.append(f"CREATE INDEX IF NOT EXISTS idx_{table}_logical_id ON {table}(fhir_logical_id)")
            statements.append(f"CREATE INDEX IF NOT EXISTS idx_{table}_identifier ON {table}(fhir_identifier)")
        statements.extend(DERIVED_TABLE_DDL.values())
        return statements

    def initialize_schema(self) -> Result[None]:
        """Create staging, vocabulary, target and derived tables when missing.

        Returns:
            Result[None]: Success or a StorageError failure
        """
        try:
            with self._transaction() as cursor:
                for statement in self.schema_statements():
                    cursor.execute(statement)
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)
        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # ResourceReader
    # ------------------------------------------------------------------

    def read_chunks(
        self,
        resource_type: str,
        chunk_size: int,
        begin: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_deleted: bool = False
    ) -> Iterator[list[SourceResource]]:
        """Keyset-paginated read of the staging table ordered by id.

        Raises:
            StorageError: If a page cannot be read
        """
        last_id: Optional[int] = None
        while True:
            clauses = ["type = ?"]
            params: list[Any] = [resource_type]
            if not include_deleted:
                clauses.append("is_deleted = false")
            if begin is not None and end is not None:
                clauses.append("last_updated_at BETWEEN ? AND ?")
                params.extend([begin, end])
            if last_id is not None:
                clauses.append("id > ?")
                params.append(last_id)

            statement = (
                f"SELECT id, fhir_id, type, data, last_updated_at, is_deleted FROM {self.staging_table} "
                f"WHERE {' AND '.join(clauses)} ORDER BY id LIMIT {int(chunk_size)}"
            )
            try:
                rows = self._fetchall(statement, params)
            except Exception as e:
                raise StorageError(
                    f"Failed to read [{resource_type}] resources: {str(e)}",
                    operation="read_chunks",
                    details={"resource_type": resource_type, "after_id": last_id},
                ) from e

            if not rows:
                return
            yield [self._to_resource(row) for row in rows]
            last_id = rows[-1][0]
            if len(rows) < chunk_size:
                return

    @staticmethod
    def _to_resource(row: tuple) -> SourceResource:
        data = row[3]
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        return SourceResource(
            id=row[0],
            fhir_id=row[1],
            type=row[2],
            data=data or {},
            last_updated_at=row[4],
            is_deleted=bool(row[5]),
        )

    def stage_resources(self, resources: Sequence[dict], last_updated_at: Optional[datetime] = None) -> Result[int]:
        """Append FHIR resources to the staging table (ids continue after the current maximum)."""
        if not resources:
            return Result.success_result(0)
        try:
            with self._transaction() as cursor:
                cursor.execute(f"SELECT COALESCE(MAX(id), 0) FROM {self.staging_table}")
                next_id = int(cursor.fetchall()[0][0]) + 1
                timestamp = last_updated_at or datetime.now()
                rows = [
                    (next_id + offset, str(resource["id"]), resource["resourceType"], json.dumps(resource), timestamp, False)
                    for offset, resource in enumerate(resources)
                ]
                self._insert_rows(
                    cursor,
                    self.staging_table,
                    ("id", "fhir_id", "type", "data", "last_updated_at", "is_deleted"),
                    rows,
                )
            logger.info(f"Staged {len(rows)} FHIR resources")
            return Result.success_result(len(rows))
        except (KeyError, TypeError) as e:
            return Result.failure_result(f"Invalid FHIR resource: {e}", error_type="ValidationError")
        except Exception as e:
            error_msg = f"Failed to stage resources: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(StorageError(error_msg, operation="stage_resources"), error_type="StorageError")

    # ------------------------------------------------------------------
    # RescheduleHook
    # ------------------------------------------------------------------

    def reschedule(self, resource_id: str, after: datetime) -> None:
        """Move the watermark of a staged resource.

        ``resource_id`` carries the key prefix, which selects the resource type; only
        resources of that type are moved.
        """
        resource_type, fhir_id = split_key(resource_id)
        statement = f"UPDATE {self.staging_table} SET last_updated_at = ? WHERE fhir_id = ?"
        params: list[Any] = [after, fhir_id]
        if resource_type is not None:
            statement += " AND type = ?"
            params.append(resource_type)
        try:
            with self._transaction() as cursor:
                cursor.execute(self._sql(statement), params)
        except Exception as e:
            raise StorageError(
                f"Failed to reschedule {resource_id}: {str(e)}",
                operation="reschedule",
                details={"resource_id": resource_id},
            ) from e

    # ------------------------------------------------------------------
    # OmopWriter
    # ------------------------------------------------------------------

    def write_chunk(self, records: Sequence[Union[OmopRecord, Tombstone]]) -> Result[int]:
        """Write one chunk in one transaction; delete markers are applied first."""
        tombstones = [record for record in records if isinstance(record, Tombstone)]
        targets = [record for record in records if not isinstance(record, Tombstone)]
        next_keys = dict(self._next_keys)

        try:
            with self._transaction() as cursor:
                for tombstone in tombstones:
                    self._apply_tombstone(cursor, tombstone)

                grouped: dict[type, list[OmopRecord]] = {}
                for record in targets:
                    grouped.setdefault(type(record), []).append(record)

                written = 0
                for record_type, group in grouped.items():
                    group = _latest_per_key(group)
                    self._delete_keys(cursor, record_type, group)
                    rows = [self._assign_key(cursor, record, next_keys) for record in group]
                    columns = list(rows[0].keys())
                    self._insert_rows(
                        cursor, record_type.table_name, columns, [tuple(row[c] for c in columns) for row in rows]
                    )
                    written += len(rows)
        except Exception as e:
            error_msg = f"Failed to write chunk of {len(records)} records: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(
                StorageError(error_msg, operation="write_chunk", details={"records": len(records)}),
                error_type="StorageError",
            )

        self._next_keys = next_keys
        logger.debug(f"Committed {written} records and {len(tombstones)} delete markers")
        return Result.success_result(written)

    def _apply_tombstone(self, cursor, tombstone: Tombstone) -> None:
        clauses, params = [], []
        if tombstone.fhir_logical_id:
            clauses.append("fhir_logical_id = ?")
            params.append(tombstone.fhir_logical_id)
        if tombstone.fhir_identifier:
            clauses.append("fhir_identifier = ?")
            params.append(tombstone.fhir_identifier)
        if clauses:
            cursor.execute(self._sql(f"DELETE FROM {tombstone.table_name} WHERE {' OR '.join(clauses)}"), params)

    def _delete_keys(self, cursor, record_type: type[OmopRecord], records: list[OmopRecord]) -> None:
        """Remove rows holding a pre-assigned key of the chunk; the chunk's record replaces them."""
        keys = [getattr(record, record_type.primary_key) for record in records]
        keys = [key for key in keys if key is not None]
        if keys:
            cursor.execute(
                self._sql(
                    f"DELETE FROM {record_type.table_name} "
                    f"WHERE {record_type.primary_key} IN ({self._in_clause(keys)})"
                ),
                keys,
            )

    def _assign_key(self, cursor, record: OmopRecord, next_keys: dict[str, int]) -> dict[str, Any]:
        row = record.row()
        table, key = record.table_name, record.primary_key
        if table not in next_keys:
            cursor.execute(f"SELECT COALESCE(MAX({key}), 0) FROM {table}")
            next_keys[table] = int(cursor.fetchall()[0][0]) + 1

        if row.get(key) is None:
            row[key] = next_keys[table]
            next_keys[table] += 1
        else:
            next_keys[table] = max(next_keys[table], int(row[key]) + 1)
        return row

    def delete_step_data(self, table_names: Sequence[str], key_prefix: str) -> Result[int]:
        """Delete rows whose fhir_logical_id or fhir_identifier starts with ``key_prefix``."""
        pattern = f"{key_prefix}%"
        try:
            deleted = 0
            with self._transaction() as cursor:
                for table in table_names:
                    cursor.execute(
                        self._sql(f"DELETE FROM {table} WHERE fhir_logical_id LIKE ? OR fhir_identifier LIKE ?"),
                        [pattern, pattern],
                    )
                    deleted += self._rowcount(cursor)
            self._next_keys.clear()
            return Result.success_result(deleted)
        except Exception as e:
            error_msg = f"Failed to delete previous data from {list(table_names)}: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(StorageError(error_msg, operation="delete_step_data"), error_type="StorageError")

    def reset_target_tables(self) -> Result[None]:
        tables = [record_type.table_name for record_type in reversed(TARGET_RECORD_TYPES)]
        tables.extend(DERIVED_TABLE_DDL)
        try:
            with self._transaction() as cursor:
                for table in tables:
                    cursor.execute(f"DELETE FROM {table}")
            self._next_keys.clear()
            logger.info(f"Emptied {len(tables)} target tables")
            return Result.success_result(None)
        except Exception as e:
            error_msg = f"Failed to reset target tables: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(StorageError(error_msg, operation="reset_target_tables"), error_type="StorageError")

    # ------------------------------------------------------------------
    # IdentityStore
    # ------------------------------------------------------------------

    def _find_identity(self, kind: IdentityKind, column: str, key: str) -> Optional[int]:
        table, id_column = _IDENTITY_TABLES[kind]
        try:
            rows = self._fetchall(f"SELECT {id_column} FROM {table} WHERE {column} = ? LIMIT 1", [key])
        except Exception as e:
            raise StorageError(
                f"Failed to look up [{kind.value}] {key}: {str(e)}", operation="find_identity"
            ) from e
        return int(rows[0][0]) if rows else None

    def find_by_logical_id(self, kind: IdentityKind, logical_id: str) -> Optional[int]:
        return self._find_identity(kind, "fhir_logical_id", logical_id)

    def find_by_identifier(self, kind: IdentityKind, identifier: str) -> Optional[int]:
        return self._find_identity(kind, "fhir_identifier", identifier)

    def load_identities(self, kind: IdentityKind) -> list[IdentityRecord]:
        table, id_column = _IDENTITY_TABLES[kind]
        rows = self._fetchall(f"SELECT {id_column}, fhir_logical_id, fhir_identifier FROM {table}")
        return [
            IdentityRecord(kind=kind, surrogate_id=row[0], logical_id=row[1], external_identifier=row[2])
            for row in rows
        ]

    def max_surrogate_id(self, kind: IdentityKind) -> int:
        table, id_column = _IDENTITY_TABLES[kind]
        rows = self._fetchall(f"SELECT COALESCE(MAX({id_column}), 0) FROM {table}")
        return int(rows[0][0])

    def find_medication(self, logical_id: Optional[str], identifier: Optional[str]) -> Optional[MedicationIdMap]:
        rows = self._fetchall(
            "SELECT fhir_omop_id, type, atc, fhir_logical_id, fhir_identifier FROM medication_id_map "
            "WHERE fhir_logical_id = ? OR fhir_identifier = ? LIMIT 1",
            [logical_id, identifier],
        )
        return self._to_medication(rows[0]) if rows else None

    def load_medications(self) -> list[MedicationIdMap]:
        rows = self._fetchall("SELECT fhir_omop_id, type, atc, fhir_logical_id, fhir_identifier FROM medication_id_map")
        return [self._to_medication(row) for row in rows]

    @staticmethod
    def _to_medication(row: tuple) -> MedicationIdMap:
        return MedicationIdMap(
            fhir_omop_id=row[0], type=row[1] or "Medication", atc=row[2], fhir_logical_id=row[3], fhir_identifier=row[4]
        )

    # ------------------------------------------------------------------
    # VocabularyStore
    # ------------------------------------------------------------------

    @staticmethod
    def _in_clause(values: Sequence[Any]) -> str:
        return ", ".join(["?"] * len(values))

    def load_concepts(self, vocabulary_ids: Sequence[str]) -> list[Concept]:
        if not vocabulary_ids:
            return []
        frame = self._read_frame(
            f"SELECT {_CONCEPT_COLUMNS} FROM concept WHERE vocabulary_id IN ({self._in_clause(vocabulary_ids)})",
            list(vocabulary_ids),
        )
        return [self._to_concept(row) for row in frame.itertuples(index=False, name=None)]

    def find_concepts(self, vocabulary_id: str, code: str) -> list[Concept]:
        rows = self._fetchall(
            f"SELECT {_CONCEPT_COLUMNS} FROM concept WHERE vocabulary_id = ? AND concept_code = ?",
            [vocabulary_id, code],
        )
        return [self._to_concept(row) for row in rows]

    @staticmethod
    def _to_concept(row: tuple) -> Concept:
        return Concept(
            concept_id=_int(row[0]),
            concept_code=_str(row[1]),
            vocabulary_id=_str(row[2]),
            domain_id=_str(row[3]),
            concept_name=_str(row[4]),
            concept_class_id=_str(row[5]),
            valid_start_date=_date(row[6]),
            valid_end_date=_date(row[7]),
        )

    def load_mappings(self, kinds: Sequence[MappingKind]) -> list[MappingEntry]:
        if not kinds:
            return []
        frame = self._read_frame(
            f"SELECT {_MAPPING_COLUMNS} FROM concept_mapping WHERE kind IN ({self._in_clause(kinds)})",
            [kind.value for kind in kinds],
        )
        return [self._to_mapping(row) for row in frame.itertuples(index=False, name=None)]

    def find_mappings(self, kind: MappingKind, code: str) -> list[MappingEntry]:
        rows = self._fetchall(
            f"SELECT {_MAPPING_COLUMNS} FROM concept_mapping WHERE kind = ? AND LOWER(source_code) = LOWER(?)",
            [kind.value, code],
        )
        return [self._to_mapping(row) for row in rows]

    @staticmethod
    def _to_mapping(row: tuple) -> MappingEntry:
        return MappingEntry(
            kind=MappingKind(row[0]),
            source_code=_str(row[1]),
            source_concept_id=_int(row[2]) or 0,
            target_concept_id=_int(row[3]) or 0,
            target_domain_id=_str(row[4]),
            source_valid_start_date=_date(row[5]),
            source_valid_end_date=_date(row[6]),
            mapping_valid_start_date=_date(row[7]),
            mapping_valid_end_date=_date(row[8]),
        )

    def load_source_to_concept(self) -> list[SourceToConceptEntry]:
        frame = self._read_frame(f"SELECT {_SOURCE_TO_CONCEPT_COLUMNS} FROM source_to_concept_map")
        return [self._to_source_to_concept(row) for row in frame.itertuples(index=False, name=None)]

    def find_source_to_concept(self, source_vocabulary_id: str, code: str) -> list[SourceToConceptEntry]:
        rows = self._fetchall(
            f"SELECT {_SOURCE_TO_CONCEPT_COLUMNS} FROM source_to_concept_map "
            f"WHERE source_vocabulary_id = ? AND source_code = ?",
            [source_vocabulary_id, code],
        )
        return [self._to_source_to_concept(row) for row in rows]

    @staticmethod
    def _to_source_to_concept(row: tuple) -> SourceToConceptEntry:
        return SourceToConceptEntry(
            source_code=_str(row[0]),
            source_concept_id=_int(row[1]) or 0,
            source_vocabulary_id=_str(row[2]),
            source_code_description=_str(row[3]),
            target_concept_id=_int(row[4]) or 0,
            target_vocabulary_id=_str(row[5]),
            valid_start_date=_date(row[6]),
            valid_end_date=_date(row[7]),
            invalid_reason=_str(row[8]),
        )

    # ------------------------------------------------------------------
    # PostProcessor
    # ------------------------------------------------------------------

    def run_scripts(self, script_names: Sequence[str]) -> Result[int]:
        """Execute ``<post_processing_dir>/<name>.sql`` for each name, each in its own transaction."""
        executed = 0
        for name in script_names:
            script = self.post_processing_dir / f"{name}.sql"
            if not script.exists():
                error_msg = f"Post-processing script not found: {script}"
                logger.error(error_msg)
                return Result.failure_result(
                    StorageError(error_msg, operation="run_scripts", details={"script": name}),
                    error_type="StorageError",
                )

            logger.info(f"==== Executing SQL script: {script.name}. Please be patient, this may take a while ====")
            try:
                with self._transaction() as cursor:
                    cursor.execute(script.read_text(encoding="utf-8"))
            except Exception as e:
                error_msg = f"Failed at SQL script {script.name}: {str(e)}"
                logger.error(error_msg)
                return Result.failure_result(
                    StorageError(error_msg, operation="run_scripts", details={"script": name}),
                    error_type="StorageError",
                )
            executed += 1
        return Result.success_result(executed)
