"""
Watermark Store

Persists the last successfully processed cursor value per
(schema, table, cursor column) in a tracking table on the destination
PostgreSQL database. The table is created on first use.

DATETIME/DATE cursors are kept in last_value (TIMESTAMP), INT/BIGINT
identity cursors in last_value_int (BIGINT); cursor_type records which.

Read failures are never fatal: they are logged and reported as "no
watermark", which forces a full re-scan instead of silently skipping rows.
Write failures are raised so the orchestrator can mark the run failed.
"""

from typing import Any, List, Optional, Tuple
from airflow.providers.postgres.hooks.postgres import PostgresHook
from datetime import date, datetime
from decimal import Decimal
from psycopg2 import sql
import logging

from watermark_sync import config
from watermark_sync.errors import WatermarkReadError, WatermarkWriteError
from watermark_sync.models import (
    CURSOR_TYPE_DATETIME,
    CURSOR_TYPE_INT,
    TableKey,
    WatermarkRecord,
)

logger = logging.getLogger(__name__)


def cursor_type_of(value: Any) -> str:
    """
    Classify a cursor value for storage.

    Raises:
        WatermarkWriteError: For cursor types the tracking table can't hold
    """
    if isinstance(value, (datetime, date)):
        return CURSOR_TYPE_DATETIME
    if isinstance(value, int) and not isinstance(value, bool):
        return CURSOR_TYPE_INT
    # NUMERIC(p, 0) identity columns arrive from pyodbc as Decimal
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return CURSOR_TYPE_INT
    raise WatermarkWriteError(
        f"Unsupported cursor value {value!r} ({type(value).__name__}); "
        "use a DATETIME/DATE or INT/BIGINT cursor column"
    )


def _typed_columns(value: Any) -> Tuple[str, Optional[Any], Optional[int]]:
    """Split a cursor value into (cursor_type, last_value, last_value_int)."""
    cursor_type = cursor_type_of(value)
    if cursor_type == CURSOR_TYPE_INT:
        return cursor_type, None, int(value)
    return cursor_type, value, None


def _stored_value(cursor_type: str, last_value: Any, last_value_int: Any) -> Any:
    return last_value_int if cursor_type == CURSOR_TYPE_INT else last_value


class WatermarkStore:
    """
    Reads and upserts WatermarkRecords.

    Each call opens its own short-lived destination connection, so a store
    can be shared by orchestrators running in different threads.
    """

    def __init__(
        self,
        postgres_conn_id: str,
        schema_name: Optional[str] = None,
        table_name: Optional[str] = None,
    ):
        """
        Args:
            postgres_conn_id: Airflow connection ID for the destination database
            schema_name: Tracking table schema (defaults to WATERMARK_SCHEMA)
            table_name: Tracking table name (defaults to WATERMARK_TABLE)
        """
        default_schema, default_table = config.get_watermark_location()
        self.postgres_conn_id = postgres_conn_id
        self.schema_name = schema_name or default_schema
        self.table_name = table_name or default_table
        self._hook = PostgresHook(postgres_conn_id=postgres_conn_id)
        self._table_ready = False

    @property
    def _table(self) -> sql.Composed:
        return sql.SQL('{}.{}').format(
            sql.Identifier(self.schema_name),
            sql.Identifier(self.table_name),
        )

    def ensure_tracking_table(self) -> None:
        """
        Create the tracking table if it doesn't exist.

        Safe to call multiple times (idempotent).
        """
        ddl = sql.SQL("""
            CREATE SCHEMA IF NOT EXISTS {schema};

            CREATE TABLE IF NOT EXISTS {table} (
                id SERIAL PRIMARY KEY,
                schema_name VARCHAR(128) NOT NULL,
                table_name VARCHAR(128) NOT NULL,
                cursor_column_name VARCHAR(128) NOT NULL,
                cursor_type VARCHAR(16) NOT NULL DEFAULT 'datetime',
                last_value TIMESTAMP,
                last_value_int BIGINT,
                last_updated TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT {constraint} UNIQUE (schema_name, table_name, cursor_column_name),
                CONSTRAINT {check} CHECK (
                    (cursor_type = 'datetime' AND last_value IS NOT NULL)
                    OR (cursor_type = 'int' AND last_value_int IS NOT NULL)
                )
            );
        """).format(
            schema=sql.Identifier(self.schema_name),
            table=self._table,
            constraint=sql.Identifier(f"uq_{self.table_name}_key"),
            check=sql.Identifier(f"ck_{self.table_name}_value"),
        )

        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(ddl)
            conn.commit()
            self._table_ready = True
            logger.info(f"Ensured {self.schema_name}.{self.table_name} table exists")
        except Exception as e:
            logger.error(f"Error creating watermark table: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get_watermark(self, key: TableKey) -> Optional[Any]:
        """
        Get the last committed cursor value for a stream.

        Args:
            key: Replication stream key

        Returns:
            The watermark (datetime or int, matching the cursor column), or
            None if the stream never completed a run or the tracking table
            could not be read
        """
        record = self.get_watermark_record(key)
        return record.last_value if record else None

    def get_watermark_record(self, key: TableKey) -> Optional[WatermarkRecord]:
        """Like get_watermark, but returns the full record including last_updated."""
        try:
            row = self._fetch_record(key)
        except WatermarkReadError as e:
            logger.warning(f"{e} - treating {key} as never synced (full re-scan)")
            return None

        if not row:
            return None
        cursor_type, last_value, last_value_int, last_updated = row
        value = _stored_value(cursor_type, last_value, last_value_int)
        if value is None:
            return None
        return WatermarkRecord(
            key=key,
            last_value=value,
            last_updated=last_updated,
            cursor_type=cursor_type,
        )

    def _fetch_record(self, key: TableKey):
        query = sql.SQL("""
            SELECT cursor_type, last_value, last_value_int, last_updated
            FROM {table}
            WHERE schema_name = %s
              AND table_name = %s
              AND cursor_column_name = %s
        """).format(table=self._table)

        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    query,
                    (key.schema_name, key.table_name, key.cursor_column_name),
                )
                return cursor.fetchone()
        except Exception as e:
            raise WatermarkReadError(f"Error reading watermark for {key}: {e}") from e
        finally:
            if conn:
                conn.close()

    def set_watermark(self, key: TableKey, value: Any) -> None:
        """
        Upsert the watermark for a stream and stamp last_updated.

        The stored value never moves backwards: an older value than the one
        already recorded leaves it unchanged. A stream whose cursor type
        changed (e.g. DATETIME to BIGINT) takes the new value as-is.

        Args:
            key: Replication stream key
            value: New high watermark (datetime, date or integer)

        Raises:
            WatermarkWriteError: If the value could not be persisted
        """
        if value is None:
            raise WatermarkWriteError(f"Refusing to store an empty watermark for {key}")
        cursor_type, ts_value, int_value = _typed_columns(value)

        query = sql.SQL("""
            INSERT INTO {table} (
                schema_name, table_name, cursor_column_name,
                cursor_type, last_value, last_value_int, last_updated
            ) VALUES (%s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (schema_name, table_name, cursor_column_name)
            DO UPDATE SET
                last_value = CASE WHEN {table}.cursor_type = EXCLUDED.cursor_type
                    THEN GREATEST({table}.last_value, EXCLUDED.last_value)
                    ELSE EXCLUDED.last_value END,
                last_value_int = CASE WHEN {table}.cursor_type = EXCLUDED.cursor_type
                    THEN GREATEST({table}.last_value_int, EXCLUDED.last_value_int)
                    ELSE EXCLUDED.last_value_int END,
                cursor_type = EXCLUDED.cursor_type,
                last_updated = CURRENT_TIMESTAMP
        """).format(table=self._table)

        conn = None
        try:
            if not self._table_ready:
                self.ensure_tracking_table()
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(
                    query,
                    (
                        key.schema_name, key.table_name, key.cursor_column_name,
                        cursor_type, ts_value, int_value,
                    ),
                )
            conn.commit()
            logger.info(f"Updated watermark for {key} to {value}")
        except Exception as e:
            logger.error(f"Error updating watermark for {key}: {e}")
            if conn:
                conn.rollback()
            raise WatermarkWriteError(f"Could not persist watermark for {key}: {e}") from e
        finally:
            if conn:
                conn.close()

    def list_watermarks(self, schema_name: Optional[str] = None) -> List[WatermarkRecord]:
        """
        Get all recorded watermarks.

        Args:
            schema_name: Optional filter by source schema

        Returns:
            Records ordered by schema and table; [] if the table can't be read
        """
        query = sql.SQL("""
            SELECT schema_name, table_name, cursor_column_name,
                   cursor_type, last_value, last_value_int, last_updated
            FROM {table}
        """).format(table=self._table)
        params = []
        if schema_name:
            query += sql.SQL(" WHERE schema_name = %s")
            params.append(schema_name)
        query += sql.SQL(" ORDER BY schema_name, table_name, cursor_column_name")

        conn = None
        try:
            conn = self._hook.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(query, params if params else None)
                rows = cursor.fetchall()
        except Exception as e:
            logger.warning(f"Error listing watermarks: {e}")
            return []
        finally:
            if conn:
                conn.close()

        return [
            WatermarkRecord(
                key=TableKey(row[0], row[1], row[2]),
                last_value=_stored_value(row[3], row[4], row[5]),
                last_updated=row[6],
                cursor_type=row[3],
            )
            for row in rows
        ]
