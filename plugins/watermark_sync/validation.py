"""
Row Count Validation

Compares the number of source rows a table's transfer selects (the custom
filter applies, the watermark does not) with the number of rows in its
destination table. Run after a transfer to spot rows lost to failed runs or
duplicated by non-keyed re-copies.
"""

from typing import Any, Dict, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
from datetime import datetime
from psycopg2 import sql
import logging

from watermark_sync.errors import TransferConnectionError
from watermark_sync.models import TransferRequest
from watermark_sync.odbc_helper import OdbcConnectionHelper
from watermark_sync.row_counter import RowCounter

logger = logging.getLogger(__name__)


class RowCountValidator:
    """Validate transferred row counts between SQL Server and PostgreSQL."""

    def __init__(
        self,
        mssql_conn_id: str,
        postgres_conn_id: str,
        row_counter: Optional[RowCounter] = None,
    ):
        """
        Args:
            mssql_conn_id: Airflow connection ID for the SQL Server source
            postgres_conn_id: Airflow connection ID for the PostgreSQL destination
            row_counter: Source row counter
        """
        self.source = OdbcConnectionHelper(mssql_conn_id)
        self.postgres_hook = PostgresHook(postgres_conn_id=postgres_conn_id)
        self.row_counter = row_counter or RowCounter()

    def validate_row_count(self, request: TransferRequest) -> Dict[str, Any]:
        """
        Compare source and destination row counts for one table.

        Args:
            request: Table to validate

        Returns:
            Validation result dictionary

        Raises:
            TransferConnectionError, QueryError: If either count fails
        """
        with self.source.connection() as conn:
            source_count = self.row_counter.count_pending(
                conn, request.key, None, request.custom_filter
            )
        target_count = self._target_count(request)

        row_difference = target_count - source_count
        percentage_difference = (row_difference / source_count * 100) if source_count > 0 else 0

        result = {
            'table_name': f"{request.schema_name}.{request.table_name}",
            'target_table': f"{request.destination_schema}.{request.destination_table}",
            'filtered': request.custom_filter is not None,
            'source_count': source_count,
            'target_count': target_count,
            'row_difference': row_difference,
            'percentage_difference': percentage_difference,
            'validation_passed': source_count == target_count,
            'validation_time': datetime.now().isoformat(),
        }

        if result['validation_passed']:
            logger.info(
                f"Row count validation passed for {request.table_name}: {source_count:,} rows"
            )
        else:
            logger.warning(
                f"Row count mismatch for {request.table_name}: "
                f"Source={source_count:,}, Target={target_count:,}, "
                f"Difference={row_difference:+,} ({percentage_difference:+.2f}%)"
            )
        return result

    def _target_count(self, request: TransferRequest) -> int:
        query = sql.SQL('SELECT COUNT(*) FROM {}.{}').format(
            sql.Identifier(request.destination_schema),
            sql.Identifier(request.destination_table),
        )
        try:
            conn = self.postgres_hook.get_conn()
        except Exception as e:
            raise TransferConnectionError(f"Cannot open destination connection: {e}") from e
        try:
            with conn.cursor() as cursor:
                cursor.execute(query)
                row = cursor.fetchone()
        finally:
            conn.close()
        return int(row[0] or 0) if row else 0
