"""
Pending Row Counter

Counts source rows newer than the watermark. The count is taken once per
run, before the batch loop, and only sizes the loop and the progress
percentage. Rows inserted after the count are picked up by the next run.
"""

from typing import Any, Optional
import logging

from watermark_sync.errors import QueryError, classify_db_error
from watermark_sync.models import TableKey
from watermark_sync.source_query import build_count_query

logger = logging.getLogger(__name__)


class RowCounter:
    """Counts rows pending transfer on an open source connection."""

    def count_pending(
        self,
        conn,
        key: TableKey,
        watermark: Optional[Any],
        custom_filter: Optional[str] = None,
    ) -> int:
        """
        Count rows where cursor > watermark (all rows if None) AND filter.

        Args:
            conn: Open pyodbc source connection
            key: Source table and cursor column
            watermark: Last committed cursor value
            custom_filter: Optional extra predicate

        Returns:
            Number of pending rows

        Raises:
            QueryError: If the count query is rejected
            TransferConnectionError: If the source connection fails
        """
        query, params = build_count_query(key, watermark, custom_filter)

        try:
            cursor = conn.cursor()
            try:
                if params:
                    cursor.execute(query, params)
                else:
                    cursor.execute(query)
                row = cursor.fetchone()
            finally:
                cursor.close()
        except Exception as e:
            logger.error(f"Error counting pending rows for {key}: {e}")
            logger.error(f"Query: {query}")
            translated = classify_db_error(e, f"Counting pending rows for {key}")
            if translated is None:
                raise
            raise translated from e

        if row is None:
            raise QueryError(f"Count query for {key} returned no rows")

        count = int(row[0] or 0)
        logger.info(
            f"Found {count:,} rows to process for {key}"
            f"{' (filtered)' if custom_filter else ''}"
        )
        return count
