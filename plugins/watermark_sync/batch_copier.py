"""
Batch Fetcher/Copier

Reads one bounded, ordered window of pending rows from SQL Server and
streams it into PostgreSQL with COPY. The row stream passes through a tap
that counts rows and folds the maximum cursor value on the way to the
writer, so the window is read exactly once.

Two write paths:
- Plain: COPY straight into the target table (append).
- Keyed: COPY into a temp staging table, then INSERT ... ON CONFLICT on the
  request's key columns. Re-copying a window after a failed run updates
  rows in place instead of duplicating them.
"""

from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple
from datetime import datetime, date, time as dt_time
from decimal import Decimal
from io import StringIO, TextIOBase
import csv
import logging
import math
import threading

from psycopg2 import sql

from watermark_sync import config
from watermark_sync.errors import QueryError, TransferCancelled, TransferError, classify_db_error
from watermark_sync.models import BatchResult, TransferRequest
from watermark_sync.source_query import build_window_query

logger = logging.getLogger(__name__)

FETCH_ARRAY_SIZE = 1000

COPY_OPTIONS = "FORMAT CSV, DELIMITER E'\\t', QUOTE '\"', NULL '\\N'"


def _iter_cursor(cursor, arraysize: int = FETCH_ARRAY_SIZE) -> Iterator[Tuple[Any, ...]]:
    """Stream rows from a DB-API cursor without materialising the window."""
    while True:
        rows = cursor.fetchmany(arraysize)
        if not rows:
            return
        for row in rows:
            yield row


def _column_index(columns: Sequence[str], name: str) -> Optional[int]:
    """Case-insensitive column lookup (SQL Server default collation)."""
    for index, column in enumerate(columns):
        if column.lower() == name.lower():
            return index
    return None


def _find_column(columns: Sequence[str], name: str) -> int:
    index = _column_index(columns, name)
    if index is not None:
        return index
    raise QueryError(f"Cursor column '{name}' is not in the selected columns: {list(columns)}")


class _WatermarkTap:
    """
    Pass-through iterator that counts rows and tracks the max cursor value.

    NULL cursor values are counted but never become the high watermark.
    Checks the cancel event every ``check_every`` rows.

    Any exception raised while iterating (cancellation, source fetch
    errors) is kept in ``error``: psycopg2 replaces exceptions raised from
    the COPY stream's read() with its own QueryCanceledError.
    """

    def __init__(
        self,
        rows: Iterable[Tuple[Any, ...]],
        cursor_index: int,
        cancel_event: Optional[threading.Event] = None,
        check_every: Optional[int] = None,
    ):
        self._rows = rows
        self._cursor_index = cursor_index
        self._cancel_event = cancel_event
        self._check_every = check_every or config.get_cancel_check_rows()
        self.row_count = 0
        self.high_watermark: Optional[Any] = None
        self.error: Optional[Exception] = None

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        try:
            for row in self._rows:
                if (
                    self._cancel_event is not None
                    and self.row_count % self._check_every == 0
                    and self._cancel_event.is_set()
                ):
                    raise TransferCancelled(
                        f"Transfer cancelled after {self.row_count:,} rows of the current batch"
                    )
                self.row_count += 1
                value = row[self._cursor_index]
                if value is not None and (
                    self.high_watermark is None or value > self.high_watermark
                ):
                    self.high_watermark = value
                yield row
        except Exception as e:
            self.error = e
            raise

    def drain(self) -> None:
        for _ in self:
            pass

    def result(self) -> BatchResult:
        return BatchResult(rows_in_batch=self.row_count, batch_high_watermark=self.high_watermark)


def normalize_copy_value(value: Any) -> Any:
    """
    Normalize Python values for COPY consumption.

    NULL is written as the literal ``\\N`` marker so it stays distinct from
    empty strings.
    """
    if value is None:
        return '\\N'

    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '\\x' + bytes(value).hex()
    if isinstance(value, float) and not math.isfinite(value):
        return '\\N'

    return value


class _CSVRowStream(TextIOBase):
    """Lazy text stream that feeds COPY FROM without large buffers."""

    def __init__(self, rows: Iterable[Tuple[Any, ...]], normalizer: Callable[[Any], Any]):
        self._iterator = iter(rows)
        self._normalizer = normalizer
        self._buffer = ''
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> str:
        while (size < 0 or len(self._buffer) < size) and not self._exhausted:
            try:
                row = next(self._iterator)
            except StopIteration:
                self._exhausted = True
                break
            self._buffer += self._format_row(row)

        if size < 0:
            data = self._buffer
            self._buffer = ''
            return data

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data

    def _format_row(self, row: Tuple[Any, ...]) -> str:
        buffer = StringIO()
        writer = csv.writer(
            buffer,
            delimiter='\t',
            quoting=csv.QUOTE_MINIMAL,
            lineterminator='\n',
        )
        writer.writerow([self._normalizer(value) for value in row])
        return buffer.getvalue()


class BatchCopier:
    """Copies one batch window from the source to the destination."""

    def fetch_and_copy(
        self,
        source_conn,
        dest_conn,
        request: TransferRequest,
        watermark: Optional[Any],
        offset: int,
        batch_size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Extract rows [offset, offset + batch_size) of the pending set and
        write them to the destination.

        Args:
            source_conn: Open pyodbc connection
            dest_conn: Open psycopg2 connection (unused in test mode)
            request: Table being transferred
            watermark: Watermark the run started from (fixed for the run)
            offset: Rows of the pending set already processed
            batch_size: Rows to fetch for this window
            cancel_event: Optional cancellation signal

        Returns:
            BatchResult with the rows seen and the max cursor value among them

        Raises:
            TransferConnectionError, QueryError, TransferCancelled
        """
        key = request.key
        query, params = build_window_query(
            key,
            watermark,
            request.custom_filter,
            request.order_by_columns,
            offset,
            batch_size,
            request.columns,
        )

        tap = None
        try:
            cursor = source_conn.cursor()
            try:
                cursor.execute(query, params)
                columns = [d[0] for d in cursor.description]
                tap = _WatermarkTap(
                    _iter_cursor(cursor),
                    _find_column(columns, key.cursor_column_name),
                    cancel_event,
                )

                if request.test_mode:
                    tap.drain()
                else:
                    self._write(tap, dest_conn, request, columns)
            finally:
                cursor.close()
        except Exception as e:
            # Prefer what the row stream raised over the COPY error that wraps it
            error = tap.error if tap is not None and tap.error is not None else e
            if isinstance(error, TransferError):
                raise error
            logger.error(f"Error copying rows {offset:,}-{offset + batch_size - 1:,} of {key}: {error}")
            translated = classify_db_error(error, f"Copying batch at offset {offset:,} of {key}")
            if translated is None:
                raise error
            raise translated from error

        return tap.result()

    def _write(
        self,
        rows: Iterable[Tuple[Any, ...]],
        dest_conn,
        request: TransferRequest,
        columns: List[str],
    ) -> None:
        """Write one batch in its own destination transaction."""
        try:
            with dest_conn.cursor() as cursor:
                if request.key_columns:
                    self._upsert_via_staging(cursor, rows, request, columns)
                else:
                    cursor.copy_expert(
                        self._copy_sql(
                            sql.SQL('{}.{}').format(
                                sql.Identifier(request.destination_schema),
                                sql.Identifier(request.destination_table),
                            ),
                            columns,
                        ),
                        _CSVRowStream(rows, normalize_copy_value),
                    )
            dest_conn.commit()
        except Exception:
            try:
                dest_conn.rollback()
            except Exception as rollback_error:
                logger.warning(f"Rollback after failed batch also failed: {rollback_error}")
            raise

    @staticmethod
    def _copy_sql(target: sql.Composable, columns: List[str]) -> sql.Composed:
        return sql.SQL('COPY {} ({}) FROM STDIN WITH (' + COPY_OPTIONS + ')').format(
            target,
            sql.SQL(', ').join([sql.Identifier(col) for col in columns]),
        )

    def _upsert_via_staging(
        self,
        cursor,
        rows: Iterable[Tuple[Any, ...]],
        request: TransferRequest,
        columns: List[str],
    ) -> None:
        """
        COPY into a temp table shaped like the target, then merge on the key.

        Duplicate keys inside one window collapse to the row with the highest
        cursor value.
        """
        key_indexes = [_column_index(columns, k) for k in request.key_columns]
        missing = [k for k, index in zip(request.key_columns, key_indexes) if index is None]
        if missing:
            raise QueryError(
                f"Key columns {missing} are not among the copied columns {columns}"
            )
        # Source spelling, so DISTINCT ON and ON CONFLICT match the COPY column list
        key_columns = [columns[index] for index in key_indexes]

        target = sql.SQL('{}.{}').format(
            sql.Identifier(request.destination_schema),
            sql.Identifier(request.destination_table),
        )
        stage = sql.Identifier(f"_wm_stage_{request.destination_table}"[:63])
        cursor_column = columns[_find_column(columns, request.cursor_column_name)]

        cursor.execute(
            sql.SQL(
                'CREATE TEMP TABLE {} (LIKE {} INCLUDING DEFAULTS) ON COMMIT DROP'
            ).format(stage, target)
        )
        cursor.copy_expert(
            self._copy_sql(stage, columns),
            _CSVRowStream(rows, normalize_copy_value),
        )

        all_cols = sql.SQL(', ').join([sql.Identifier(c) for c in columns])
        key_cols = sql.SQL(', ').join([sql.Identifier(c) for c in key_columns])
        non_key_columns = [c for c in columns if c not in key_columns]
        if non_key_columns:
            conflict_action = sql.SQL('DO UPDATE SET {}').format(
                sql.SQL(', ').join([
                    sql.SQL('{} = EXCLUDED.{}').format(sql.Identifier(c), sql.Identifier(c))
                    for c in non_key_columns
                ])
            )
        else:
            conflict_action = sql.SQL('DO NOTHING')

        cursor.execute(
            sql.SQL("""
                INSERT INTO {target} ({columns})
                SELECT DISTINCT ON ({keys}) {columns}
                FROM {stage}
                ORDER BY {keys}, {cursor_column} DESC NULLS LAST
                ON CONFLICT ({keys}) {action}
            """).format(
                target=target,
                columns=all_cols,
                keys=key_cols,
                stage=stage,
                cursor_column=sql.Identifier(cursor_column),
                action=conflict_action,
            )
        )
        logger.debug(
            f"Upserted {cursor.rowcount} rows into "
            f"{request.destination_schema}.{request.destination_table}"
        )
