"""
Incremental Transfer Orchestrator

Drives one table through the run state machine:

    INIT -> WATERMARK_LOADED -> COUNTED -> BATCH_LOOP -> COMMIT -> DONE
                                   \\-> DONE (no pending rows)
    any step -> FAILED

The watermark only advances after every batch of the run succeeded. A
failed run leaves it at its pre-run value, so the next run re-reads from the
old checkpoint; use key_columns to make that re-read idempotent.

Progress is carried in an immutable TransferState returned by each step.
One source and one destination connection are held for the whole run and
released on every exit path.
"""

from typing import Callable, List, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
from datetime import datetime, timezone
import contextlib
import logging
import threading
import time

from watermark_sync import config
from watermark_sync.batch_copier import BatchCopier
from watermark_sync.errors import (
    PartialBatchError,
    TransferCancelled,
    TransferConnectionError,
    TransferError,
    WatermarkWriteError,
    classify_db_error,
)
from watermark_sync.models import (
    BatchResult,
    TransferPhase,
    TransferRequest,
    TransferState,
    TransferSummary,
)
from watermark_sync.odbc_helper import OdbcConnectionHelper
from watermark_sync.progress import report_progress
from watermark_sync.row_counter import RowCounter
from watermark_sync.watermark_store import WatermarkStore

logger = logging.getLogger(__name__)


class IncrementalTransfer:
    """Copy new rows of one table at a time from SQL Server to PostgreSQL."""

    def __init__(
        self,
        mssql_conn_id: str,
        postgres_conn_id: str,
        watermark_store: Optional[WatermarkStore] = None,
        row_counter: Optional[RowCounter] = None,
        batch_copier: Optional[BatchCopier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            mssql_conn_id: Airflow connection ID for the SQL Server source
            postgres_conn_id: Airflow connection ID for the PostgreSQL destination
            watermark_store: Store for checkpoints (defaults to one on the destination)
            row_counter: Pending row counter
            batch_copier: Batch fetcher/copier
            clock: Monotonic seconds source used for timers
        """
        self.source = OdbcConnectionHelper(mssql_conn_id)
        self.postgres_hook = PostgresHook(postgres_conn_id=postgres_conn_id)
        self._postgres_conn_id = postgres_conn_id
        self.watermark_store = watermark_store or WatermarkStore(postgres_conn_id)
        self.row_counter = row_counter or RowCounter()
        self.batch_copier = batch_copier or BatchCopier()
        self._clock = clock

    @contextlib.contextmanager
    def _destination_connection(self):
        try:
            conn = self.postgres_hook.get_conn()
        except Exception as e:
            raise TransferConnectionError(
                f"Cannot open destination connection '{self._postgres_conn_id}': {e}"
            ) from e
        try:
            with conn.cursor() as cursor:
                cursor.execute("SET statement_timeout = %s", (config.get_statement_timeout_ms(),))
            conn.commit()
            yield conn
        finally:
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"Error closing destination connection: {e}")

    def transfer_table(
        self,
        request: TransferRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> TransferSummary:
        """
        Transfer rows added or changed since the last successful run.

        Args:
            request: Table to transfer
            cancel_event: Optional signal, checked before every batch and
                while rows stream

        Returns:
            TransferSummary; failures are reported in it, not raised
        """
        state = TransferState(
            phase=TransferPhase.INIT,
            started_at=self._clock(),
            start_time=datetime.now(timezone.utc),
        )
        mode = " (test mode)" if request.test_mode else ""
        logger.info(
            f"Starting incremental transfer for [{request.schema_name}].[{request.table_name}]"
            f"{mode} -> {request.destination_schema}.{request.destination_table}"
        )
        if not request.key_columns and not request.order_by_column:
            logger.warning(
                f"Ordering by '{request.cursor_column_name}' alone: rows sharing a cursor "
                "value may be split or repeated across batch windows. Set key_columns "
                "for a stable order."
            )

        try:
            state = self._load_watermark(state, request)

            dest_context = (
                contextlib.nullcontext() if request.test_mode else self._destination_connection()
            )
            with self.source.connection() as source_conn, dest_context as dest_conn:
                state = self._count(state, request, source_conn)
                if state.total_rows == 0:
                    logger.info("No new data to transfer")
                    return self._finish(request, state.advance(phase=TransferPhase.DONE))

                state = state.advance(
                    phase=TransferPhase.BATCH_LOOP,
                    candidate_watermark=state.prior_watermark,
                )
                while state.has_pending_rows:
                    if cancel_event is not None and cancel_event.is_set():
                        raise TransferCancelled(
                            f"Transfer cancelled before batch {state.batches_processed + 1} "
                            f"({state.rows_processed:,} rows processed)"
                        )
                    state = self._run_batch(state, request, source_conn, dest_conn, cancel_event)
                    if state.phase is TransferPhase.COMMIT:
                        break
        except Exception as e:
            return self._fail(request, state, e)

        return self._commit(request, state.advance(phase=TransferPhase.COMMIT))

    def _load_watermark(self, state: TransferState, request: TransferRequest) -> TransferState:
        watermark = self.watermark_store.get_watermark(request.key)
        logger.info(f"Last watermark processed: {watermark if watermark is not None else 'None (first run)'}")
        return state.advance(phase=TransferPhase.WATERMARK_LOADED, prior_watermark=watermark)

    def _count(self, state: TransferState, request: TransferRequest, source_conn) -> TransferState:
        total = self.row_counter.count_pending(
            source_conn,
            request.key,
            state.prior_watermark,
            request.custom_filter,
        )
        return state.advance(phase=TransferPhase.COUNTED, total_rows=total)

    def _run_batch(
        self,
        state: TransferState,
        request: TransferRequest,
        source_conn,
        dest_conn,
        cancel_event: Optional[threading.Event],
    ) -> TransferState:
        batch_number = state.batches_processed + 1
        fetch_size = min(request.batch_size, state.total_rows - state.offset)
        batch_started = self._clock()

        try:
            result = self.batch_copier.fetch_and_copy(
                source_conn,
                dest_conn,
                request,
                state.prior_watermark,
                state.offset,
                fetch_size,
                cancel_event,
            )
        except TransferError:
            raise
        except Exception as e:
            translated = classify_db_error(e, f"Batch {batch_number}")
            raise PartialBatchError(
                str(translated or e),
                batch_number=batch_number,
                rows_committed=state.rows_processed,
            ) from e

        now = self._clock()
        state = apply_batch_result(state, result, now - batch_started)

        if result.rows_in_batch == 0:
            logger.warning(
                f"Batch {batch_number} returned no rows at offset {state.offset:,} "
                f"(expected {state.total_rows - state.offset:,} more); source rows may have "
                "been removed since counting. Ending the batch loop."
            )
            return state.advance(phase=TransferPhase.COMMIT)

        if state.batches_processed % request.reporting_frequency == 0 or not state.has_pending_rows:
            report_progress(
                state.offset,
                state.total_rows,
                now - state.started_at,
                state.last_batch_elapsed,
                result.rows_in_batch,
            )
        return state

    def _commit(self, request: TransferRequest, state: TransferState) -> TransferSummary:
        candidate = state.candidate_watermark
        advances = candidate is not None and (
            state.prior_watermark is None or candidate > state.prior_watermark
        )

        if request.test_mode:
            logger.info(f"Test mode: watermark not updated (would be {candidate})")
        elif advances:
            try:
                self.watermark_store.set_watermark(request.key, candidate)
            except WatermarkWriteError as e:
                logger.error(
                    f"Copied {state.rows_processed:,} rows but could not advance the "
                    f"watermark: {e}"
                )
                return self._finish(
                    request,
                    state.advance(phase=TransferPhase.FAILED),
                    error=e,
                )
            logger.info(f"Updated watermark to: {candidate}")
            state = state.advance(committed_watermark=candidate)

        return self._finish(request, state.advance(phase=TransferPhase.DONE))

    def _fail(self, request: TransferRequest, state: TransferState, error: Exception) -> TransferSummary:
        logger.error(
            f"Error transferring [{request.schema_name}].[{request.table_name}] "
            f"during {state.phase.value}: {error}"
        )
        return self._finish(request, state.advance(phase=TransferPhase.FAILED), error=error)

    def _finish(
        self,
        request: TransferRequest,
        state: TransferState,
        error: Optional[Exception] = None,
    ) -> TransferSummary:
        elapsed = self._clock() - state.started_at
        summary = TransferSummary(
            schema_name=request.schema_name,
            table_name=request.table_name,
            start_time=state.start_time,
            end_time=datetime.now(timezone.utc),
            elapsed_ms=int(elapsed * 1000),
            total_rows_to_process=state.total_rows,
            rows_processed=state.rows_processed,
            rows_per_second=state.rows_processed / elapsed if elapsed > 0 else 0.0,
            success=error is None,
            error_message=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            batches_processed=state.batches_processed,
            test_mode=request.test_mode,
            previous_watermark=state.prior_watermark,
            committed_watermark=state.committed_watermark,
        )

        if summary.success:
            logger.info(
                f"Completed transfer. Processed {summary.rows_processed:,} rows in "
                f"{elapsed:.2f} seconds ({summary.rows_per_second:,.2f} rows/sec)"
            )
        else:
            logger.warning(str(summary))
        return summary


def apply_batch_result(state: TransferState, result: BatchResult, batch_elapsed: float) -> TransferState:
    """
    Fold one BatchResult into the run state.

    Advances the offset and row total by the rows actually seen and keeps the
    candidate watermark at the highest cursor value observed.
    """
    candidate = state.candidate_watermark
    high = result.batch_high_watermark
    if high is not None and (candidate is None or high > candidate):
        candidate = high

    return state.advance(
        offset=state.offset + result.rows_in_batch,
        rows_processed=state.rows_processed + result.rows_in_batch,
        batches_processed=state.batches_processed + 1,
        candidate_watermark=candidate,
        last_batch_elapsed=batch_elapsed,
    )


def transfer_tables(
    mssql_conn_id: str,
    postgres_conn_id: str,
    requests: List[TransferRequest],
    cancel_event: Optional[threading.Event] = None,
) -> List[TransferSummary]:
    """
    Transfer several tables one after another.

    A failing table is reported in its summary and does not stop the others.

    Returns:
        One TransferSummary per request, in request order
    """
    transfer = IncrementalTransfer(mssql_conn_id, postgres_conn_id)
    summaries = []
    for request in requests:
        summary = transfer.transfer_table(request, cancel_event=cancel_event)
        logger.info(str(summary))
        summaries.append(summary)

    failed = [s for s in summaries if not s.success]
    if failed:
        logger.error(
            f"{len(failed)} of {len(summaries)} tables failed: "
            f"{', '.join(f'{s.schema_name}.{s.table_name}' for s in failed)}"
        )
    return summaries
