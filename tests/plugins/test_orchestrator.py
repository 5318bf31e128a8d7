"""
Tests for Incremental Transfer Orchestrator

The store, counter and copier are replaced with in-memory fakes backed by a
list of (id, cursor value, status) rows, so whole runs can be exercised end
to end: first run, re-run, mid-run inserts, filters, failures, test mode and
cancellation.
"""

import itertools
import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from watermark_sync.errors import (
    PartialBatchError,
    TransferConnectionError,
    WatermarkWriteError,
)
from watermark_sync.models import (
    BatchResult,
    TransferPhase,
    TransferRequest,
    TransferState,
)
from watermark_sync.orchestrator import IncrementalTransfer, apply_batch_result, transfer_tables

BASE = datetime(2024, 1, 1, 0, 0, 0)


def make_rows(count, start=0, status=None):
    return [
        (i, BASE + timedelta(seconds=i), status(i) if status else 'Active')
        for i in range(start, start + count)
    ]


# Filters the fake source understands, keyed by their SQL text
FILTERS = {
    "Status='Active'": lambda row: row[2] == 'Active',
}


class FakeSourceTable:

    def __init__(self, rows):
        self.rows = list(rows)

    def pending(self, watermark, custom_filter=None):
        matches = FILTERS[custom_filter] if custom_filter else (lambda row: True)
        rows = [
            r for r in self.rows
            if (watermark is None or r[1] > watermark) and matches(r)
        ]
        return sorted(rows, key=lambda r: (r[1], r[0]))


class FakeStore:

    def __init__(self, value=None, write_error=None):
        self.value = value
        self.write_error = write_error
        self.writes = []

    def get_watermark(self, key):
        return self.value

    def set_watermark(self, key, value):
        if self.write_error:
            raise self.write_error
        self.writes.append((key, value))
        self.value = value


class FakeCounter:

    def __init__(self, table):
        self.table = table
        self.calls = []

    def count_pending(self, conn, key, watermark, custom_filter=None):
        self.calls.append((key, watermark, custom_filter))
        return len(self.table.pending(watermark, custom_filter))


class FakeCopier:

    def __init__(self, table, fail_on_batch=None, error=None, after_batch=None):
        self.table = table
        self.fail_on_batch = fail_on_batch
        self.error = error
        self.after_batch = after_batch
        self.calls = []
        self.copied = []

    def fetch_and_copy(self, source_conn, dest_conn, request, watermark, offset, batch_size,
                       cancel_event=None):
        self.calls.append({
            'dest_conn': dest_conn,
            'watermark': watermark,
            'offset': offset,
            'batch_size': batch_size,
        })
        batch_number = len(self.calls)
        if batch_number == self.fail_on_batch:
            raise self.error

        window = self.table.pending(watermark, request.custom_filter)[offset:offset + batch_size]
        self.copied.extend(window)
        if self.after_batch:
            self.after_batch(batch_number)
        return BatchResult(
            rows_in_batch=len(window),
            batch_high_watermark=max((r[1] for r in window), default=None),
        )


@pytest.fixture
def connections():
    with patch('watermark_sync.orchestrator.OdbcConnectionHelper') as odbc_class, \
            patch('watermark_sync.orchestrator.PostgresHook') as hook_class:
        yield odbc_class.return_value, hook_class.return_value


@pytest.fixture
def report():
    with patch('watermark_sync.orchestrator.report_progress') as mock_report:
        yield mock_report


def make_transfer(table, store=None, copier=None):
    ticks = itertools.count()
    store = store or FakeStore()
    copier = copier or FakeCopier(table)
    transfer = IncrementalTransfer(
        'mssql_source',
        'postgres_target',
        watermark_store=store,
        row_counter=FakeCounter(table),
        batch_copier=copier,
        clock=lambda: float(next(ticks)),
    )
    return transfer, store, copier


def make_request(**overrides):
    values = dict(
        schema_name='dbo',
        table_name='Orders',
        cursor_column_name='UpdatedAt',
        batch_size=5000,
        reporting_frequency=2,
        key_columns=['OrderId'],
    )
    values.update(overrides)
    return TransferRequest(**values)


class TestFirstRun:

    def test_copies_everything_and_commits_max(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        transfer, store, copier = make_transfer(table)

        summary = transfer.transfer_table(make_request())

        assert summary.success
        assert summary.total_rows_to_process == 12000
        assert summary.rows_processed == 12000
        assert summary.batches_processed == 3
        assert [c['offset'] for c in copier.calls] == [0, 5000, 10000]
        assert [c['batch_size'] for c in copier.calls] == [5000, 5000, 2000]
        assert store.writes == [(make_request().key, BASE + timedelta(seconds=11999))]
        assert summary.committed_watermark == BASE + timedelta(seconds=11999)
        assert summary.previous_watermark is None

    def test_progress_reported_every_n_batches_and_at_end(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        transfer, _, _ = make_transfer(table)

        transfer.transfer_table(make_request())

        assert report.call_count == 2
        first, last = report.call_args_list
        assert first[0][:2] == (10000, 12000)
        assert last[0][:2] == (12000, 12000)
        # Most recent batch size
        assert last[0][4] == 2000

    def test_connections_are_closed(self, connections, report):
        source, hook = connections
        table = FakeSourceTable(make_rows(10))
        transfer, _, copier = make_transfer(table)

        transfer.transfer_table(make_request())

        source.connection.return_value.__exit__.assert_called_once()
        hook.get_conn.return_value.close.assert_called_once()
        assert copier.calls[0]['dest_conn'] is hook.get_conn.return_value


class TestRerun:

    def test_rerun_without_new_rows_is_a_no_op(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        transfer, store, copier = make_transfer(table)
        transfer.transfer_table(make_request())
        watermark = store.value

        copier.calls.clear()
        summary = transfer.transfer_table(make_request())

        assert summary.success
        assert summary.rows_processed == 0
        assert summary.total_rows_to_process == 0
        assert copier.calls == []
        assert store.value == watermark
        assert len(store.writes) == 1

    def test_rerun_picks_up_only_new_rows(self, connections, report):
        table = FakeSourceTable(make_rows(100))
        transfer, store, copier = make_transfer(table)
        transfer.transfer_table(make_request())

        table.rows.extend(make_rows(30, start=100))
        copier.copied.clear()
        summary = transfer.transfer_table(make_request())

        assert summary.rows_processed == 30
        assert [r[0] for r in copier.copied] == list(range(100, 130))
        assert store.value == BASE + timedelta(seconds=129)


class TestMidRunInserts:

    def test_rows_inserted_during_run_wait_for_next_run(self, connections, report):
        table = FakeSourceTable(make_rows(12000))

        def insert_newer_rows(batch_number):
            if batch_number == 1:
                table.rows.extend(make_rows(3000, start=20000))

        copier = FakeCopier(table, after_batch=insert_newer_rows)
        transfer, store, _ = make_transfer(table, copier=copier)

        summary = transfer.transfer_table(make_request())

        assert summary.batches_processed == 3
        assert summary.rows_processed == 12000
        assert [c['batch_size'] for c in copier.calls] == [5000, 5000, 2000]
        assert store.value == BASE + timedelta(seconds=11999)

        next_run = transfer.transfer_table(make_request())
        assert next_run.rows_processed == 3000


class TestFilter:

    def test_filter_and_prior_watermark_reach_every_query(self, connections, report):
        t0 = BASE + timedelta(seconds=499)
        table = FakeSourceTable(make_rows(1000))
        store = FakeStore(value=t0)
        transfer, _, copier = make_transfer(table, store=store)
        counter = transfer.row_counter

        summary = transfer.transfer_table(
            make_request(custom_filter="Status='Active'", batch_size=200)
        )

        assert counter.calls == [(make_request().key, t0, "Status='Active'")]
        assert all(c['watermark'] == t0 for c in copier.calls)
        assert summary.rows_processed == 500
        assert summary.previous_watermark == t0
        assert store.value == BASE + timedelta(seconds=999)

    def test_filtered_out_rows_are_not_copied_or_checkpointed(self, connections, report):
        # Odd ids inactive, so the newest row (999) is filtered out
        rows = make_rows(1000, status=lambda i: 'Inactive' if i % 2 else 'Active')
        table = FakeSourceTable(rows)
        store = FakeStore(value=BASE + timedelta(seconds=499))
        transfer, _, copier = make_transfer(table, store=store)

        summary = transfer.transfer_table(
            make_request(custom_filter="Status='Active'", batch_size=100)
        )

        assert summary.total_rows_to_process == 250
        assert summary.rows_processed == 250
        assert summary.batches_processed == 3
        assert {r[2] for r in copier.copied} == {'Active'}
        assert [r[0] for r in copier.copied] == list(range(500, 1000, 2))
        assert store.value == BASE + timedelta(seconds=998)

    def test_without_filter_inactive_rows_are_copied(self, connections, report):
        rows = make_rows(10, status=lambda i: 'Inactive' if i % 2 else 'Active')
        transfer, store, copier = make_transfer(FakeSourceTable(rows))

        summary = transfer.transfer_table(make_request())

        assert summary.rows_processed == 10
        assert store.value == BASE + timedelta(seconds=9)


class TestIntegerCursor:

    def test_identity_cursor_runs_incrementally(self, connections, report):
        table = FakeSourceTable([(i, 1000 + i, 'Active') for i in range(50)])
        store = FakeStore(value=1019)
        transfer, _, copier = make_transfer(table, store=store)

        summary = transfer.transfer_table(make_request(cursor_column_name='EventId', batch_size=20))

        assert summary.rows_processed == 30
        assert [c['batch_size'] for c in copier.calls] == [20, 10]
        assert summary.previous_watermark == 1019
        assert summary.committed_watermark == 1049
        assert store.value == 1049


class TestTestMode:

    def test_reads_without_writing(self, connections, report):
        _, hook = connections
        table = FakeSourceTable(make_rows(12000))
        transfer, store, copier = make_transfer(table)

        summary = transfer.transfer_table(make_request(test_mode=True))

        assert summary.success
        assert summary.test_mode
        assert summary.rows_processed == 12000
        assert store.writes == []
        assert summary.committed_watermark is None
        hook.get_conn.assert_not_called()
        assert all(c['dest_conn'] is None for c in copier.calls)


class TestFailures:

    def test_failed_batch_keeps_watermark(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        copier = FakeCopier(table, fail_on_batch=2, error=RuntimeError('disk full'))
        store = FakeStore(value=None)
        transfer, _, _ = make_transfer(table, store=store, copier=copier)

        summary = transfer.transfer_table(make_request())

        assert not summary.success
        assert summary.error_type == 'PartialBatchError'
        assert 'disk full' in summary.error_message
        assert summary.rows_processed == 5000
        assert summary.total_rows_to_process == 12000
        assert store.writes == []
        assert store.value is None

    def test_classified_errors_keep_their_type(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        copier = FakeCopier(
            table, fail_on_batch=1, error=TransferConnectionError('server closed the connection')
        )
        transfer, store, _ = make_transfer(table, copier=copier)

        summary = transfer.transfer_table(make_request())

        assert summary.error_type == 'TransferConnectionError'
        assert summary.rows_processed == 0
        assert store.writes == []

    def test_partial_batch_error_carries_progress(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        copier = FakeCopier(table, fail_on_batch=3, error=RuntimeError('boom'))
        transfer, _, _ = make_transfer(table, copier=copier)

        with patch.object(transfer, '_fail', wraps=transfer._fail) as fail:
            transfer.transfer_table(make_request())

        error = fail.call_args[0][2]
        assert isinstance(error, PartialBatchError)
        assert error.batch_number == 3
        assert error.rows_committed == 10000

    def test_watermark_write_failure_fails_the_run(self, connections, report):
        table = FakeSourceTable(make_rows(100))
        store = FakeStore(write_error=WatermarkWriteError('deadlock detected'))
        transfer, _, _ = make_transfer(table, store=store)

        summary = transfer.transfer_table(make_request())

        assert not summary.success
        assert summary.error_type == 'WatermarkWriteError'
        assert summary.rows_processed == 100
        assert summary.committed_watermark is None

    def test_source_connection_failure(self, connections, report):
        source, _ = connections
        source.connection.side_effect = TransferConnectionError('Login timeout expired')
        table = FakeSourceTable(make_rows(100))
        transfer, store, copier = make_transfer(table)

        summary = transfer.transfer_table(make_request())

        assert not summary.success
        assert summary.error_type == 'TransferConnectionError'
        assert copier.calls == []

    def test_rows_removed_after_count_end_the_loop(self, connections, report):
        table = FakeSourceTable(make_rows(12000))

        def delete_rows(batch_number):
            if batch_number == 1:
                del table.rows[6000:]

        copier = FakeCopier(table, after_batch=delete_rows)
        transfer, store, _ = make_transfer(table, copier=copier)

        summary = transfer.transfer_table(make_request())

        assert summary.success
        assert summary.rows_processed == 6000
        assert len(copier.calls) == 3
        assert store.value == BASE + timedelta(seconds=5999)


class TestCancellation:

    def test_cancel_between_batches(self, connections, report):
        table = FakeSourceTable(make_rows(12000))
        event = threading.Event()
        copier = FakeCopier(table, after_batch=lambda n: event.set())
        transfer, store, _ = make_transfer(table, copier=copier)

        summary = transfer.transfer_table(make_request(), cancel_event=event)

        assert not summary.success
        assert summary.error_type == 'TransferCancelled'
        assert summary.rows_processed == 5000
        assert len(copier.calls) == 1
        assert store.writes == []


class TestApplyBatchResult:

    def make_state(self, **values):
        return TransferState(phase=TransferPhase.BATCH_LOOP, started_at=0.0,
                             start_time=BASE, total_rows=12000, **values)

    def test_advances_offset_and_candidate(self):
        state = self.make_state(candidate_watermark=BASE)
        high = BASE + timedelta(hours=1)

        new_state = apply_batch_result(state, BatchResult(5000, high), 2.5)

        assert new_state.offset == 5000
        assert new_state.rows_processed == 5000
        assert new_state.batches_processed == 1
        assert new_state.candidate_watermark == high
        assert new_state.last_batch_elapsed == 2.5
        # Input state untouched
        assert state.offset == 0

    def test_candidate_never_decreases(self):
        high = BASE + timedelta(hours=1)
        state = self.make_state(candidate_watermark=high)

        new_state = apply_batch_result(state, BatchResult(10, BASE), 1.0)

        assert new_state.candidate_watermark == high

    def test_all_null_batch_keeps_candidate(self):
        state = self.make_state(candidate_watermark=BASE)

        new_state = apply_batch_result(state, BatchResult(10, None), 1.0)

        assert new_state.candidate_watermark == BASE


class TestTransferTables:

    def test_failure_does_not_stop_other_tables(self, connections, report):
        requests = [
            make_request(table_name='Orders'),
            make_request(table_name='Customers'),
        ]
        with patch('watermark_sync.orchestrator.WatermarkStore'), \
                patch('watermark_sync.orchestrator.IncrementalTransfer.transfer_table') as run:
            run.side_effect = lambda request, cancel_event=None: _summary(request, request.table_name == 'Orders')
            summaries = transfer_tables('mssql_source', 'postgres_target', requests)

        assert [s.table_name for s in summaries] == ['Orders', 'Customers']
        assert [s.success for s in summaries] == [False, True]


def _summary(request, failed):
    from watermark_sync.models import TransferSummary
    return TransferSummary(
        schema_name=request.schema_name,
        table_name=request.table_name,
        start_time=BASE,
        end_time=BASE,
        elapsed_ms=0,
        total_rows_to_process=0,
        rows_processed=0,
        rows_per_second=0.0,
        success=not failed,
        error_message='boom' if failed else None,
    )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
