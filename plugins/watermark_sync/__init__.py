"""
Incremental SQL Server to PostgreSQL Transfer

This package copies rows added or changed since the last run from SQL Server
tables into PostgreSQL, resuming from a per-table watermark.

Modules:
- config: Environment-driven defaults
- errors: Transfer error taxonomy
- models: TableKey, TransferRequest, TransferSummary and friends
- odbc_helper: Source connections from Airflow connection IDs
- source_query: Pending-row predicate, count and window SQL
- watermark_store: Persisted per-table checkpoints
- row_counter: Count rows pending transfer
- batch_copier: Single-pass window copy via COPY FROM STDIN
- progress: Throughput reporting
- orchestrator: Per-table transfer state machine
- table_config: Build transfer requests from caller entries, summarize runs
- validation: Source vs destination row count checks

Options:
- STRICT_CONSISTENCY=true: Disable NOLOCK on source reads
- INCREMENTAL_BATCH_SIZE=N: Default rows per batch window (5000)
- INCREMENTAL_REPORTING_FREQUENCY=N: Batches between progress lines (5)
"""

__version__ = "1.0.0"

from watermark_sync.models import (
    BatchResult,
    TableKey,
    TransferRequest,
    TransferSummary,
    WatermarkRecord,
)
from watermark_sync.orchestrator import IncrementalTransfer, transfer_tables

__all__ = [
    "BatchResult",
    "IncrementalTransfer",
    "TableKey",
    "TransferRequest",
    "TransferSummary",
    "WatermarkRecord",
    "transfer_tables",
]
