"""
Data Model for Incremental Transfers

Plain dataclasses shared by the watermark store, the batch copier and the
orchestrator. TransferRequest is caller input, TransferState is the value
threaded through the orchestrator's state machine, TransferSummary is what
the caller gets back.
"""

import dataclasses
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from watermark_sync import config

CURSOR_TYPE_DATETIME = "datetime"
CURSOR_TYPE_INT = "int"


@dataclasses.dataclass(frozen=True)
class TableKey:
    """Identifies one replication stream."""

    schema_name: str
    table_name: str
    cursor_column_name: str

    def __str__(self) -> str:
        return f"[{self.schema_name}].[{self.table_name}] ({self.cursor_column_name})"


@dataclasses.dataclass(frozen=True)
class WatermarkRecord:
    """
    Last committed cursor value of one stream.

    ``cursor_type`` is "datetime" (DATETIME/DATE cursors) or "int"
    (INT/BIGINT identity cursors) and decides how last_value is stored.
    """

    key: TableKey
    last_value: Any
    last_updated: datetime
    cursor_type: str = CURSOR_TYPE_DATETIME


@dataclasses.dataclass(frozen=True)
class TransferRequest:
    """
    One table to replicate.

    Attributes:
        schema_name: Source schema
        table_name: Source table
        cursor_column_name: Monotonic column used to detect new rows
        custom_filter: Optional SQL Server boolean expression ANDed onto the
            pending-row predicate
        order_by_column: Sort column for batch windows (defaults to the
            cursor column)
        batch_size: Rows per batch window
        reporting_frequency: Batches between progress reports
        test_mode: Read and count only; no destination writes, no watermark
        target_schema: Destination schema (defaults to schema_name)
        target_table: Destination table (defaults to table_name)
        columns: Columns to copy (defaults to all columns)
        key_columns: Natural key; enables idempotent upsert and is used to
            break ordering ties
    """

    schema_name: str
    table_name: str
    cursor_column_name: str
    custom_filter: Optional[str] = None
    order_by_column: Optional[str] = None
    batch_size: int = dataclasses.field(default_factory=config.get_default_batch_size)
    reporting_frequency: int = dataclasses.field(
        default_factory=config.get_default_reporting_frequency
    )
    test_mode: bool = False
    target_schema: Optional[str] = None
    target_table: Optional[str] = None
    columns: Optional[List[str]] = None
    key_columns: Optional[List[str]] = None

    def __post_init__(self):
        for field_name in ("schema_name", "table_name", "cursor_column_name"):
            if not getattr(self, field_name):
                raise ValueError(f"TransferRequest.{field_name} cannot be empty")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.reporting_frequency < 1:
            raise ValueError(
                f"reporting_frequency must be at least 1, got {self.reporting_frequency}"
            )
        if self.custom_filter is not None and not self.custom_filter.strip():
            object.__setattr__(self, "custom_filter", None)
        if self.columns is not None and self.cursor_column_name.lower() not in (
            c.lower() for c in self.columns
        ):
            raise ValueError(
                f"columns must include the cursor column '{self.cursor_column_name}'"
            )

    @property
    def key(self) -> TableKey:
        return TableKey(self.schema_name, self.table_name, self.cursor_column_name)

    @property
    def destination_schema(self) -> str:
        return self.target_schema or self.schema_name

    @property
    def destination_table(self) -> str:
        return self.target_table or self.table_name

    @property
    def order_by_columns(self) -> List[str]:
        """Sort columns for OFFSET/FETCH windows, key columns appended as tie-breakers."""
        ordering = [self.order_by_column or self.cursor_column_name]
        seen = {ordering[0].lower()}
        for col in self.key_columns or []:
            if col.lower() not in seen:
                ordering.append(col)
                seen.add(col.lower())
        return ordering


@dataclasses.dataclass(frozen=True)
class BatchResult:
    rows_in_batch: int
    batch_high_watermark: Optional[Any] = None


class TransferPhase(str, Enum):
    INIT = "init"
    WATERMARK_LOADED = "watermark_loaded"
    COUNTED = "counted"
    BATCH_LOOP = "batch_loop"
    COMMIT = "commit"
    DONE = "done"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class TransferState:
    """
    Immutable progress of one transfer run.

    Each orchestrator step returns a new state via ``advance``; nothing in a
    run is kept in mutable instance fields.
    """

    phase: TransferPhase
    started_at: float
    start_time: datetime
    prior_watermark: Optional[Any] = None
    total_rows: int = 0
    offset: int = 0
    rows_processed: int = 0
    batches_processed: int = 0
    candidate_watermark: Optional[Any] = None
    last_batch_elapsed: float = 0.0
    committed_watermark: Optional[Any] = None

    def advance(self, **changes) -> "TransferState":
        return dataclasses.replace(self, **changes)

    @property
    def has_pending_rows(self) -> bool:
        return self.offset < self.total_rows


@dataclasses.dataclass(frozen=True)
class TransferSummary:
    schema_name: str
    table_name: str
    start_time: datetime
    end_time: datetime
    elapsed_ms: int
    total_rows_to_process: int
    rows_processed: int
    rows_per_second: float
    success: bool = True
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    batches_processed: int = 0
    test_mode: bool = False
    previous_watermark: Optional[Any] = None
    committed_watermark: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly dict (datetimes as ISO strings) for XCom."""
        result = dataclasses.asdict(self)
        for name, value in result.items():
            if isinstance(value, (datetime, date)):
                result[name] = value.isoformat()
        return result

    def __str__(self) -> str:
        text = (
            f"Table: [{self.schema_name}].[{self.table_name}] - "
            f"Processed {self.rows_processed:,}/{self.total_rows_to_process:,} rows "
            f"in {self.elapsed_ms / 1000.0:.2f} seconds "
            f"({self.rows_per_second:.2f} rows/sec) - Success: {self.success}"
        )
        if not self.success:
            text += f" - Error: {self.error_message}"
        return text
