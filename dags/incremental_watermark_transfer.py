"""
SQL Server to PostgreSQL Watermark Transfer DAG

Copies rows added or changed since the previous run for each configured
table. Every table tracks a watermark (the highest cursor value copied) in
a tracking table in the target database:

1. Ensure the watermark tracking table exists
2. Build one transfer request per configured table
3. Transfer each table in its own mapped task (batch windows + COPY)
4. Collect per-table summaries; fail the run if any table failed

A table whose transfer fails fails its mapped task, so Airflow's task
retries re-run it from the unchanged watermark. A table's watermark only
advances when its whole transfer succeeded. Give tables a natural key
(key_columns) so a retried run upserts instead of appending duplicates.
"""

from airflow.decorators import dag, task
from airflow.exceptions import AirflowException
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import List, Dict, Any
import logging

from watermark_sync import config
from watermark_sync.orchestrator import IncrementalTransfer
from watermark_sync.table_config import (
    build_transfer_request,
    build_transfer_requests,
    summarize_results,
)
from watermark_sync.validation import RowCountValidator
from watermark_sync.watermark_store import WatermarkStore

MAX_PARALLEL_TRANSFERS = config.get_max_parallel_transfers()

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 2,
        "retry_delay": timedelta(minutes=1),
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="SQL Server connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID (also holds the watermark table)"
        ),
        "tables": Param(
            default=[],
            type="array",
            description=(
                "Table entries, e.g. {\"table\": \"dbo.Orders\", \"cursor_column\": "
                "\"UpdatedAt\", \"filter\": \"Status = 'Active'\", \"key_columns\": [\"OrderId\"]}"
            ),
        ),
        "batch_size": Param(
            default=config.get_default_batch_size(),
            type="integer",
            minimum=1,
            maximum=1000000,
            description="Rows per batch window"
        ),
        "reporting_frequency": Param(
            default=config.get_default_reporting_frequency(),
            type="integer",
            minimum=1,
            description="Batches between progress log lines"
        ),
        "test_mode": Param(
            default=False,
            type="boolean",
            description="Read and count only; no target writes, no watermark update"
        ),
        "validate_counts": Param(
            default=False,
            type="boolean",
            description="Compare source and target row counts after each table (slower)"
        ),
    },
    tags=["migration", "mssql", "postgres", "etl", "incremental", "watermark"],
)
def incremental_watermark_transfer():
    """Watermark-based incremental transfer of selected tables."""

    @task
    def initialize_watermarks(**context) -> str:
        params = context["params"]
        if params.get("test_mode"):
            return "Test mode: watermark table untouched"
        WatermarkStore(params["target_conn_id"]).ensure_tracking_table()
        return "Watermark table ready"

    @task
    def build_requests(**context) -> List[Dict[str, Any]]:
        """
        Validate table entries up front so a typo fails the run before any
        table is copied.

        Returns:
            The entries with run-wide options resolved
        """
        params = context["params"]
        requests = build_transfer_requests(
            params.get("tables", []),
            batch_size=params["batch_size"],
            reporting_frequency=params["reporting_frequency"],
            test_mode=params["test_mode"],
        )
        if not requests:
            logger.warning("No tables configured for incremental transfer")

        entries = []
        for entry, request in zip(params.get("tables", []), requests):
            resolved = dict(entry)
            resolved["batch_size"] = request.batch_size
            resolved["reporting_frequency"] = request.reporting_frequency
            resolved["test_mode"] = request.test_mode
            entries.append(resolved)
        return entries

    @task(max_active_tis_per_dagrun=MAX_PARALLEL_TRANSFERS)
    def transfer_table(entry: Dict[str, Any], **context) -> Dict[str, Any]:
        params = context["params"]
        request = build_transfer_request(entry)
        transfer = IncrementalTransfer(params["source_conn_id"], params["target_conn_id"])
        summary = transfer.transfer_table(request)
        logger.info(str(summary))

        # Fail the task so Airflow retries the table
        if not summary.success:
            raise AirflowException(
                f"Transfer of {request.schema_name}.{request.table_name} failed "
                f"({summary.error_type}): {summary.error_message}"
            )

        result = summary.to_dict()
        if params.get("validate_counts") and not request.test_mode:
            validator = RowCountValidator(params["source_conn_id"], params["target_conn_id"])
            result["validation"] = validator.validate_row_count(request)
        return result

    @task(trigger_rule="all_done")
    def collect_results(
        entries: List[Dict[str, Any]], results: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        summary = summarize_results(entries, results)

        logger.info(
            f"Incremental transfer complete: {summary['tables_transferred']} tables "
            f"succeeded, {summary['tables_failed']} failed, "
            f"{summary['total_rows']:,} rows copied"
        )

        if summary["failed_tables"]:
            raise AirflowException(f"Failed tables: {', '.join(summary['failed_tables'])}")

        return summary

    ready = initialize_watermarks()
    entries = build_requests()
    ready >> entries

    results = transfer_table.expand(entry=entries)
    collect_results(entries, results)


incremental_watermark_transfer()
