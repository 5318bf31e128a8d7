"""
Table Configuration Utility Module

Parses the caller's table entries (DAG params, config files) into
TransferRequests and summarizes a run's results per entry. An entry names
its table in 'schema.table' format:

    {"table": "common.tbl_Daily_actions", "cursor_column": "Date"}
    {"table": "[sales].[Order Lines]", "cursor_column": "UpdatedAt",
     "filter": "Status = 'Active'", "key_columns": ["OrderLineId"]}
"""

import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
import logging

from watermark_sync.models import TransferRequest

logger = logging.getLogger(__name__)

_ENTRY_KEYS = {
    'table', 'cursor_column', 'filter', 'order_by', 'key_columns',
    'columns', 'target_schema', 'target_table', 'batch_size',
    'reporting_frequency', 'test_mode',
}


def parse_schema_table(entry: str) -> Tuple[str, str]:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "dbo.Users" -> ("dbo", "Users")
    - Bracketed format: "[dbo].[My Table]" -> ("dbo", "My Table")

    Raises:
        ValueError: If format is invalid (no dot separator found)
    """
    entry = entry.strip()

    match = re.match(r'^\[([^\]]+)\]\.\[([^\]]+)\]$', entry)
    if match:
        return (match.group(1), match.group(2))

    parts = entry.split('.', 1)
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )

    return (parts[0].strip(), parts[1].strip())


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None or value == '' or value == []:
        return None
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v) for v in value]


def build_transfer_request(
    entry: Dict[str, Any],
    batch_size: Optional[int] = None,
    reporting_frequency: Optional[int] = None,
    test_mode: bool = False,
) -> TransferRequest:
    """
    Build one TransferRequest from a caller entry.

    Run-wide values (batch_size, reporting_frequency, test_mode) apply unless
    the entry sets its own.

    Raises:
        ValueError: If the entry is missing 'table' or 'cursor_column', or
            carries unknown keys
    """
    unknown = set(entry) - _ENTRY_KEYS
    if unknown:
        raise ValueError(f"Unknown table entry keys: {sorted(unknown)}")
    if not entry.get('table') or not entry.get('cursor_column'):
        raise ValueError(f"Table entry needs 'table' and 'cursor_column': {entry}")

    schema_name, table_name = parse_schema_table(entry['table'])

    options: Dict[str, Any] = {}
    entry_batch_size = entry.get('batch_size', batch_size)
    if entry_batch_size is not None:
        options['batch_size'] = int(entry_batch_size)
    entry_frequency = entry.get('reporting_frequency', reporting_frequency)
    if entry_frequency is not None:
        options['reporting_frequency'] = int(entry_frequency)

    return TransferRequest(
        schema_name=schema_name,
        table_name=table_name,
        cursor_column_name=entry['cursor_column'],
        custom_filter=entry.get('filter') or None,
        order_by_column=entry.get('order_by') or None,
        test_mode=bool(entry.get('test_mode', test_mode)),
        target_schema=entry.get('target_schema') or None,
        target_table=entry.get('target_table') or None,
        columns=_as_list(entry.get('columns')),
        key_columns=_as_list(entry.get('key_columns')),
        **options,
    )


def build_transfer_requests(
    entries: List[Dict[str, Any]],
    batch_size: Optional[int] = None,
    reporting_frequency: Optional[int] = None,
    test_mode: bool = False,
) -> List[TransferRequest]:
    """
    Build TransferRequests for a list of entries.

    Raises:
        ValueError: If any entry is invalid, or two entries share a stream
            key (runs on the same key must be serialized)
    """
    requests = []
    seen = set()
    for entry in entries:
        request = build_transfer_request(entry, batch_size, reporting_frequency, test_mode)
        if request.key in seen:
            raise ValueError(f"Duplicate table entry for {request.key}")
        seen.add(request.key)
        requests.append(request)

    logger.info(f"Prepared {len(requests)} tables for incremental transfer")
    return requests


def summarize_results(
    entries: List[Dict[str, Any]],
    results: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Summarize a run from the configured entries and the summaries of the
    tables that finished.

    A failed table task returns nothing, so every entry without a successful
    summary is reported as failed.

    Returns:
        Dict with status, counts, total_rows, failed_tables and details
    """
    results = [r for r in (results or []) if r]
    succeeded = [r for r in results if r.get("success")]
    pending = Counter((r["schema_name"], r["table_name"]) for r in succeeded)

    failed_tables = []
    for entry in entries or []:
        name = parse_schema_table(entry['table'])
        if pending[name]:
            pending[name] -= 1
        else:
            failed_tables.append(f"{name[0]}.{name[1]}")

    mismatched = [
        r["validation"]["table_name"] for r in succeeded
        if r.get("validation") and not r["validation"]["validation_passed"]
    ]
    if mismatched:
        logger.warning(f"Row count mismatch for: {', '.join(mismatched)}")

    return {
        "status": "success" if not failed_tables else "partial_failure",
        "tables_transferred": len(succeeded),
        "tables_failed": len(failed_tables),
        "failed_tables": failed_tables,
        "validation_mismatches": mismatched,
        "total_rows": sum(r.get("rows_processed", 0) for r in succeeded),
        "details": results,
    }
