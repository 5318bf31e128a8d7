"""
Runtime Configuration

Environment-driven defaults for the incremental transfer engine. Airflow
deployments set these on the scheduler/worker; DAG params override the
per-run values (batch size, reporting frequency, test mode).
"""

import os

DEFAULT_BATCH_SIZE = 5000
DEFAULT_REPORTING_FREQUENCY = 5
DEFAULT_WATERMARK_SCHEMA = "public"
DEFAULT_WATERMARK_TABLE = "incremental_load_watermarks"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")
    return max(minimum, value)


def get_default_batch_size() -> int:
    """Rows per batch window when a request does not specify one."""
    return _env_int("INCREMENTAL_BATCH_SIZE", DEFAULT_BATCH_SIZE, minimum=1)


def get_default_reporting_frequency() -> int:
    """Batches between progress reports."""
    return _env_int("INCREMENTAL_REPORTING_FREQUENCY", DEFAULT_REPORTING_FREQUENCY, minimum=1)


def is_strict_consistency_mode() -> bool:
    """
    Check if strict consistency mode is enabled.

    When STRICT_CONSISTENCY=true, NOLOCK hints are dropped from source reads.
    NOLOCK never blocks writers on the source table but can return missing
    rows, duplicates and uncommitted data under concurrent writes.

    Returns:
        True if strict consistency mode is enabled
    """
    val = os.environ.get('STRICT_CONSISTENCY', '').lower()
    return val in ('true', '1', 'yes', 'on')


def get_watermark_location() -> tuple:
    """Return (schema, table) of the watermark tracking table."""
    schema = os.environ.get("WATERMARK_SCHEMA") or DEFAULT_WATERMARK_SCHEMA
    table = os.environ.get("WATERMARK_TABLE") or DEFAULT_WATERMARK_TABLE
    return schema, table


def get_query_timeout_seconds() -> int:
    """pyodbc query timeout for source reads (0 = driver default, no limit)."""
    return _env_int("QUERY_TIMEOUT_SECONDS", 0)


def get_statement_timeout_ms() -> int:
    """PostgreSQL statement_timeout for destination writes (0 = disabled)."""
    return _env_int("STATEMENT_TIMEOUT_MS", 0)


def get_cancel_check_rows() -> int:
    """How many streamed rows pass between checks of the cancel signal."""
    return _env_int("CANCEL_CHECK_ROWS", 1000, minimum=1)


def get_max_parallel_transfers() -> int:
    return _env_int("MAX_PARALLEL_TRANSFERS", 8, minimum=1)
