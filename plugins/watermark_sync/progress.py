"""
Progress Reporting

Turns the orchestrator's counters and timers into throughput figures and a
log line. Holds no state of its own.
"""

from typing import Dict
import logging

logger = logging.getLogger(__name__)


def _rate(rows: int, seconds: float) -> float:
    return rows / seconds if seconds > 0 else 0.0


def report_progress(
    rows_done: int,
    rows_total: int,
    cumulative_elapsed: float,
    batch_elapsed: float,
    batch_size: int,
) -> Dict[str, float]:
    """
    Log and return transfer progress.

    Args:
        rows_done: Rows processed so far in this run
        rows_total: Rows counted as pending at the start of the run
        cumulative_elapsed: Seconds since the run started
        batch_elapsed: Seconds spent on the most recent batch
        batch_size: Rows in the most recent batch

    Returns:
        Dict with percent_complete, rows_per_second (cumulative) and
        batch_rows_per_second (instantaneous)
    """
    percent_complete = (rows_done / rows_total * 100) if rows_total > 0 else 100.0
    stats = {
        'percent_complete': percent_complete,
        'rows_per_second': _rate(rows_done, cumulative_elapsed),
        'batch_rows_per_second': _rate(batch_size, batch_elapsed),
    }

    logger.info(
        f"Progress: {rows_done:,}/{rows_total:,} rows ({percent_complete:.2f}%) - "
        f"Overall: {stats['rows_per_second']:,.2f} rows/sec, "
        f"Current batch: {stats['batch_rows_per_second']:,.2f} rows/sec"
    )
    return stats
