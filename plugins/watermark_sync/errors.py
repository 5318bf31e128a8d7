"""
Transfer Error Taxonomy

Every failure the orchestrator reports is one of these types. Library
exceptions (pyodbc, psycopg2) are translated at the I/O boundary and chained
so the original traceback stays available in the task log.
"""

from typing import Optional

import psycopg2
import pyodbc


class TransferError(Exception):
    """Base class for incremental transfer failures."""


class TransferConnectionError(TransferError):
    """A source or destination connection could not be opened or was lost."""


class QueryError(TransferError):
    """The database rejected a query (bad predicate, missing column, type mismatch)."""


class PartialBatchError(TransferError):
    """
    A batch failed partway through the batch loop.

    Rows from earlier batches are already committed in the destination and
    are not rolled back.
    """

    def __init__(self, message: str, batch_number: int, rows_committed: int):
        super().__init__(message)
        self.batch_number = batch_number
        self.rows_committed = rows_committed


class WatermarkReadError(TransferError):
    """The watermark tracking table could not be read."""


class WatermarkWriteError(TransferError):
    """The new watermark could not be persisted."""


class TransferCancelled(TransferError):
    """The caller signalled cancellation."""


_CONNECTION_ERRORS = (
    pyodbc.OperationalError,
    pyodbc.InterfaceError,
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
)

_QUERY_ERRORS = (
    pyodbc.ProgrammingError,
    pyodbc.DataError,
    psycopg2.ProgrammingError,
    psycopg2.DataError,
)


def classify_db_error(error: Exception, context: str) -> Optional[TransferError]:
    """
    Map a driver exception onto the transfer taxonomy.

    Args:
        error: Exception raised by pyodbc or psycopg2
        context: Short description of the operation, used in the message

    Returns:
        A TransferConnectionError or QueryError, or None when the error is
        not a recognised driver error (the caller decides how to wrap it)
    """
    if isinstance(error, TransferError):
        return error
    if isinstance(error, _CONNECTION_ERRORS):
        return TransferConnectionError(f"{context}: {error}")
    if isinstance(error, _QUERY_ERRORS):
        return QueryError(f"{context}: {error}")
    return None
