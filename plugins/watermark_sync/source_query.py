"""
Source Query Builder

Builds the SQL Server statements shared by the row counter and the batch
copier so both evaluate exactly the same pending-row predicate:

    [cursor] > ? AND (custom filter)

Identifiers are bracket-quoted; the watermark, offset and fetch size are
always bound as ``?`` parameters. The custom filter is a caller-supplied
backend-native expression and is embedded as-is.
"""

from typing import Any, List, Optional, Sequence, Tuple

from watermark_sync import config
from watermark_sync.models import TableKey


def quote_identifier(name: str) -> str:
    """Bracket-quote a SQL Server identifier, escaping embedded ``]``."""
    return '[' + name.replace(']', ']]') + ']'


def qualified_table(schema_name: str, table_name: str) -> str:
    return f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}"


def _table_hint() -> str:
    return "" if config.is_strict_consistency_mode() else " WITH (NOLOCK)"


def build_pending_predicate(
    cursor_column: str,
    watermark: Optional[Any],
    custom_filter: Optional[str],
) -> Tuple[str, List[Any]]:
    """
    Build the WHERE clause selecting rows newer than the watermark.

    Returns:
        Tuple of (where_clause, params); where_clause is empty when there is
        neither a watermark nor a filter
    """
    conditions = []
    params: List[Any] = []
    if watermark is not None:
        conditions.append(f"{quote_identifier(cursor_column)} > ?")
        params.append(watermark)
    if custom_filter:
        conditions.append(f"({custom_filter})")

    if not conditions:
        return "", params
    return "WHERE " + " AND ".join(conditions), params


def build_count_query(
    key: TableKey,
    watermark: Optional[Any],
    custom_filter: Optional[str],
) -> Tuple[str, List[Any]]:
    where_clause, params = build_pending_predicate(
        key.cursor_column_name, watermark, custom_filter
    )
    query = (
        f"SELECT COUNT_BIG(*) FROM "
        f"{qualified_table(key.schema_name, key.table_name)}{_table_hint()}"
    )
    if where_clause:
        query += f"\n{where_clause}"
    return query, params


def build_window_query(
    key: TableKey,
    watermark: Optional[Any],
    custom_filter: Optional[str],
    order_by_columns: Sequence[str],
    offset: int,
    fetch_size: int,
    columns: Optional[Sequence[str]] = None,
) -> Tuple[str, List[Any]]:
    """
    Build one OFFSET/FETCH batch window over the pending rows.

    Args:
        key: Source table and cursor column
        watermark: Last committed cursor value, or None for a full scan
        custom_filter: Optional extra predicate
        order_by_columns: Sort columns; must give a stable order for windows
            not to overlap
        offset: Rows to skip
        fetch_size: Rows to return
        columns: Columns to select (None selects all)

    Returns:
        Tuple of (query, params)
    """
    if not order_by_columns:
        raise ValueError("A batch window needs at least one ORDER BY column")

    select_list = ', '.join(quote_identifier(c) for c in columns) if columns else '*'
    order_by = ', '.join(quote_identifier(c) for c in order_by_columns)
    where_clause, params = build_pending_predicate(
        key.cursor_column_name, watermark, custom_filter
    )

    query = (
        f"SELECT {select_list}\n"
        f"FROM {qualified_table(key.schema_name, key.table_name)}{_table_hint()}\n"
    )
    if where_clause:
        query += f"{where_clause}\n"
    query += f"ORDER BY {order_by}\nOFFSET ? ROWS FETCH NEXT ? ROWS ONLY"

    params.extend([offset, fetch_size])
    return query, params
