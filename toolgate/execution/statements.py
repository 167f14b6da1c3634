"""
SQL for validated operations.

Both the executed statement and the dry-run preview come from one composition:
`build_statement` binds values as placeholders and returns them as parameters,
`render_statement` binds the same values as quoted literals for display. The preview
is never executed.
"""

from __future__ import annotations

from typing import Any, Callable, List, Tuple

from toolgate.execution.validator import ValidatedOperation

# (column, value) -> Composable standing in for the value
Binder = Callable[[str, Any], Any]


def _adapt(op: ValidatedOperation, column: str, value: Any) -> Any:
    col = op.column(column)
    if col is not None and col.data_type.lower() in ("json", "jsonb") and value is not None:
        from psycopg.types.json import Jsonb  # type: ignore[import-not-found]

        return Jsonb(value)
    return value


def _compose(op: ValidatedOperation, bind: Binder) -> Any:
    """
    Compose the statement for `op`. `bind` is called once per value, in textual order.
    """
    from psycopg import sql  # type: ignore[import-not-found]

    table = sql.Identifier(op.source.table_schema, op.table)

    def where() -> Any:
        if not op.filters:
            return sql.SQL("")
        conds = []
        for k, v in op.filters.items():
            if v is None:
                conds.append(sql.SQL("{} IS NULL").format(sql.Identifier(k)))
            else:
                conds.append(sql.SQL("{} = {}").format(sql.Identifier(k), bind(k, v)))
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conds)

    returning = sql.SQL(" RETURNING ") + sql.SQL(", ").join(sql.Identifier(c) for c in op.column_names)

    if op.verb == "query":
        cols = sql.SQL(", ").join(sql.Identifier(c) for c in (op.select or op.column_names))
        stmt = sql.SQL("SELECT {} FROM {}").format(cols, table) + where()
        if op.order_by:
            direction = sql.SQL("DESC") if op.order_by[1] == "desc" else sql.SQL("ASC")
            stmt = stmt + sql.SQL(" ORDER BY {} ").format(sql.Identifier(op.order_by[0])) + direction
        return stmt + sql.SQL(" LIMIT {}").format(bind("", int(op.limit)))

    if op.verb == "insert":
        cols = sql.SQL(", ").join(sql.Identifier(k) for k in op.data)
        values = sql.SQL(", ").join(bind(k, v) for k, v in op.data.items())
        return sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(table, cols, values) + returning

    if op.verb == "update":
        sets = sql.SQL(", ").join(sql.SQL("{} = {}").format(sql.Identifier(k), bind(k, v)) for k, v in op.data.items())
        return sql.SQL("UPDATE {} SET {}").format(table, sets) + where() + returning

    if op.verb == "delete":
        return sql.SQL("DELETE FROM {}").format(table) + where()

    raise ValueError(f"unsupported verb: {op.verb}")


def build_statement(op: ValidatedOperation) -> Tuple[Any, List[Any]]:
    """
    Returns: (composed_sql, params)
    """
    from psycopg import sql  # type: ignore[import-not-found]

    params: List[Any] = []

    def bind(column: str, value: Any) -> Any:
        params.append(_adapt(op, column, value))
        return sql.Placeholder()

    stmt = _compose(op, bind)
    return stmt, params


def render_statement(op: ValidatedOperation) -> str:
    """Human-readable statement for previews, values inlined as SQL literals."""
    from psycopg import sql  # type: ignore[import-not-found]

    stmt = _compose(op, lambda column, value: sql.Literal(_adapt(op, column, value)))
    # No connection: psycopg quotes with its connection-less escaping.
    return stmt.as_string(None) + ";"
