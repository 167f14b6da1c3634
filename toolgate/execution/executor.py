from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from toolgate.db.config import resolve_dsn
from toolgate.errors import EXECUTION_FAILURE
from toolgate.execution.statements import build_statement, render_statement
from toolgate.execution.types import ExecutionContext, ExecutionResult
from toolgate.execution.validator import ValidatedOperation

logger = logging.getLogger(__name__)


def _connect(dsn: str):
    from toolgate.db.config import connect

    return connect(dsn)


def strip_unexposed(op: ValidatedOperation, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop excluded, non-allowlisted and generated columns from a write payload."""
    out: Dict[str, Any] = {}
    for k, v in (payload or {}).items():
        col = op.column(k)
        if col is None or col.is_auto_generated or not op.source.exposes(k):
            continue
        out[k] = v
    return out


def _rows_to_dicts(cur: Any, rows: List[Any], op: ValidatedOperation) -> List[Dict[str, Any]]:
    names = [d[0] for d in (cur.description or [])]
    out: List[Dict[str, Any]] = []
    for r in rows or []:
        rec = dict(zip(names, r)) if not isinstance(r, dict) else dict(r)
        out.append({k: v for k, v in rec.items() if op.source.exposes(k)})
    return out


def execute_operation(
    op: ValidatedOperation,
    ctx: ExecutionContext,
    *,
    dsn: Optional[str] = None,
) -> ExecutionResult:
    """
    Execute one validated operation.

    Dry-run renders insert/update/delete as statement text and touches nothing.
    Reads have no side effects and run in both modes. Live mutations run as a single
    statement in their own transaction.
    """
    op = replace(op, data=strip_unexposed(op, op.data))
    if op.verb in ("insert", "update") and not op.data:
        return ExecutionResult(success=False, error="no writable columns in data", error_kind=EXECUTION_FAILURE)

    statement = render_statement(op)
    if ctx.dry_run and op.verb != "query":
        logger.info("Dry-run %s by actor=%s", op.name, ctx.actor_id)
        data: Any = {"dry_run": True, "data": op.data} if op.data else {"dry_run": True, "filters": op.filters}
        return ExecutionResult(success=True, data=data, row_count=0, dry_run_statement=statement)

    dsn = dsn or resolve_dsn()
    if not dsn:
        return ExecutionResult(success=False, error="Postgres not configured", error_kind=EXECUTION_FAILURE)

    try:
        stmt, params = build_statement(op)
        with _connect(dsn) as conn:
            with conn.transaction():
                cur = conn.execute(stmt, params)
                if op.verb == "delete":
                    count = int(cur.rowcount or 0)
                    rows: List[Dict[str, Any]] = []
                else:
                    rows = _rows_to_dicts(cur, cur.fetchall(), op)
                    count = len(rows)
    except Exception as e:
        logger.warning("Operation %s failed: %s", op.name, type(e).__name__)
        detail = str(e).strip().splitlines()[0][:200] if str(e).strip() else ""
        return ExecutionResult(
            success=False,
            error=f"{type(e).__name__}: {detail}" if detail else type(e).__name__,
            error_kind=EXECUTION_FAILURE,
        )

    logger.info("Executed %s rows=%d actor=%s", op.name, count, ctx.actor_id)
    return ExecutionResult(
        success=True,
        data=rows if op.verb != "delete" else {"row_count": count},
        row_count=count,
        dry_run_statement=statement if ctx.dry_run else None,
    )
