"""
Append-only audit log of attempted operations (Postgres `ai_tool_calls`).

This module only inserts and selects. The table rejects UPDATE/DELETE at the database
level as well.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from toolgate.db.config import resolve_dsn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    operation: str
    actor_id: Optional[str]
    session_id: Optional[str]
    arguments: Dict[str, Any] = field(default_factory=dict)
    outcome: Dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error: Optional[str] = None
    dry_run: bool = False
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "actor_id": self.actor_id,
            "session_id": self.session_id,
            "arguments": self.arguments,
            "outcome": self.outcome,
            "success": self.success,
            "error": self.error,
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _connect(dsn: str):
    from toolgate.db.config import connect

    return connect(dsn)


def _json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def append_audit_record(record: AuditRecord, *, dsn: Optional[str] = None) -> Tuple[bool, str]:
    """
    Write one audit record synchronously.

    Returns: (ok, message). Never raises; callers surface a failed write separately
    from the operation's own outcome.
    """
    dsn = dsn or resolve_dsn()
    if not dsn:
        return False, "Postgres not configured"

    try:
        with _connect(dsn) as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO ai_tool_calls (
                      tool_name, user_id, session_id, arguments, result, success, error, dry_run, duration_ms
                    )
                    VALUES (%s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s);
                    """,
                    (
                        record.operation,
                        record.actor_id,
                        record.session_id,
                        _json(record.arguments),
                        _json(record.outcome),
                        bool(record.success),
                        record.error,
                        bool(record.dry_run),
                        record.duration_ms,
                    ),
                )
        return True, "ok"
    except Exception as e:
        return False, f"audit_write_failed:{type(e).__name__}"


def list_audit_records(
    *,
    dsn: Optional[str] = None,
    session_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 50,
) -> Tuple[bool, str, List[AuditRecord]]:
    """Most recent audit records first, optionally filtered."""
    dsn = dsn or resolve_dsn()
    if not dsn:
        return False, "Postgres not configured", []
    limit = max(1, min(int(limit), 500))

    where: List[str] = []
    params: List[Any] = []
    if session_id:
        where.append("session_id = %s")
        params.append(session_id)
    if actor_id:
        where.append("user_id = %s")
        params.append(actor_id)
    if operation:
        where.append("tool_name = %s")
        params.append(operation)
    clause = ("WHERE " + " AND ".join(where)) if where else ""

    try:
        with _connect(dsn) as conn:
            rows = conn.execute(
                f"""
                SELECT id, tool_name, user_id, session_id, arguments, result,
                       success, error, dry_run, duration_ms, created_at
                FROM ai_tool_calls
                {clause}
                ORDER BY created_at DESC, id DESC
                LIMIT %s;
                """,
                (*params, limit),
            ).fetchall()
    except Exception as e:
        logger.warning("Reading audit records failed: %s", type(e).__name__)
        return False, "audit_read_failed", []

    out: List[AuditRecord] = []
    for r in rows or []:
        out.append(
            AuditRecord(
                id=int(r[0]),
                operation=str(r[1]),
                actor_id=r[2],
                session_id=r[3],
                arguments=r[4] if isinstance(r[4], dict) else {},
                outcome=r[5] if isinstance(r[5], dict) else {},
                success=bool(r[6]),
                error=r[7],
                dry_run=bool(r[8]),
                duration_ms=r[9],
                created_at=r[10],
            )
        )
    return True, "ok", out
