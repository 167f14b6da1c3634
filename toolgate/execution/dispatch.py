"""
One operation call end to end: validate against the current catalog, execute or
dry-run, write exactly one audit record, return a tagged result.

Privileged operations are looked up by exact name in their own registry first; the
generic `verb_table` path never sees their names.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from toolgate.audit.log import AuditRecord, append_audit_record
from toolgate.authz.policy import ToolPolicy, redact_value
from toolgate.catalog.models import CatalogSnapshot
from toolgate.catalog.store import load_catalog
from toolgate.errors import EXECUTION_FAILURE, VALIDATION_REJECTION, ToolgateError
from toolgate.execution.executor import execute_operation
from toolgate.execution.types import ExecutionContext, ExecutionResult
from toolgate.execution.validator import validate_operation, validate_special
from toolgate.tools.special import SPECIAL_OPERATION_NAMES, SpecialOperation, SpecialOperationsRegistry
from toolgate.tools.synthesizer import OperationDescriptor, parse_operation_name, synthesize_operations

logger = logging.getLogger(__name__)

CatalogLoader = Callable[..., Tuple[bool, str, CatalogSnapshot]]
AuditWriter = Callable[..., Tuple[bool, str]]


def published_operations(snapshot: CatalogSnapshot, specials: SpecialOperationsRegistry) -> List[OperationDescriptor]:
    """The outward operation listing: generated operations joined with privileged ones."""
    generated = synthesize_operations(snapshot, reserved_names=SPECIAL_OPERATION_NAMES)
    return generated + specials.descriptors()


def _run_special(op: SpecialOperation, args: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
    verdict = validate_special(op, args, ctx)
    if not verdict.ok:
        return ExecutionResult(success=False, error=verdict.reason, error_kind=verdict.error_kind)
    try:
        data = op.handler(args, ctx)
    except ToolgateError as e:
        return ExecutionResult(success=False, error=e.message, error_kind=e.kind)
    except Exception as e:
        logger.error("Privileged operation %s crashed", op.name, exc_info=True)
        return ExecutionResult(success=False, error=f"{type(e).__name__}", error_kind=EXECUTION_FAILURE)
    return ExecutionResult(success=True, data=data)


def _run_generic(
    name: str,
    args: Dict[str, Any],
    ctx: ExecutionContext,
    *,
    policy: ToolPolicy,
    dsn: Optional[str],
    catalog_loader: CatalogLoader,
) -> ExecutionResult:
    parsed = parse_operation_name(name)
    if parsed is None:
        return ExecutionResult(success=False, error=f"Unknown operation: {name}", error_kind=VALIDATION_REJECTION)

    # Fresh read: a permission revoked since the tools were published must not pass.
    ok, msg, snapshot = catalog_loader(policy=policy, dsn=dsn, tables=[parsed[1]])
    if not ok:
        return ExecutionResult(
            success=False, error=f"capability catalog unavailable ({msg})", error_kind=EXECUTION_FAILURE
        )

    verdict = validate_operation(name, args, snapshot)
    if not verdict.ok or verdict.operation is None:
        return ExecutionResult(success=False, error=verdict.reason, error_kind=verdict.error_kind)
    return execute_operation(verdict.operation, ctx, dsn=dsn)


def invoke_operation(
    name: str,
    args: Optional[Dict[str, Any]],
    ctx: ExecutionContext,
    *,
    policy: ToolPolicy,
    specials: SpecialOperationsRegistry,
    dsn: Optional[str] = None,
    catalog_loader: CatalogLoader = load_catalog,
    audit_writer: Optional[AuditWriter] = None,
) -> ExecutionResult:
    """
    Validate, execute and audit one operation call. Never raises.
    """
    started = time.monotonic()
    name = (name or "").strip()
    args = args if isinstance(args, dict) else {}

    try:
        if not policy.enabled:
            result = ExecutionResult(success=False, error="tool calling is disabled", error_kind=VALIDATION_REJECTION)
        elif name in SPECIAL_OPERATION_NAMES:
            op = specials.get(name)
            if op is None:
                result = ExecutionResult(
                    success=False, error=f"Operation not available: {name}", error_kind=VALIDATION_REJECTION
                )
            else:
                result = _run_special(op, args, ctx)
        else:
            result = _run_generic(name, args, ctx, policy=policy, dsn=dsn, catalog_loader=catalog_loader)
    except Exception as e:
        logger.error("Operation %s failed unexpectedly", name, exc_info=True)
        result = ExecutionResult(success=False, error=type(e).__name__, error_kind=EXECUTION_FAILURE)

    if not result.success:
        logger.info("Operation %s rejected/failed (%s): %s", name, result.error_kind, result.error)

    duration_ms = int((time.monotonic() - started) * 1000)
    record = AuditRecord(
        operation=name or "<empty>",
        actor_id=ctx.actor_id or None,
        session_id=ctx.session_id,
        arguments=redact_value(args) if policy.redact_secrets else dict(args),
        outcome=result.outcome_summary(),
        success=result.success,
        error=result.error,
        dry_run=ctx.dry_run,
        duration_ms=duration_ms,
    )
    try:
        audited, why = (audit_writer or append_audit_record)(record, dsn=dsn)
    except Exception as e:
        audited, why = False, f"audit_write_failed:{type(e).__name__}"
    if not audited:
        # Surfaced on its own; the operation's outcome stays as it is.
        logger.error("Audit write failed for %s (actor=%s): %s", name, ctx.actor_id, why)

    return replace(result, audited=bool(audited))
