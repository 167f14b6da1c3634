"""
Permission validation, re-run against the current catalog right before execution.

`validate_operation` is a pure function of (name, args, snapshot): the same inputs
always produce the same verdict. It never trusts the model's tool choice; the only
string dispatch is the initial `verb_table` parse.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from toolgate.catalog.models import CatalogSnapshot, ColumnDescriptor, DataSourceDescriptor
from toolgate.errors import AUTHORIZATION_FAILURE, VALIDATION_REJECTION, AuthorizationFailure, ErrorKind, ValidationRejection
from toolgate.execution.types import ExecutionContext
from toolgate.tools.special import SpecialOperation
from toolgate.tools.synthesizer import DEFAULT_QUERY_LIMIT, OperationDescriptor, column_parameter, parse_operation_name

_ORDER_BY_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(asc|desc)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ValidatedOperation:
    """A generic operation that passed validation, with its arguments normalized."""

    name: str
    verb: str
    source: DataSourceDescriptor
    columns: Tuple[ColumnDescriptor, ...]
    filters: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    select: Tuple[str, ...] = ()
    limit: int = DEFAULT_QUERY_LIMIT
    order_by: Optional[Tuple[str, str]] = None

    @property
    def table(self) -> str:
        return self.source.table_name

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for c in self.columns:
            if c.name == name:
                return c
        return None


@dataclass(frozen=True)
class Verdict:
    ok: bool
    reason: str = "ok"
    error_kind: Optional[ErrorKind] = None
    operation: Optional[ValidatedOperation] = None


def _reject(reason: str, kind: ErrorKind = VALIDATION_REJECTION) -> Verdict:
    return Verdict(ok=False, reason=reason, error_kind=kind)


def _check_filters(
    raw: Any, exposed: Dict[str, ColumnDescriptor], *, verb: str, required: bool
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        return None, "filters must be an object"
    if required and not raw:
        return None, f"{verb} requires at least one filter condition"
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        col = exposed.get(str(k))
        if col is None:
            return None, f'Filter on column "{k}" is not allowed'
        if not column_parameter(col).accepts(v):
            return None, f'Filter value for "{k}" does not match type {col.data_type}'
        out[str(k)] = v
    return out, None


def _check_data(
    raw: Any,
    *,
    all_columns: Dict[str, ColumnDescriptor],
    ds: DataSourceDescriptor,
    verb: str,
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if not isinstance(raw, dict) or not raw:
        return None, f"{verb} requires a non-empty data object"

    data: Dict[str, Any] = {}
    for k, v in raw.items():
        name = str(k)
        col = all_columns.get(name)
        if col is None:
            return None, f'Unknown column "{name}"'
        # Excluded, non-allowlisted and generated columns are dropped, not rejected.
        if not ds.exposes(name) or col.is_auto_generated:
            continue
        required = verb == "insert" and col.required_for_insert
        if not column_parameter(col, required=required).accepts(v):
            return None, f'Value for "{name}" does not match type {col.data_type}'
        data[name] = v

    if verb == "insert":
        missing = [
            c.name
            for c in all_columns.values()
            if c.required_for_insert and ds.exposes(c.name) and data.get(c.name) is None
        ]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"

    if not data:
        return None, f"{verb} has no writable columns in data"
    return data, None


def _clamp_limit(raw: Any, max_rows: int) -> int:
    default = min(DEFAULT_QUERY_LIMIT, max_rows)
    if isinstance(raw, bool):
        return default
    try:
        n = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default
    return max(1, min(n, max_rows))


def validate_operation(name: str, args: Dict[str, Any], snapshot: CatalogSnapshot) -> Verdict:
    """
    Validate a generated (`verb_table`) operation against the current catalog.
    """
    parsed = parse_operation_name(name)
    if parsed is None:
        return _reject(f"Unknown operation: {name}")
    verb, table = parsed
    args = args if isinstance(args, dict) else {}

    ds = snapshot.find(table)
    if ds is None:
        return _reject(f"No datasource configured for table: {table}")

    if not ds.permits(verb):
        return _reject(f'Action "{verb}" not allowed for "{table}" (level: {ds.access_level})')

    if verb == "delete" and args.get("confirm") is not True:
        return _reject("Delete requires confirm: true")

    columns = snapshot.columns_for(table)
    if not columns:
        return _reject(f"No schema available for table: {table}")

    all_columns = {c.name: c for c in columns}
    exposed = {c.name: c for c in ds.exposed(columns)}

    filters, err = _check_filters(args.get("filters"), exposed, verb=verb, required=verb in ("update", "delete"))
    if err:
        return _reject(err)

    if verb == "query":
        select_raw = args.get("select")
        select: Tuple[str, ...] = ()
        if isinstance(select_raw, list):
            select = tuple(str(c) for c in select_raw if str(c) in exposed)
        order_by = None
        ob = args.get("order_by")
        if ob:
            m = _ORDER_BY_RE.match(str(ob))
            if not m:
                return _reject(f'Invalid order_by "{ob}"; use "<column> [asc|desc]"')
            if m.group(1) not in exposed:
                return _reject(f'Ordering by column "{m.group(1)}" is not allowed')
            order_by = (m.group(1), (m.group(2) or "asc").lower())
        return Verdict(
            ok=True,
            operation=ValidatedOperation(
                name=name,
                verb=verb,
                source=ds,
                columns=tuple(exposed.values()),
                filters=filters or {},
                select=select,
                limit=_clamp_limit(args.get("limit"), ds.max_rows_per_query),
                order_by=order_by,
            ),
        )

    data: Dict[str, Any] = {}
    if verb in ("insert", "update"):
        data_ok, err = _check_data(args.get("data"), all_columns=all_columns, ds=ds, verb=verb)
        if err:
            return _reject(err)
        data = data_ok or {}

    return Verdict(
        ok=True,
        operation=ValidatedOperation(
            name=name,
            verb=verb,
            source=ds,
            columns=tuple(exposed.values()),
            filters=filters or {},
            data=data,
        ),
    )


def check_arguments(descriptor: OperationDescriptor, args: Dict[str, Any]) -> Optional[str]:
    """Generic argument checks shared by every operation: required, types, confirm."""
    problems: List[str] = []
    for p in descriptor.parameters:
        present = p.name in args and args.get(p.name) is not None
        if p.required and not present:
            problems.append(f"{p.name} is required")
            continue
        if present and not p.accepts(args.get(p.name)):
            problems.append(f"{p.name} has the wrong type")
    if problems:
        return "; ".join(problems)
    confirm = descriptor.parameter("confirm")
    if confirm is not None and confirm.required and args.get("confirm") is not True:
        return f"{descriptor.name} requires confirm: true"
    return None


def validate_special(op: SpecialOperation, args: Dict[str, Any], ctx: ExecutionContext) -> Verdict:
    """
    Privileged predicates first, then the generic argument checks.
    """
    args = args if isinstance(args, dict) else {}
    try:
        op.authorize(args, ctx)
    except AuthorizationFailure as e:
        return _reject(e.message, AUTHORIZATION_FAILURE)
    except ValidationRejection as e:
        return _reject(e.message)
    err = check_arguments(op.descriptor, args)
    if err:
        return _reject(err)
    return Verdict(ok=True)
