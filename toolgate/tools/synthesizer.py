from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from toolgate.catalog.models import CatalogSnapshot, ColumnDescriptor, DataSourceDescriptor

logger = logging.getLogger(__name__)

_OPERATION_NAME_RE = re.compile(r"^(query|insert|update|delete)_(.+)$")

DEFAULT_QUERY_LIMIT = 10

_INTEGER_TYPES = {"integer", "int", "int2", "int4", "int8", "bigint", "smallint", "serial", "bigserial"}
_NUMBER_TYPES = {"numeric", "decimal", "real", "double precision", "float", "float4", "float8"}
_BOOLEAN_TYPES = {"boolean", "bool"}
_OBJECT_TYPES = {"json", "jsonb"}
_DATETIME_TYPES = {
    "timestamp",
    "timestamptz",
    "timestamp with time zone",
    "timestamp without time zone",
}


@dataclass(frozen=True)
class ParameterSpec:
    """One typed input of an operation (JSON Schema flavoured)."""

    name: str
    type: str = "string"
    required: bool = False
    nullable: bool = False
    description: str = ""
    format: Optional[str] = None
    item_type: Optional[str] = None
    enum: Optional[Tuple[str, ...]] = None
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    default: Any = None
    properties: Tuple["ParameterSpec", ...] = ()

    def field(self, name: str) -> Optional["ParameterSpec"]:
        for p in self.properties:
            if p.name == name:
                return p
        return None

    def to_json_schema(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.description:
            out["description"] = self.description
        if self.format:
            out["format"] = self.format
        if self.item_type:
            items: Dict[str, Any] = {"type": self.item_type}
            if self.enum:
                items["enum"] = list(self.enum)
            out["items"] = items
        elif self.enum:
            out["enum"] = list(self.enum)
        if self.minimum is not None:
            out["minimum"] = self.minimum
        if self.maximum is not None:
            out["maximum"] = self.maximum
        if self.default is not None:
            out["default"] = self.default
        if self.type == "object" and self.properties:
            out["properties"] = {p.name: p.to_json_schema() for p in self.properties}
            req = [p.name for p in self.properties if p.required]
            if req:
                out["required"] = req
            out["additionalProperties"] = False
        return out

    def accepts(self, value: Any) -> bool:
        """Type check for one submitted value."""
        if value is None:
            return self.nullable or not self.required
        t = self.type
        if t == "integer":
            return isinstance(value, int) and not isinstance(value, bool)
        if t == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if t == "boolean":
            return isinstance(value, bool)
        if t == "object":
            return isinstance(value, dict)
        if t == "array":
            return isinstance(value, list)
        if not isinstance(value, str):
            return False
        if self.format == "uuid":
            try:
                uuid.UUID(value)
            except ValueError:
                return False
        if self.enum and value not in self.enum:
            return False
        return True


@dataclass(frozen=True)
class OperationDescriptor:
    name: str
    description: str
    parameters: Tuple[ParameterSpec, ...] = ()
    verb: Optional[str] = None
    table: Optional[str] = None
    privileged: bool = False

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def input_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {p.name: p.to_json_schema() for p in self.parameters},
        }
        req = [p.name for p in self.parameters if p.required]
        if req:
            schema["required"] = req
        return schema

    def to_tool_schema(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema()}


def operation_name(verb: str, table: str) -> str:
    return f"{verb}_{table}"


def parse_operation_name(name: str) -> Optional[Tuple[str, str]]:
    """`update_themes` -> ("update", "themes"); None when not a generated name."""
    m = _OPERATION_NAME_RE.match((name or "").strip())
    if not m:
        return None
    return m.group(1), m.group(2)


def json_type_for(pg_type: str) -> Tuple[str, Optional[str], Optional[str]]:
    """
    Map a Postgres type to (json_type, format, item_type).
    """
    t = (pg_type or "").strip().lower()
    if t.endswith("[]") or t == "array":
        inner = t[:-2] if t.endswith("[]") else "text"
        item, _, _ = json_type_for(inner)
        return "array", None, item if item != "array" else "string"
    if t in _INTEGER_TYPES:
        return "integer", None, None
    if t in _NUMBER_TYPES or t.startswith("numeric("):
        return "number", None, None
    if t in _BOOLEAN_TYPES:
        return "boolean", None, None
    if t in _OBJECT_TYPES:
        return "object", None, None
    if t == "uuid":
        return "string", "uuid", None
    if t == "date":
        return "string", "date", None
    if t in _DATETIME_TYPES:
        return "string", "date-time", None
    return "string", None, None


def column_parameter(col: ColumnDescriptor, *, required: bool = False) -> ParameterSpec:
    jtype, fmt, item = json_type_for(col.data_type)
    return ParameterSpec(
        name=col.name,
        type=jtype,
        format=fmt,
        item_type=item,
        required=required,
        nullable=bool(col.nullable),
        description=col.data_type,
    )


def _filters_param(exposed: Sequence[ColumnDescriptor], *, required: bool) -> ParameterSpec:
    desc = "Equality conditions as column/value pairs"
    if required:
        desc += " (at least one condition is mandatory)"
    return ParameterSpec(
        name="filters",
        type="object",
        required=required,
        description=desc,
        properties=tuple(column_parameter(c) for c in exposed),
    )


def _data_param(columns: Sequence[ColumnDescriptor], *, enforce_required: bool, description: str) -> ParameterSpec:
    props = tuple(column_parameter(c, required=enforce_required and c.required_for_insert) for c in columns)
    return ParameterSpec(name="data", type="object", required=True, description=description, properties=props)


def synthesize_for_source(ds: DataSourceDescriptor, columns: Iterable[ColumnDescriptor]) -> List[OperationDescriptor]:
    """
    Build the typed operations one catalog entry allows.

    query: read, read_write, full
    insert/update: read_write, full
    delete: full (filters + confirm)
    """
    if not ds.is_active:
        return []

    exposed = ds.exposed(columns)
    writable = tuple(c for c in exposed if not c.is_auto_generated)
    label = ds.label
    suffix = f" {ds.description}" if ds.description else ""
    ops: List[OperationDescriptor] = []

    if ds.permits("query"):
        ops.append(
            OperationDescriptor(
                name=operation_name("query", ds.table_name),
                verb="query",
                table=ds.table_name,
                description=f'Read rows from "{label}".{suffix}',
                parameters=(
                    _filters_param(exposed, required=False),
                    ParameterSpec(
                        name="select",
                        type="array",
                        item_type="string",
                        enum=tuple(c.name for c in exposed),
                        description="Columns to return (default: all exposed columns)",
                    ),
                    ParameterSpec(
                        name="limit",
                        type="integer",
                        minimum=1,
                        maximum=ds.max_rows_per_query,
                        default=min(DEFAULT_QUERY_LIMIT, ds.max_rows_per_query),
                        description=f"Maximum rows (default {DEFAULT_QUERY_LIMIT}, max {ds.max_rows_per_query})",
                    ),
                    ParameterSpec(name="order_by", type="string", description="Sort order, e.g. 'created_at desc'"),
                ),
            )
        )

    if ds.permits("insert"):
        ops.append(
            OperationDescriptor(
                name=operation_name("insert", ds.table_name),
                verb="insert",
                table=ds.table_name,
                description=f'Create a new row in "{label}".',
                parameters=(_data_param(writable, enforce_required=True, description="Values for the new row"),),
            )
        )

    if ds.permits("update"):
        ops.append(
            OperationDescriptor(
                name=operation_name("update", ds.table_name),
                verb="update",
                table=ds.table_name,
                description=f'Update rows in "{label}". Filters must contain at least one condition.',
                parameters=(
                    _filters_param(exposed, required=True),
                    _data_param(writable, enforce_required=False, description="New values"),
                ),
            )
        )

    if ds.permits("delete"):
        ops.append(
            OperationDescriptor(
                name=operation_name("delete", ds.table_name),
                verb="delete",
                table=ds.table_name,
                description=(
                    f'Delete rows from "{label}". Cannot be undone. '
                    "Filters must contain at least one condition and confirm must be true."
                ),
                parameters=(
                    _filters_param(exposed, required=True),
                    ParameterSpec(
                        name="confirm",
                        type="boolean",
                        required=True,
                        description="Must be true to confirm the deletion",
                    ),
                ),
            )
        )

    return ops


def synthesize_operations(
    snapshot: CatalogSnapshot,
    *,
    reserved_names: FrozenSet[str] = frozenset(),
) -> List[OperationDescriptor]:
    """
    Generated operations for every active catalog entry with introspected columns.

    Names in `reserved_names` belong to privileged operations; a generated operation that
    would shadow one is dropped.
    """
    out: List[OperationDescriptor] = []
    seen: Set[str] = set()
    for ds in snapshot.active_sources():
        cols = snapshot.columns_for(ds.table_name)
        if not cols:
            logger.warning("No columns for %s; skipping operation synthesis", ds.qualified_name)
            continue
        for op in synthesize_for_source(ds, cols):
            if op.name in reserved_names:
                logger.warning("Generated operation %s collides with a privileged operation; dropped", op.name)
                continue
            if op.name in seen:
                continue
            seen.add(op.name)
            out.append(op)
    return out
