from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from toolgate.authz.policy import ToolPolicy
from toolgate.catalog.models import CatalogSnapshot, ColumnDescriptor, DataSourceDescriptor, normalize_access_level
from toolgate.db.config import resolve_dsn

logger = logging.getLogger(__name__)


def _connect(dsn: str):
    from toolgate.db.config import connect

    return connect(dsn)


def _as_tuple(v: Any) -> Tuple[str, ...]:
    if not v:
        return ()
    if isinstance(v, (list, tuple)):
        return tuple(str(x) for x in v if str(x or "").strip())
    return ()


def _row_to_descriptor(r: Any) -> DataSourceDescriptor:
    try:
        max_rows = int(r[8]) if r[8] is not None else 100
    except Exception:
        max_rows = 100
    return DataSourceDescriptor(
        table_schema=str(r[0] or "public"),
        table_name=str(r[1]),
        display_name=str(r[2] or r[1]),
        description=str(r[3]) if r[3] else None,
        access_level=normalize_access_level(r[4]),
        is_enabled=bool(r[5]),
        allowed_columns=_as_tuple(r[6]),
        excluded_columns=_as_tuple(r[7]),
        max_rows_per_query=max(1, max_rows),
    )


def load_data_sources(*, dsn: Optional[str] = None) -> Tuple[bool, str, List[DataSourceDescriptor]]:
    """
    Load enabled datasources with an access level other than `none`.

    Returns: (ok, message, descriptors)
    """
    dsn = dsn or resolve_dsn()
    if not dsn:
        return False, "Postgres not configured", []

    try:
        with _connect(dsn) as conn:
            rows = conn.execute(
                """
                SELECT
                  table_schema,
                  table_name,
                  display_name,
                  description,
                  access_level::text,
                  is_enabled,
                  allowed_columns,
                  excluded_columns,
                  max_rows_per_query
                FROM ai_datasources
                WHERE is_enabled = true
                  AND access_level <> 'none'
                ORDER BY table_schema, table_name;
                """
            ).fetchall()
    except Exception as e:
        logger.warning("Capability catalog unavailable: %s", type(e).__name__)
        return False, "catalog_unavailable", []

    return True, "ok", [_row_to_descriptor(r) for r in rows or []]


def get_table_columns(schema: str, table: str, *, dsn: Optional[str] = None) -> Tuple[bool, str, List[ColumnDescriptor]]:
    """
    Introspect column name/type/nullability/default for (schema, table).
    """
    dsn = dsn or resolve_dsn()
    if not dsn:
        return False, "Postgres not configured", []

    try:
        with _connect(dsn) as conn:
            rows = conn.execute(
                """
                SELECT
                  column_name,
                  CASE WHEN data_type = 'ARRAY' THEN udt_name ELSE data_type END,
                  is_nullable = 'YES',
                  column_default
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = %s
                ORDER BY ordinal_position;
                """,
                (str(schema), str(table)),
            ).fetchall()
    except Exception as e:
        logger.warning("Schema introspection failed for %s.%s: %s", schema, table, type(e).__name__)
        return False, "introspection_failed", []

    out: List[ColumnDescriptor] = []
    for r in rows or []:
        dtype = str(r[1] or "text")
        # information_schema reports arrays as udt names like `_text`.
        if dtype.startswith("_"):
            dtype = dtype[1:] + "[]"
        out.append(ColumnDescriptor(name=str(r[0]), data_type=dtype, nullable=bool(r[2]), default=r[3]))
    return True, "ok", out


def load_catalog(
    *,
    policy: Optional[ToolPolicy] = None,
    dsn: Optional[str] = None,
    tables: Optional[Iterable[str]] = None,
) -> Tuple[bool, str, CatalogSnapshot]:
    """
    Read the catalog and introspect columns for one request.

    `tables` limits introspection (and the snapshot) to the named tables; the validator
    uses this to re-read only what a single operation needs.
    """
    ok, msg, sources = load_data_sources(dsn=dsn)
    if not ok:
        return False, msg, CatalogSnapshot()

    deny: Set[str] = set(policy.table_denylist or ()) if policy else set()
    wanted = set(tables) if tables is not None else None

    kept: List[DataSourceDescriptor] = []
    columns: Dict[str, Tuple[ColumnDescriptor, ...]] = {}
    for ds in sources:
        if ds.table_name in deny:
            continue
        if wanted is not None and ds.table_name not in wanted:
            continue
        kept.append(ds)
        cok, cmsg, cols = get_table_columns(ds.table_schema, ds.table_name, dsn=dsn)
        if not cok:
            logger.warning("Skipping columns for %s (%s)", ds.qualified_name, cmsg)
            continue
        columns[ds.table_name] = tuple(cols)

    return True, "ok", CatalogSnapshot(sources=tuple(kept), columns=columns)
