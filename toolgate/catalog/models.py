from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Literal, Mapping, Optional, Tuple

AccessLevel = Literal["none", "read", "read_write", "full"]
Verb = Literal["query", "insert", "update", "delete"]

ACCESS_LEVELS: Tuple[str, ...] = ("none", "read", "read_write", "full")
VERBS: Tuple[str, ...] = ("query", "insert", "update", "delete")

# Which access levels grant each verb.
VERB_ACCESS: Dict[str, FrozenSet[str]] = {
    "query": frozenset({"read", "read_write", "full"}),
    "insert": frozenset({"read_write", "full"}),
    "update": frozenset({"read_write", "full"}),
    "delete": frozenset({"full"}),
}

# Filled by the datastore (primary key, timestamps); never part of an input schema.
AUTO_GENERATED_COLUMNS: FrozenSet[str] = frozenset({"id", "created_at", "updated_at"})


def normalize_access_level(raw: object) -> str:
    v = str(raw or "").strip().lower()
    return v if v in ACCESS_LEVELS else "none"


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    data_type: str
    nullable: bool = True
    default: Optional[str] = None

    @property
    def is_auto_generated(self) -> bool:
        return self.name in AUTO_GENERATED_COLUMNS

    @property
    def required_for_insert(self) -> bool:
        return (not self.nullable) and not self.default and not self.is_auto_generated


@dataclass(frozen=True)
class DataSourceDescriptor:
    table_name: str
    access_level: str = "none"
    table_schema: str = "public"
    display_name: str = ""
    description: Optional[str] = None
    is_enabled: bool = True
    allowed_columns: Tuple[str, ...] = ()
    excluded_columns: Tuple[str, ...] = ()
    max_rows_per_query: int = 100

    @property
    def label(self) -> str:
        return self.display_name or self.table_name

    @property
    def qualified_name(self) -> str:
        return f"{self.table_schema}.{self.table_name}"

    @property
    def is_active(self) -> bool:
        return bool(self.is_enabled) and normalize_access_level(self.access_level) != "none"

    def permits(self, verb: str) -> bool:
        if not self.is_active:
            return False
        return normalize_access_level(self.access_level) in VERB_ACCESS.get(verb, frozenset())

    def exposes(self, column: str) -> bool:
        """A column is exposed when it is not excluded and, if an allowlist exists, is on it."""
        if column in self.excluded_columns:
            return False
        if self.allowed_columns and column not in self.allowed_columns:
            return False
        return True

    def exposed(self, columns: Iterable[ColumnDescriptor]) -> Tuple[ColumnDescriptor, ...]:
        return tuple(c for c in columns if self.exposes(c.name))


@dataclass(frozen=True)
class CatalogSnapshot:
    """
    Capability catalog as read for one request, plus the columns introspected for it.

    Snapshots are built per request and passed explicitly; nothing caches them.
    """

    sources: Tuple[DataSourceDescriptor, ...] = ()
    columns: Mapping[str, Tuple[ColumnDescriptor, ...]] = field(default_factory=dict)

    def find(self, table_name: str) -> Optional[DataSourceDescriptor]:
        for ds in self.sources:
            if ds.table_name == table_name and ds.is_active:
                return ds
        return None

    def active_sources(self) -> Tuple[DataSourceDescriptor, ...]:
        return tuple(ds for ds in self.sources if ds.is_active)

    def columns_for(self, table_name: str) -> Tuple[ColumnDescriptor, ...]:
        return tuple(self.columns.get(table_name) or ())
