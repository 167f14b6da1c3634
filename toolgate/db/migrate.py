"""
Schema migrations for the catalog, audit and theme tables.

Files in `migrations/` are named `<version>_<name>.sql` and applied in version order,
each in its own transaction, under a Postgres advisory lock so concurrent replicas
starting together do not race. Applied files are pinned by checksum: editing a file
after it shipped is an error, not a silent re-run.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Optional, Tuple

from toolgate.db.config import DatabaseConfig, connect, load_database_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_LOCK_KEY = 481516234200  # bigint

MigrationState = Literal["applied", "pending", "drifted"]


class MigrationDriftError(RuntimeError):
    """An applied migration file no longer matches the checksum recorded in the database."""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    checksum: str
    sql: str


@dataclass(frozen=True)
class MigrationStatus:
    version: str
    name: str
    state: MigrationState


def _parse_filename(path: Path) -> Tuple[str, str]:
    version, _, name = path.stem.partition("_")
    return version, name or path.stem


def load_migrations(directory: Optional[Path] = None) -> List[Migration]:
    d = directory or MIGRATIONS_DIR
    if not d.is_dir():
        return []
    out: List[Migration] = []
    for p in sorted(d.glob("*.sql")):
        raw = p.read_bytes()
        version, name = _parse_filename(p)
        out.append(Migration(version=version, name=name, checksum=hashlib.sha256(raw).hexdigest(), sql=raw.decode("utf-8")))
    return out


def _connect(dsn: str):
    return connect(dsn)


def _ensure_bookkeeping(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version text PRIMARY KEY,
          checksum text NOT NULL,
          applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


def _recorded_checksums(conn) -> Dict[str, str]:
    rows = conn.execute("SELECT version, checksum FROM schema_migrations;").fetchall()
    return {str(r[0]): str(r[1]) for r in rows}


def _classify(m: Migration, recorded: Dict[str, str]) -> MigrationState:
    prev = recorded.get(m.version)
    if prev is None:
        return "pending"
    return "applied" if prev == m.checksum else "drifted"


def migration_status(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> List[MigrationStatus]:
    """Report each known migration as applied, pending or drifted without changing anything."""
    migs = list(migrations) if migrations is not None else load_migrations()
    with _connect(dsn) as conn:
        _ensure_bookkeeping(conn)
        recorded = _recorded_checksums(conn)
    return [MigrationStatus(version=m.version, name=m.name, state=_classify(m, recorded)) for m in migs]


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
) -> Tuple[int, List[str]]:
    """
    Apply pending migrations.

    Returns: (applied_count, applied_versions). Raises MigrationDriftError when an
    already-applied file was modified; nothing after it is applied.
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    done: List[str] = []

    with _connect(dsn) as conn:
        conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
        try:
            _ensure_bookkeeping(conn)
            recorded = _recorded_checksums(conn)

            for m in migs:
                state = _classify(m, recorded)
                if state == "applied":
                    continue
                if state == "drifted":
                    raise MigrationDriftError(
                        f"Migration {m.version}_{m.name} changed after it was applied: "
                        f"db={recorded[m.version][:12]} file={m.checksum[:12]}"
                    )

                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations(version, checksum) VALUES (%s, %s);",
                        (m.version, m.checksum),
                    )
                logger.info("Applied migration %s_%s", m.version, m.name)
                done.append(m.version)
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))

    return len(done), done


def maybe_auto_migrate(cfg: Optional[DatabaseConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Returns: (did_attempt, message). Never raises.
    """
    cfg = cfg or load_database_config()
    if not cfg.auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = cfg.conninfo()
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        n, versions = apply_migrations(dsn=dsn)
    except Exception as e:
        logger.warning("Auto-migrate failed: %s", e)
        return True, f"Migration failed: {e}"
    if n:
        return True, f"Applied {n} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"
