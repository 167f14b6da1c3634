"""
Datastore settings shared by the catalog, executor, audit log and privileged operations.

Every module resolves the DSN per call; nothing caches a connection or the catalog.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    try:
        v = int((os.getenv(name) or "").strip() or default)
    except ValueError:
        v = default
    return max(lo, min(v, hi))


@dataclass(frozen=True)
class DatabaseConfig:
    # POSTGRES_DSN wins; otherwise the parts, which all must be present.
    dsn: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    dbname: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    # Catalog reads happen on every tool turn; an unreachable datastore must fail fast.
    connect_timeout_seconds: int = 5
    auto_migrate: bool = False

    def conninfo(self) -> Optional[str]:
        if self.dsn:
            return self.dsn
        if not (self.host and self.dbname and self.user and self.password):
            return None
        from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

        # make_conninfo quotes special characters in passwords.
        return make_conninfo(host=self.host, port=self.port, dbname=self.dbname, user=self.user, password=self.password)


def load_database_config() -> DatabaseConfig:
    """
    Env:
    - POSTGRES_DSN, or POSTGRES_HOST / POSTGRES_PORT (5432) / POSTGRES_DB / POSTGRES_USER / POSTGRES_PASSWORD
    - POSTGRES_CONNECT_TIMEOUT_SECONDS=5 (1..60)
    - DB_AUTO_MIGRATE=1 applies pending migrations on API startup
    """
    return DatabaseConfig(
        dsn=_env_str("POSTGRES_DSN"),
        host=_env_str("POSTGRES_HOST"),
        port=_env_int("POSTGRES_PORT", 5432, lo=1, hi=65535),
        dbname=_env_str("POSTGRES_DB"),
        user=_env_str("POSTGRES_USER"),
        password=_env_str("POSTGRES_PASSWORD"),
        connect_timeout_seconds=_env_int("POSTGRES_CONNECT_TIMEOUT_SECONDS", 5, lo=1, hi=60),
        auto_migrate=(os.getenv("DB_AUTO_MIGRATE") or "").strip().lower() in ("1", "true", "yes", "y", "on"),
    )


def resolve_dsn() -> Optional[str]:
    """Return the configured Postgres DSN, or None when the datastore is not configured."""
    return load_database_config().conninfo()


def connect(dsn: str, *, timeout_seconds: Optional[int] = None):
    # Lazy import so routing-only modes run without DB deps.
    import psycopg  # type: ignore[import-not-found]

    t = timeout_seconds if timeout_seconds is not None else load_database_config().connect_timeout_seconds
    return psycopg.connect(dsn, connect_timeout=int(t))
