"""
Pytest config.

Local imports like `import toolgate` rely on the repo root being on sys.path, which a
global `pytest` entrypoint does not always provide during collection. We pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Unit tests never reach a real Postgres, model provider or tracing backend.

    Tests that need a datastore pass an explicit DSN and monkeypatch the module's `_connect`.
    """
    for k in (
        "POSTGRES_DSN",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_DB",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_CONNECT_TIMEOUT_SECONDS",
        "DB_AUTO_MIGRATE",
        "LANGSMITH_TRACING",
        "LANGCHAIN_TRACING_V2",
        "LANGSMITH_API_KEY",
        "LANGCHAIN_API_KEY",
        "LANGSMITH_PROJECT",
        "LANGCHAIN_PROJECT",
        "LANGSMITH_TAGS",
        "LANGSMITH_RUN_NAME_PREFIX",
        "LLM_MOCK",
        "TOOLS_ENABLED",
        "TOOLS_DRY_RUN_DEFAULT",
        "ROUTER_MODE",
        "UI_ACTIONS_MANIFEST",
        "IDENTITY_ADMIN_URL",
        "IDENTITY_SERVICE_KEY",
    ):
        monkeypatch.delenv(k, raising=False)


class FakeCursor:
    def __init__(self, rows: Optional[List[Any]] = None, *, description=None, rowcount: int = 0) -> None:
        self._rows = list(rows or [])
        self.description = description
        self.rowcount = rowcount

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConn:
    """
    Minimal psycopg-like connection: records every execute() and answers from a queue.
    """

    def __init__(self, results: Optional[List[FakeCursor]] = None, *, fail: Optional[Exception] = None) -> None:
        self.results = list(results or [])
        self.fail = fail
        self.executed: List[Dict[str, Any]] = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def transaction(self):
        conn = self

        class _Tx:
            def __enter__(self_inner):
                conn.transactions += 1
                return self_inner

            def __exit__(self_inner, *exc):
                return False

        return _Tx()

    def execute(self, sql, params=None):
        if self.fail is not None:
            raise self.fail
        self.executed.append({"sql": sql, "params": params})
        if self.results:
            return self.results.pop(0)
        return FakeCursor()


@pytest.fixture
def fake_conn_factory():
    """Returns a builder: make(results=[...], fail=None) -> (connect_fn, conn)."""

    def _make(results: Optional[List[FakeCursor]] = None, fail: Optional[Exception] = None):
        conn = FakeConn(results, fail=fail)

        def _connect(_dsn: str):
            return conn

        return _connect, conn

    return _make


@pytest.fixture
def fake_cursor():
    """The FakeCursor class, for building queued results."""
    return FakeCursor
