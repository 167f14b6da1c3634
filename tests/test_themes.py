from __future__ import annotations

import json
from typing import Any, List

import pytest

from toolgate.authz.policy import ToolPolicy
from toolgate.catalog.models import CatalogSnapshot, ColumnDescriptor, DataSourceDescriptor
from toolgate.execution.types import ExecutionContext

TOKENS = [{"name": "--primary", "light_value": "oklch(0.6 0.2 250)", "dark_value": "oklch(0.7 0.2 250)"}]


def _invoke(name, args, *, dry_run=False, catalog_loader=None):
    from toolgate.execution.dispatch import invoke_operation
    from toolgate.tools.special import build_special_registry

    policy = ToolPolicy(enabled=True, allow_account_admin=False)
    kw = {}
    if catalog_loader is not None:
        kw["catalog_loader"] = catalog_loader
    return invoke_operation(
        name,
        args,
        ExecutionContext(actor_id="u-1", dry_run=dry_run),
        policy=policy,
        specials=build_special_registry(policy, dsn="postgresql://x"),
        dsn="postgresql://x",
        audit_writer=lambda record, dsn=None: (True, "ok"),
        **kw,
    )


def test_read_only_themes_table_publishes_only_query() -> None:
    from toolgate.execution.dispatch import published_operations
    from toolgate.tools.special import build_special_registry

    ds = DataSourceDescriptor(table_name="themes", access_level="read")
    cols = (ColumnDescriptor("id", "uuid", nullable=False), ColumnDescriptor("name", "text", nullable=False))
    snap = CatalogSnapshot(sources=(ds,), columns={"themes": cols})
    names = {op.name for op in published_operations(snap, build_special_registry(ToolPolicy(enabled=True)))}
    assert "query_themes" in names
    assert not names & {"insert_themes", "update_themes", "delete_themes"}
    assert {"preview_theme_tokens", "save_as_new_theme"} <= names


def test_generic_update_on_read_only_themes_is_rejected() -> None:
    def _loader(**kw):
        ds = DataSourceDescriptor(table_name="themes", access_level="read")
        return True, "ok", CatalogSnapshot(sources=(ds,), columns={"themes": (ColumnDescriptor("name", "text"),)})

    res = _invoke("update_themes", {"filters": {"name": "Default"}, "data": {"name": "x"}}, catalog_loader=_loader)
    assert res.success is False
    assert res.error_kind == "validation"


def test_preview_and_reset_persist_nothing(monkeypatch) -> None:
    from toolgate.tools import themes

    monkeypatch.setattr(themes, "_connect", lambda dsn: pytest.fail("preview must not touch the datastore"))
    res = _invoke("preview_theme_tokens", {"tokens": TOKENS, "description": "bluer primary"})
    assert res.success is True
    assert res.data["__theme_action"] == "preview"
    assert res.data["persisted"] is False
    assert res.data["tokens"] == TOKENS

    reset = _invoke("reset_theme_preview", {})
    assert reset.data["__theme_action"] == "reset"


@pytest.mark.parametrize(
    "tokens",
    [[], [{"name": "primary", "light_value": "x"}], [{"name": "--primary"}], ["--primary"]],
)
def test_preview_rejects_malformed_tokens(tokens) -> None:
    res = _invoke("preview_theme_tokens", {"tokens": tokens, "description": "x"})
    assert res.success is False
    assert res.error_kind == "validation"


def test_save_as_new_theme_inserts_new_row(monkeypatch, fake_conn_factory, fake_cursor) -> None:
    from toolgate.tools import themes

    connect, conn = fake_conn_factory([fake_cursor([("6b1d0c8e-0000-4000-8000-00000000000a",)])])
    monkeypatch.setattr(themes, "_connect", connect)
    res = _invoke("save_as_new_theme", {"name": "Ocean", "tokens": TOKENS})
    assert res.success is True, res.error
    assert res.data["theme_id"] == "6b1d0c8e-0000-4000-8000-00000000000a"
    sql = conn.executed[0]["sql"]
    assert "INSERT INTO themes" in sql
    assert "ON CONFLICT (name) DO NOTHING" in sql
    assert "UPDATE" not in sql
    params: List[Any] = list(conn.executed[0]["params"])
    assert params[0] == "Ocean"
    assert json.loads(params[2]) == TOKENS
    assert params[3] == "u-1"
    assert conn.transactions == 1


def test_save_as_new_theme_with_existing_name_is_rejected(monkeypatch, fake_conn_factory, fake_cursor) -> None:
    from toolgate.tools import themes

    connect, _conn = fake_conn_factory([fake_cursor([])])
    monkeypatch.setattr(themes, "_connect", connect)
    res = _invoke("save_as_new_theme", {"name": "Default", "tokens": TOKENS})
    assert res.success is False
    assert res.error_kind == "validation"
    assert "already exists" in (res.error or "")


def test_save_as_new_theme_dry_run(monkeypatch) -> None:
    from toolgate.tools import themes

    monkeypatch.setattr(themes, "_connect", lambda dsn: pytest.fail("dry-run must not touch the datastore"))
    res = _invoke("save_as_new_theme", {"name": "Ocean", "tokens": TOKENS}, dry_run=True)
    assert res.success is True
    assert res.data == {"dry_run": True, "action": "save_as_new_theme", "name": "Ocean", "token_count": 1}


def test_get_theme_tokens(monkeypatch, fake_conn_factory, fake_cursor) -> None:
    from toolgate.tools import themes

    current = _invoke("get_theme_tokens", {})
    assert current.data["__theme_action"] == "get_tokens"

    connect, conn = fake_conn_factory([fake_cursor([("t-1", "Ocean", None, TOKENS)])])
    monkeypatch.setattr(themes, "_connect", connect)
    res = _invoke("get_theme_tokens", {"theme_id": "Ocean"})
    assert res.data == {"theme_id": "t-1", "name": "Ocean", "description": None, "tokens": TOKENS}
    assert conn.executed[0]["params"] == ("Ocean", "Ocean")

    connect, _ = fake_conn_factory([fake_cursor([])])
    monkeypatch.setattr(themes, "_connect", connect)
    missing = _invoke("get_theme_tokens", {"theme_id": "Nope"})
    assert missing.success is False
    assert missing.error_kind == "validation"
