from __future__ import annotations

from typing import Any, Dict, List

from toolgate.authz.policy import ToolPolicy
from toolgate.catalog.models import CatalogSnapshot, ColumnDescriptor, DataSourceDescriptor
from toolgate.execution.types import ExecutionContext

COLUMNS = (
    ColumnDescriptor("id", "uuid", nullable=False, default="gen_random_uuid()"),
    ColumnDescriptor("title", "text", nullable=False),
    ColumnDescriptor("api_key", "text"),
)


class _Audit:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.records: List[Any] = []

    def __call__(self, record, *, dsn=None):
        self.records.append(record)
        return (True, "ok") if self.ok else (False, "audit_write_failed:OperationalError")


def _loader(access: str = "full", calls: List[Dict[str, Any]] = None):
    def _load(*, policy=None, dsn=None, tables=None):
        if calls is not None:
            calls.append({"tables": tables})
        ds = DataSourceDescriptor(table_name="notes", access_level=access)
        return True, "ok", CatalogSnapshot(sources=(ds,), columns={"notes": COLUMNS})

    return _load


def _invoke(name, args, *, policy=None, specials=None, ctx=None, **kw):
    from toolgate.execution.dispatch import invoke_operation
    from toolgate.tools.special import SpecialOperationsRegistry

    return invoke_operation(
        name,
        args,
        ctx or ExecutionContext(actor_id="u-1", session_id="s-1", dry_run=True),
        policy=policy or ToolPolicy(enabled=True),
        specials=specials if specials is not None else SpecialOperationsRegistry(),
        **kw,
    )


def test_rejected_call_still_writes_exactly_one_audit_record() -> None:
    audit = _Audit()
    res = _invoke("delete_notes", {"filters": {"title": "x"}}, catalog_loader=_loader(), audit_writer=audit)
    assert res.success is False
    assert res.error_kind == "validation"
    assert res.audited is True
    assert len(audit.records) == 1
    rec = audit.records[0]
    assert rec.operation == "delete_notes"
    assert rec.actor_id == "u-1"
    assert rec.session_id == "s-1"
    assert rec.success is False
    assert rec.error == "Delete requires confirm: true"
    assert rec.outcome["error_kind"] == "validation"


def test_dry_run_success_is_audited_with_statement() -> None:
    audit = _Audit()
    res = _invoke(
        "delete_notes", {"filters": {"title": "x"}, "confirm": True}, catalog_loader=_loader(), audit_writer=audit
    )
    assert res.success is True
    assert res.dry_run_statement == 'DELETE FROM "public"."notes" WHERE "title" = \'x\';'
    rec = audit.records[0]
    assert rec.dry_run is True
    assert rec.outcome["statement"] == res.dry_run_statement
    assert rec.duration_ms is not None


def test_audit_failure_does_not_change_operation_outcome() -> None:
    audit = _Audit(ok=False)
    res = _invoke(
        "delete_notes", {"filters": {"title": "x"}, "confirm": True}, catalog_loader=_loader(), audit_writer=audit
    )
    assert res.success is True
    assert res.audited is False


def test_raising_audit_writer_is_contained() -> None:
    def _boom(record, *, dsn=None):
        raise RuntimeError("db down")

    res = _invoke("delete_notes", {"filters": {"title": "x"}, "confirm": True}, catalog_loader=_loader(), audit_writer=_boom)
    assert res.success is True
    assert res.audited is False


def test_audit_arguments_are_redacted() -> None:
    audit = _Audit()
    _invoke(
        "insert_notes",
        {"data": {"title": "token=abcdefgh12345678", "api_key": "sk-live-abc"}},
        catalog_loader=_loader(),
        audit_writer=audit,
    )
    args = audit.records[0].arguments
    assert args["data"]["api_key"] == "[REDACTED]"
    assert "abcdefgh12345678" not in args["data"]["title"]


def test_catalog_is_reread_for_the_target_table_on_every_call() -> None:
    calls: List[Dict[str, Any]] = []
    audit = _Audit()
    _invoke("query_notes", {}, catalog_loader=_loader(calls=calls), audit_writer=audit, ctx=ExecutionContext(actor_id="u"))
    _invoke("query_notes", {}, catalog_loader=_loader(calls=calls), audit_writer=audit, ctx=ExecutionContext(actor_id="u"))
    assert calls == [{"tables": ["notes"]}, {"tables": ["notes"]}]


def test_permission_revoked_between_publish_and_invoke() -> None:
    audit = _Audit()
    res = _invoke(
        "delete_notes", {"filters": {"title": "x"}, "confirm": True}, catalog_loader=_loader("read"), audit_writer=audit
    )
    assert res.success is False
    assert res.error == 'Action "delete" not allowed for "notes" (level: read)'


def test_catalog_unavailable_is_an_execution_failure() -> None:
    audit = _Audit()
    res = _invoke(
        "query_notes",
        {},
        catalog_loader=lambda **kw: (False, "catalog_unavailable", CatalogSnapshot()),
        audit_writer=audit,
    )
    assert res.success is False
    assert res.error_kind == "execution"
    assert "catalog_unavailable" in (res.error or "")
    assert len(audit.records) == 1


def test_disabled_policy_rejects_and_audits() -> None:
    audit = _Audit()
    res = _invoke("query_notes", {}, policy=ToolPolicy(enabled=False), catalog_loader=_loader(), audit_writer=audit)
    assert res.success is False
    assert res.error == "tool calling is disabled"
    assert len(audit.records) == 1


def test_privileged_name_never_reaches_generic_path() -> None:
    calls: List[Dict[str, Any]] = []
    audit = _Audit()
    res = _invoke("delete_user", {"user_id": "x", "confirm": True}, catalog_loader=_loader(calls=calls), audit_writer=audit)
    assert res.success is False
    assert res.error == "Operation not available: delete_user"
    assert calls == []


def test_handler_crash_becomes_execution_failure() -> None:
    from toolgate.tools.special import SpecialOperation, SpecialOperationsRegistry
    from toolgate.tools.synthesizer import OperationDescriptor

    def _crash(args, ctx):
        raise KeyError("boom")

    reg = SpecialOperationsRegistry(
        [SpecialOperation(descriptor=OperationDescriptor(name="reset_theme_preview", description="x"), handler=_crash)]
    )
    audit = _Audit()
    res = _invoke("reset_theme_preview", {}, specials=reg, audit_writer=audit)
    assert res.success is False
    assert res.error_kind == "execution"
    assert len(audit.records) == 1


def test_published_operations_join_generated_and_privileged() -> None:
    from toolgate.execution.dispatch import published_operations
    from toolgate.tools.special import build_special_registry

    ds = DataSourceDescriptor(table_name="notes", access_level="read")
    snap = CatalogSnapshot(sources=(ds,), columns={"notes": COLUMNS})
    names = [op.name for op in published_operations(snap, build_special_registry(ToolPolicy(enabled=True)))]
    assert names[0] == "query_notes"
    assert "create_user" in names
    assert "get_theme_tokens" in names
    # No manifest actions: UI operations are not published.
    assert "execute_ui_action" not in names


def test_append_and_list_audit_records(monkeypatch, fake_conn_factory, fake_cursor) -> None:
    from datetime import datetime, timezone

    from toolgate.audit import log as audit_log

    connect, conn = fake_conn_factory()
    monkeypatch.setattr(audit_log, "_connect", connect)
    rec = audit_log.AuditRecord(operation="query_notes", actor_id="u-1", session_id="s-1", arguments={"limit": 3})
    ok, msg = audit_log.append_audit_record(rec, dsn="postgresql://x")
    assert (ok, msg) == (True, "ok")
    assert "INSERT INTO ai_tool_calls" in conn.executed[0]["sql"]
    assert conn.executed[0]["params"][3] == '{"limit": 3}'

    created = datetime(2026, 1, 2, tzinfo=timezone.utc)
    row = (7, "query_notes", "u-1", "s-1", {"limit": 3}, {"success": True}, True, None, False, 12, created)
    connect, conn = fake_conn_factory([fake_cursor([row])])
    monkeypatch.setattr(audit_log, "_connect", connect)
    ok, _msg, items = audit_log.list_audit_records(dsn="postgresql://x", session_id="s-1", limit=9999)
    assert ok is True
    assert items[0].id == 7
    assert items[0].to_dict()["created_at"] == created.isoformat()
    assert "session_id = %s" in conn.executed[0]["sql"]
    assert conn.executed[0]["params"] == ("s-1", 500)


def test_audit_write_without_datastore() -> None:
    from toolgate.audit.log import AuditRecord, append_audit_record

    ok, msg = append_audit_record(AuditRecord(operation="x", actor_id=None, session_id=None))
    assert ok is False
    assert msg == "Postgres not configured"
