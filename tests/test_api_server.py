from __future__ import annotations

from unittest.mock import patch

from fastapi.testclient import TestClient

import toolgate.api.server as srv
from toolgate.audit.log import AuditRecord
from toolgate.execution.types import ExecutionResult


def test_healthz() -> None:
    c = TestClient(srv.app)
    assert c.get("/healthz").json() == {"ok": True}


def test_requests_without_actor_are_unauthorized() -> None:
    c = TestClient(srv.app)
    assert c.post("/api/v1/chat/route", json={"messages": []}).status_code == 401
    assert c.post("/api/v1/chat", json={"messages": [{"role": "user", "content": "hi"}]}).status_code == 401
    assert c.get("/api/v1/tools").status_code == 401
    assert c.post("/api/v1/tools/query_roles/invoke", json={}).status_code == 401
    assert c.get("/api/v1/audit").status_code == 401


def test_tools_config_reflects_env(monkeypatch) -> None:
    monkeypatch.setenv("TOOLS_ENABLED", "1")
    monkeypatch.setenv("ROUTER_MODE", "heuristic")
    c = TestClient(srv.app)
    body = c.get("/api/v1/tools/config").json()
    assert body["enabled"] is True
    assert body["router_mode"] == "heuristic"
    assert body["chat_model_supports_vision"] is True
    assert body["tool_model_supports_tools"] is True


def test_route_endpoint(monkeypatch) -> None:
    monkeypatch.setenv("ROUTER_MODE", "heuristic")
    c = TestClient(srv.app)
    r = c.post(
        "/api/v1/chat/route",
        json={"messages": [{"role": "user", "content": "Lösche den Bug 42"}]},
        headers={"X-Actor-Id": "u-1"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["needs_tools"] is True
    assert body["reason"] == "entity-crud:bug+delete"


def test_chat_rejects_empty_messages() -> None:
    c = TestClient(srv.app)
    r = c.post("/api/v1/chat", json={"messages": []}, headers={"X-Actor-Id": "u-1"})
    assert r.status_code == 400


def test_chat_passes_actor_and_session(monkeypatch) -> None:
    from toolgate.chat.runtime import ChatTurnResult
    from toolgate.router.router import RouterDecision

    seen = {}

    def _turn(req, *, actor_id, session_id=None):
        seen.update(actor_id=actor_id, session_id=session_id, n=len(req.messages))
        decision = RouterDecision(
            needs_tools=False, needs_screenshot=False, tier="chat", model="m", step_budget=1, reason="general-chat"
        )
        return ChatTurnResult(reply="Hallo!", decision=decision, tool_events=[])

    monkeypatch.setattr(srv, "run_chat_turn", _turn)
    c = TestClient(srv.app)
    r = c.post(
        "/api/v1/chat",
        json={"messages": [{"role": "user", "content": "Hallo"}]},
        headers={"X-Actor-Id": "u-1", "X-Session-Id": "s-9"},
    )
    assert r.status_code == 200
    assert r.json()["reply"] == "Hallo!"
    assert r.json()["decision"]["tier"] == "chat"
    assert seen == {"actor_id": "u-1", "session_id": "s-9", "n": 1}


def test_invoke_when_tools_disabled_is_refused_and_audited(monkeypatch) -> None:
    from toolgate.execution import dispatch

    monkeypatch.setenv("TOOLS_ENABLED", "0")
    records = []

    def _write(record, *, dsn=None):
        records.append(record)
        return True, "ok"

    monkeypatch.setattr(dispatch, "append_audit_record", _write)
    c = TestClient(srv.app)
    r = c.post(
        "/api/v1/tools/delete_users/invoke",
        json={"args": {"filters": {"id": "x"}, "confirm": True}},
        headers={"X-Actor-Id": "u-1", "X-Session-Id": "s-2"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is False
    assert body["result"]["error_kind"] == "validation"
    assert body["result"]["audited"] is True
    assert len(records) == 1
    assert records[0].operation == "delete_users"
    assert records[0].success is False
    assert records[0].session_id == "s-2"


def test_invoke_returns_tagged_result(monkeypatch) -> None:
    monkeypatch.setenv("TOOLS_ENABLED", "1")
    monkeypatch.setenv("TOOLS_DRY_RUN_DEFAULT", "1")
    seen = {}

    def _invoke(name, args, ctx, *, policy, specials):
        seen.update(name=name, args=args, ctx=ctx)
        return ExecutionResult(success=False, error="Delete requires confirm: true", error_kind="validation", audited=True)

    monkeypatch.setattr(srv, "invoke_operation", _invoke)
    c = TestClient(srv.app)
    r = c.post(
        "/api/v1/tools/delete_roles/invoke",
        json={"args": {"filters": {"name": "x"}}},
        headers={"X-Actor-Id": "u-1", "X-Session-Id": "s-1"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is False
    assert body["result"]["error_kind"] == "validation"
    assert seen["name"] == "delete_roles"
    assert seen["ctx"].dry_run is True
    assert seen["ctx"].session_id == "s-1"


def test_audit_requires_admin(monkeypatch) -> None:
    monkeypatch.setattr(srv, "is_admin", lambda actor, *, admin_roles: False)
    c = TestClient(srv.app)
    assert c.get("/api/v1/audit", headers={"X-Actor-Id": "u-1"}).status_code == 403


def test_audit_lists_records_for_admin(monkeypatch) -> None:
    monkeypatch.setattr(srv, "is_admin", lambda actor, *, admin_roles: True)
    rec = AuditRecord(operation="query_roles", actor_id="u-1", session_id="s-1", success=True, id=3)
    with patch.object(srv, "list_audit_records", return_value=(True, "ok", [rec])) as lst:
        c = TestClient(srv.app)
        r = c.get("/api/v1/audit?session_id=s-1&limit=5", headers={"X-Actor-Id": "admin-1"})
    assert r.status_code == 200
    assert r.json()["items"][0]["operation"] == "query_roles"
    assert lst.call_args.kwargs == {"session_id": "s-1", "actor_id": None, "operation": None, "limit": 5}


def test_audit_unavailable_is_503(monkeypatch) -> None:
    monkeypatch.setattr(srv, "is_admin", lambda actor, *, admin_roles: True)
    monkeypatch.setattr(srv, "list_audit_records", lambda **kw: (False, "Postgres not configured", []))
    c = TestClient(srv.app)
    assert c.get("/api/v1/audit", headers={"X-Actor-Id": "admin-1"}).status_code == 503
