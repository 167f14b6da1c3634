"""
HTTP surface for the assistant backend.

Authentication happens upstream: the gateway sets `X-Actor-Id` (and optionally
`X-Session-Id`) after verifying the caller. Requests without an actor are refused.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from toolgate.audit.log import list_audit_records
from toolgate.authz.policy import load_tool_policy
from toolgate.chat.runtime import published_operation_set, run_chat_turn
from toolgate.chat.types import ChatMessage, ChatRequest, ChatResponse
from toolgate.execution.dispatch import invoke_operation
from toolgate.execution.types import ExecutionContext
from toolgate.llm.costs import model_supports_tools, model_supports_vision
from toolgate.router.config import load_router_config
from toolgate.router.router import route_turn
from toolgate.tools.accounts import is_admin
from toolgate.tools.special import build_special_registry
from toolgate.tools.ui_actions import UIAction

logger = logging.getLogger(__name__)

app = FastAPI(title="toolgate assistant backend")


class RouteRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)


class InvokeRequest(BaseModel):
    args: Dict[str, Any] = Field(default_factory=dict)
    dry_run: Optional[bool] = None
    ui_actions: List[UIAction] = Field(default_factory=list)


class ToolConfigResponse(BaseModel):
    enabled: bool
    dry_run_default: bool
    allow_account_admin: bool
    allow_ui_actions: bool
    allow_theme_tools: bool
    max_tool_calls: int
    router_mode: str
    chat_model: str
    tool_model: str
    chat_model_supports_vision: bool
    tool_model_supports_tools: bool


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """
    Auto-apply DB migrations when DB_AUTO_MIGRATE=1. Never prevents startup; failures are logged.
    """
    try:
        from toolgate.db.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate()
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, time.time() - start_time, e)
        raise
    logger.debug(
        "%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, time.time() - start_time
    )
    return response


def _require_actor(actor_id: Optional[str]) -> str:
    a = (actor_id or "").strip()
    if not a:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return a


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/v1/tools/config")
async def tools_config() -> Dict[str, Any]:
    p = load_tool_policy()
    r = load_router_config()
    return ToolConfigResponse(
        enabled=p.enabled,
        dry_run_default=p.dry_run_default,
        allow_account_admin=p.allow_account_admin,
        allow_ui_actions=p.allow_ui_actions,
        allow_theme_tools=p.allow_theme_tools,
        max_tool_calls=p.max_tool_calls,
        router_mode=r.mode,
        chat_model=r.chat_model,
        tool_model=r.tool_model,
        chat_model_supports_vision=model_supports_vision(r.chat_model),
        tool_model_supports_tools=model_supports_tools(r.tool_model),
    ).model_dump(mode="json")


@app.post("/api/v1/chat/route")
async def chat_route(req: RouteRequest, x_actor_id: Optional[str] = Header(None)) -> Dict[str, Any]:
    _require_actor(x_actor_id)
    # Stage 2 may call a model; keep the event loop free.
    decision = await asyncio.to_thread(route_turn, req.messages, cfg=load_router_config())
    return decision.to_dict()


@app.post("/api/v1/chat")
async def chat(
    req: ChatRequest,
    x_actor_id: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    actor = _require_actor(x_actor_id)
    if not req.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")

    res = await asyncio.to_thread(run_chat_turn, req, actor_id=actor, session_id=x_session_id)
    return ChatResponse(
        reply=res.reply,
        decision=res.decision.to_dict(),
        tool_events=res.tool_events,
        cost=res.cost,
    ).model_dump(mode="json")


@app.get("/api/v1/tools")
async def list_tools(x_actor_id: Optional[str] = Header(None)) -> Dict[str, Any]:
    actor = _require_actor(x_actor_id)
    return await asyncio.to_thread(published_operation_set, actor_id=actor)


@app.post("/api/v1/tools/{name}/invoke")
async def invoke_tool(
    name: str,
    req: InvokeRequest,
    x_actor_id: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    actor = _require_actor(x_actor_id)
    policy = load_tool_policy()
    # A disabled policy is refused by dispatch, which still audits the attempt.
    ctx = ExecutionContext(
        actor_id=actor,
        session_id=x_session_id,
        dry_run=policy.dry_run_default if req.dry_run is None else bool(req.dry_run),
    )
    specials = build_special_registry(policy, ui_action_list=req.ui_actions)
    res = await asyncio.to_thread(invoke_operation, name, req.args, ctx, policy=policy, specials=specials)
    # Refusals are results, not HTTP errors: the caller gets the tagged outcome.
    return {"ok": res.success, "result": res.to_dict()}


@app.get("/api/v1/audit")
async def audit_records(
    x_actor_id: Optional[str] = Header(None),
    session_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    operation: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
) -> Dict[str, Any]:
    actor = _require_actor(x_actor_id)
    policy = load_tool_policy()
    admin = await asyncio.to_thread(is_admin, actor, admin_roles=frozenset(policy.admin_roles))
    if not admin:
        raise HTTPException(status_code=403, detail="Only administrators may read the audit log")

    ok, msg, items = await asyncio.to_thread(
        list_audit_records, session_id=session_id, actor_id=actor_id, operation=operation, limit=int(limit)
    )
    if not ok:
        raise HTTPException(status_code=503, detail=msg)
    return {"ok": True, "items": [r.to_dict() for r in items]}


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn_log_level = log_level.lower() if log_level.lower() in ("critical", "error", "warning", "info", "debug") else "info"

    logger.info("Starting assistant backend on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
