"""
One conversational turn: route it, then either answer directly (chat / vision) or run
a bounded tool-calling loop over the operations this actor may use.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypedDict

from pydantic import ValidationError

from toolgate.authz.policy import ToolPolicy, load_tool_policy, redact_text
from toolgate.catalog.models import CatalogSnapshot
from toolgate.catalog.store import load_catalog
from toolgate.chat.tool_summaries import (
    compact_args_for_prompt,
    compact_result_for_prompt,
    summarize_tool_result,
    tool_call_key,
)
from toolgate.chat.types import ChatMessage, ChatRequest, ChatToolEvent
from toolgate.execution.dispatch import invoke_operation, published_operations
from toolgate.execution.types import ExecutionContext, ExecutionResult
from toolgate.graphs.tracing import build_invoke_config, trace_operation
from toolgate.llm.client import generate_json, generate_text
from toolgate.llm.costs import create_cost_info
from toolgate.llm.schemas import ToolPlanResponse
from toolgate.router.config import RouterConfig, load_router_config
from toolgate.router.router import RouterDecision, route_turn
from toolgate.tools.special import SpecialOperationsRegistry, build_special_registry
from toolgate.tools.synthesizer import OperationDescriptor
from toolgate.tools.ui_actions import UIAction, UIActionExecutor, actions_for_route, load_ui_manifest

logger = logging.getLogger(__name__)

CHAT_SYSTEM_PROMPT = (
    "You are the in-app assistant. Answer briefly and concretely in the user's language.\n"
    "You cannot change data or navigate in this mode; if the user asks for that, tell them "
    "to phrase it as a request (e.g. 'zeige alle Rollen' / 'open settings')."
)

VISION_SYSTEM_PROMPT = (
    "You are the in-app assistant and can see a screenshot of the user's current view.\n"
    "Describe only what is actually visible. Point out errors, warnings or layout problems "
    "when asked. Answer in the user's language."
)

HISTORY_LIMIT = 14


@dataclass(frozen=True)
class ChatTurnResult:
    reply: str
    decision: RouterDecision
    tool_events: List[ChatToolEvent]
    cost: Optional[Dict[str, Any]] = None


def _history_dicts(messages: Sequence[ChatMessage], *, redact: bool) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for m in list(messages)[-HISTORY_LIMIT:]:
        txt = redact_text(m.content) if redact else (m.content or "")
        out.append({"role": m.role, "content": txt})
    return out


def _tool_catalog_for_prompt(ops: Sequence[OperationDescriptor]) -> List[Dict[str, Any]]:
    return [op.to_tool_schema() for op in ops]


def _build_tool_prompt(
    *,
    policy: ToolPolicy,
    ops: Sequence[OperationDescriptor],
    history: Sequence[ChatMessage],
    tool_events: Sequence[ChatToolEvent],
    dry_run: bool,
    route: Optional[str],
) -> str:
    tool_hist = []
    for ev in list(tool_events)[-6:]:
        tool_hist.append(
            {
                "tool": ev.tool,
                "key": ev.key,
                "outcome": ev.outcome,
                "summary": ev.summary,
                "args": compact_args_for_prompt(ev.args or {}),
                "result": compact_result_for_prompt(ev.result) if ev.ok else None,
                "error": ev.error,
            }
        )

    hist_compact = [
        {"role": m["role"], "content": m["content"][:600]}
        for m in _history_dicts(history, redact=policy.redact_secrets)
    ]
    mode_note = (
        "DRY-RUN mode: mutations are rendered, not applied. Tell the user nothing was changed.\n"
        if dry_run
        else ""
    )

    return (
        "You are the in-app assistant with access to operations on the application's data and UI.\n\n"
        "Hard constraints (must follow):\n"
        "- Call ONLY operations listed in AVAILABLE_OPERATIONS, with arguments matching their input_schema.\n"
        "- Use ONLY tool results to make claims about data. Do NOT invent rows, ids or counts.\n"
        "- delete_* operations need `confirm: true`; ask the user first if they have not clearly confirmed.\n"
        "- update_* and delete_* need filters that identify the rows.\n"
        "- If an operation was rejected, explain why instead of retrying with the same arguments.\n"
        "- For navigation: call search_ui_components first, then execute_ui_action with the returned id.\n"
        "- Return ONLY valid JSON. No markdown. No code fences.\n"
        f"{mode_note}\n"
        f"CURRENT_ROUTE: {route or 'unknown'}\n\n"
        "AVAILABLE_OPERATIONS:\n"
        f"{json.dumps(_tool_catalog_for_prompt(ops), ensure_ascii=False)}\n\n"
        "Output JSON schema (exact keys):\n"
        "{\n"
        '  "schema_version": "toolgate.tool_plan.v1",\n'
        '  "reply": string,\n'
        '  "tool_calls": [ { "tool": string, "args": object } ],\n'
        '  "meta": { "warnings": [string] } | null\n'
        "}\n"
        "Rules:\n"
        "- If you're ready to answer, set tool_calls to [] and put the answer in reply.\n"
        "- Otherwise request 1-3 tool calls.\n"
        "- Don't repeat a tool call whose `key` already appears in TOOL_HISTORY.\n"
        "- Answer in the user's language.\n\n"
        f"TOOL_HISTORY:\n{json.dumps(tool_hist, ensure_ascii=False)}\n\n"
        f"CHAT_HISTORY:\n{json.dumps(hist_compact, ensure_ascii=False)}\n"
    )


def _event_for(tool: str, args: Dict[str, Any], key: str, res: ExecutionResult) -> ChatToolEvent:
    outcome, summary = summarize_tool_result(tool=tool, result=res)
    return ChatToolEvent(
        tool=tool,
        args=args,
        ok=res.success,
        result=res.data,
        error=res.error,
        error_kind=res.error_kind,
        dry_run_statement=res.dry_run_statement,
        audited=res.audited,
        key=key,
        outcome=outcome,
        summary=summary,
    )


def _run_tool_loop(
    *,
    policy: ToolPolicy,
    decision: RouterDecision,
    history: Sequence[ChatMessage],
    ops: Sequence[OperationDescriptor],
    invoke: Callable[[str, Dict[str, Any]], ExecutionResult],
    dry_run: bool,
    route: Optional[str],
) -> Dict[str, Any]:
    """
    LangGraph loop: plan -> run tools -> plan again, until a final reply or the budget runs out.
    """
    from langgraph.graph import END, StateGraph  # type: ignore[import-not-found]

    class _State(TypedDict, total=False):
        tool_events: List[ChatToolEvent]
        remaining_calls: int
        reply: str
        tool_calls: List[Dict[str, Any]]
        stop: bool

    published = {op.name for op in ops}
    budget = max(1, min(int(decision.step_budget), int(policy.max_tool_calls)))

    # NOTE: node functions stay unannotated; LangGraph resolves type hints and cannot see
    # the local `_State`.
    def llm_step(state):
        prompt = _build_tool_prompt(
            policy=policy,
            ops=ops,
            history=history,
            tool_events=state.get("tool_events") or [],
            dry_run=dry_run,
            route=route,
        )
        obj, err = generate_json(prompt, schema=ToolPlanResponse, model=decision.model)
        if err or not isinstance(obj, dict):
            logger.warning("Tool planning failed: %s", err or "not_a_dict")
            return {
                **state,
                "reply": f"The assistant is unavailable right now ({err or 'unknown'}). Please try again.",
                "tool_calls": [],
                "stop": True,
            }
        try:
            plan = ToolPlanResponse.model_validate(obj)
        except ValidationError as e:
            logger.warning("Tool plan did not match the schema: %s", e.error_count())
            return {
                **state,
                "reply": "The assistant returned an unusable plan. Please try again.",
                "tool_calls": [],
                "stop": True,
            }
        tool_calls = [tc.model_dump() for tc in plan.tool_calls]
        return {**state, "reply": plan.reply or "OK.", "tool_calls": tool_calls, "stop": False}

    def tool_step(state):
        tool_events = list(state.get("tool_events") or [])
        remaining_calls = int(state.get("remaining_calls") or 0)
        seen_keys = {ev.key for ev in tool_events if ev.key}
        ran_any = False

        for tc in state.get("tool_calls") or []:
            if remaining_calls <= 0:
                break
            tool = str(tc.get("tool") or "").strip()
            args = tc.get("args") if isinstance(tc.get("args"), dict) else {}
            key = tool_call_key(tool, args)
            if key in seen_keys:
                tool_events.append(
                    ChatToolEvent(
                        tool=tool,
                        args=args,
                        ok=False,
                        error="skipped_duplicate",
                        key=key,
                        outcome="skipped_duplicate",
                        summary=f"{tool}: skipped duplicate tool call",
                    )
                )
                remaining_calls -= 1
                # Skipped duplicates do not count as progress; prevents loops on a repeating plan.
                continue
            seen_keys.add(key)

            if tool not in published:
                # Still goes through dispatch so the refusal is audited.
                logger.info("Model requested unpublished operation %s", tool)
            res = trace_operation(tool=tool, args=args, dry_run=dry_run, fn=lambda: invoke(tool, args))
            tool_events.append(_event_for(tool, args, key, res))
            remaining_calls -= 1
            ran_any = True

        if not ran_any:
            return {
                **state,
                "reply": state.get("reply") or "I couldn't run the requested operations. Please rephrase.",
                "stop": True,
                "tool_calls": [],
                "tool_events": tool_events,
                "remaining_calls": remaining_calls,
            }
        if remaining_calls <= 0:
            return {
                **state,
                "reply": "I reached the operation limit for this turn. Here is what I did so far; please narrow the request.",
                "stop": True,
                "tool_calls": [],
                "tool_events": tool_events,
                "remaining_calls": remaining_calls,
            }
        return {**state, "tool_events": tool_events, "remaining_calls": remaining_calls, "stop": False}

    def route_after_llm(state) -> str:
        if state.get("stop") or not (state.get("tool_calls") or []):
            return "end"
        if int(state.get("remaining_calls") or 0) <= 0:
            return "end"
        return "tools"

    def route_after_tools(state) -> str:
        if state.get("stop") or int(state.get("remaining_calls") or 0) <= 0:
            return "end"
        return "llm"

    g = StateGraph(_State)
    g.add_node("llm", llm_step)
    g.add_node("tools", tool_step)
    g.set_entry_point("llm")
    g.add_conditional_edges("llm", route_after_llm, {"tools": "tools", "end": END})
    g.add_conditional_edges("tools", route_after_tools, {"llm": "llm", "end": END})

    app = g.compile()
    init = {"tool_events": [], "remaining_calls": budget, "reply": "", "tool_calls": [], "stop": False}
    meta = {"model": decision.model, "reason": decision.reason, "budget": budget, "dry_run": dry_run}
    cfg = build_invoke_config(kind="tool_chat", run_name="tool_chat", metadata=meta)
    cfg["recursion_limit"] = 2 * budget + 5
    return app.invoke(init, config=cfg)


def _answer_directly(
    *,
    policy: ToolPolicy,
    decision: RouterDecision,
    history: Sequence[ChatMessage],
    screenshot: Optional[str],
) -> ChatTurnResult:
    system = VISION_SYSTEM_PROMPT if decision.needs_screenshot else CHAT_SYSTEM_PROMPT
    image = screenshot if decision.needs_screenshot else None
    if decision.needs_screenshot and not screenshot:
        system += "\nNo screenshot was attached to this turn; say so and ask the user to share one."

    usage: Dict[str, int] = {}
    text, err = generate_text(
        system=system,
        messages=_history_dicts(history, redact=policy.redact_secrets),
        model=decision.model,
        image_b64=image,
        usage=usage,
    )
    if err or not text:
        logger.warning("Chat reply failed: %s", err)
        return ChatTurnResult(
            reply=f"The assistant is unavailable right now ({err or 'empty_response'}). Please try again.",
            decision=decision,
            tool_events=[],
        )
    cost = create_cost_info(decision.model, usage).to_dict() if usage else None
    return ChatTurnResult(reply=text, decision=decision, tool_events=[], cost=cost)


def _ui_actions_for_turn(req: ChatRequest) -> List[UIAction]:
    actions: List[UIAction] = list(req.ui_actions)
    if not actions:
        ok, _msg, actions = load_ui_manifest()
        if not ok:
            actions = []
    return actions_for_route(actions, req.route)


def run_chat_turn(
    req: ChatRequest,
    *,
    actor_id: str,
    session_id: Optional[str] = None,
    policy: Optional[ToolPolicy] = None,
    router_cfg: Optional[RouterConfig] = None,
    dsn: Optional[str] = None,
    ui_executor: Optional[UIActionExecutor] = None,
) -> ChatTurnResult:
    """
    Route and answer one turn. Never raises for model or datastore failures.
    """
    policy = policy or load_tool_policy()
    router_cfg = router_cfg or load_router_config()
    decision = route_turn(req.messages, cfg=router_cfg)
    logger.info(
        "Routed turn actor=%s tier=%s model=%s reason=%s degraded=%s",
        actor_id,
        decision.tier,
        decision.model,
        decision.reason,
        decision.degraded,
    )

    if not decision.needs_tools:
        return _answer_directly(policy=policy, decision=decision, history=req.messages, screenshot=req.screenshot)
    if not policy.enabled:
        return ChatTurnResult(
            reply="Operations on data and UI are disabled by policy.", decision=decision, tool_events=[]
        )

    ctx = ExecutionContext(
        actor_id=actor_id,
        session_id=session_id,
        dry_run=policy.dry_run_default if req.dry_run is None else bool(req.dry_run),
    )
    ui_list = _ui_actions_for_turn(req)
    specials = build_special_registry(policy, ui_action_list=ui_list, ui_executor=ui_executor, dsn=dsn)

    ok, msg, snapshot = load_catalog(policy=policy, dsn=dsn)
    if not ok:
        # Privileged operations stay usable without the catalog.
        logger.warning("Capability catalog unavailable (%s); publishing privileged operations only", msg)
        snapshot = CatalogSnapshot()
    ops = published_operations(snapshot, specials)

    def _invoke(name: str, args: Dict[str, Any]) -> ExecutionResult:
        return invoke_operation(name, args, ctx, policy=policy, specials=specials, dsn=dsn)

    out = _run_tool_loop(
        policy=policy,
        decision=decision,
        history=req.messages,
        ops=ops,
        invoke=_invoke,
        dry_run=ctx.dry_run,
        route=req.route,
    )
    return ChatTurnResult(
        reply=str(out.get("reply") or "").strip() or "OK.",
        decision=decision,
        tool_events=list(out.get("tool_events") or []),
    )


def published_operation_set(
    *,
    actor_id: str,
    policy: Optional[ToolPolicy] = None,
    ui_action_list: Sequence[UIAction] = (),
    dsn: Optional[str] = None,
) -> Dict[str, Any]:
    """The operations a tool-tier turn would see right now (for listing endpoints)."""
    policy = policy or load_tool_policy()
    specials: SpecialOperationsRegistry = build_special_registry(policy, ui_action_list=ui_action_list, dsn=dsn)
    ok, msg, snapshot = load_catalog(policy=policy, dsn=dsn)
    if not ok:
        snapshot = CatalogSnapshot()
    ops = published_operations(snapshot, specials) if policy.enabled else []
    return {
        "actor_id": actor_id,
        "enabled": policy.enabled,
        "catalog": "ok" if ok else msg,
        "operations": [op.to_tool_schema() for op in ops],
    }
