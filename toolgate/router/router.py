"""
Turn routing: pick chat, vision or tool-calling for one conversational turn.

Stage 1 (keywords) always runs. Whether Stage 2 (LLM classifier) is consulted depends
on the router mode. The router never raises.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Literal, Optional, Sequence

from toolgate.router.classifier import Stage2Result, classify_conversation
from toolgate.router.config import RouterConfig, load_router_config
from toolgate.router.heuristic import Stage1Result, classify_utterance

logger = logging.getLogger(__name__)

ModelTier = Literal["chat", "tool"]

Classifier = Callable[..., Stage2Result]

_AI_REASONS = {
    "UI_ACTION": "ai-router:ui-action",
    "DB_QUERY": "ai-router:db-query",
    "VISION": "ai-router:vision",
    "CHAT": "ai-router:chat",
}


@dataclass(frozen=True)
class RouterDecision:
    needs_tools: bool
    needs_screenshot: bool
    tier: ModelTier
    model: str
    step_budget: int
    reason: str
    stage1: Optional[Stage1Result] = None
    stage2: Optional[Stage2Result] = None
    # Stage 2 was consulted and failed; the decision came from a fallback.
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needs_tools": self.needs_tools,
            "needs_screenshot": self.needs_screenshot,
            "tier": self.tier,
            "model": self.model,
            "step_budget": self.step_budget,
            "reason": self.reason,
            "stage1": asdict(self.stage1) if self.stage1 is not None else None,
            "stage2": asdict(self.stage2) if self.stage2 is not None else None,
            "degraded": self.degraded,
        }


def _role(m: Any) -> str:
    if isinstance(m, dict):
        return str(m.get("role") or "")
    return str(getattr(m, "role", "") or "")


def _content(m: Any) -> str:
    if isinstance(m, dict):
        return str(m.get("content") or "")
    return str(getattr(m, "content", "") or "")


def latest_user_text(messages: Sequence[Any]) -> Optional[str]:
    for m in reversed(list(messages or [])):
        if _role(m) == "user":
            return _content(m)
    return None


def _decision(cfg: RouterConfig, *, tools: bool, screenshot: bool, reason: str, **extra: Any) -> RouterDecision:
    if tools:
        return RouterDecision(
            needs_tools=True,
            needs_screenshot=False,
            tier="tool",
            model=cfg.tool_model,
            step_budget=cfg.tool_step_budget,
            reason=reason,
            **extra,
        )
    return RouterDecision(
        needs_tools=False,
        needs_screenshot=screenshot,
        tier="chat",
        model=cfg.chat_model,
        step_budget=cfg.chat_step_budget,
        reason=reason,
        **extra,
    )


def _from_stage1(cfg: RouterConfig, s1: Stage1Result) -> RouterDecision:
    return _decision(cfg, tools=s1.needs_tools, screenshot=s1.needs_screenshot, reason=s1.reason, stage1=s1)


def _from_stage2(cfg: RouterConfig, s1: Stage1Result, s2: Stage2Result) -> RouterDecision:
    if s2.failed:
        verb = s1.mutation_verb
        if verb:
            # A mutation request must not silently degrade into small talk.
            logger.warning("Stage 2 %s; routing to tools on mutation verb %s", s2.status, verb)
            return _decision(
                cfg,
                tools=True,
                screenshot=False,
                reason=f"stage2-fallback-mutation:{verb}",
                stage1=s1,
                stage2=s2,
                degraded=True,
            )
        if not s1.fell_through:
            return replace(_from_stage1(cfg, s1), stage2=s2, degraded=True)
        logger.warning("Stage 2 %s; falling back to chat", s2.status)
        return _decision(
            cfg, tools=False, screenshot=False, reason="ai-router:chat", stage1=s1, stage2=s2, degraded=True
        )

    return _decision(
        cfg,
        tools=s2.label in ("UI_ACTION", "DB_QUERY"),
        screenshot=s2.label == "VISION",
        reason=_AI_REASONS[s2.label],
        stage1=s1,
        stage2=s2,
    )


def route_turn(
    messages: Sequence[Any],
    *,
    cfg: Optional[RouterConfig] = None,
    classifier: Classifier = classify_conversation,
) -> RouterDecision:
    """
    Route one turn from its message history.

    Modes:
    - heuristic: Stage 1 only
    - hybrid: Stage 2 only when Stage 1 falls through to general chat
    - ai: Stage 2 for every turn Stage 1 does not mark as vision
    """
    cfg = cfg or load_router_config()
    s1 = classify_utterance(latest_user_text(messages))

    if cfg.mode == "heuristic" or s1.needs_screenshot:
        return _from_stage1(cfg, s1)
    if cfg.mode == "hybrid" and not s1.fell_through:
        return _from_stage1(cfg, s1)
    if s1.kind == "no_user_message":
        return _from_stage1(cfg, s1)

    try:
        s2 = classifier(messages, cfg=cfg)
    except Exception as e:
        # Classifiers are expected not to raise; keep the turn alive if one does.
        logger.warning("Routing classifier raised %s", type(e).__name__)
        s2 = Stage2Result(label="CHAT", status="error", error=f"llm_error:{type(e).__name__}")
    return _from_stage2(cfg, s1, s2)
