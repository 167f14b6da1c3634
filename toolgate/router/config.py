from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

RouterMode = Literal["heuristic", "hybrid", "ai"]

_MODES = ("heuristic", "hybrid", "ai")

DEFAULT_CHAT_MODEL = "gemini-2.5-flash"
DEFAULT_TOOL_MODEL = "claude-sonnet-4-5"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


@dataclass(frozen=True)
class RouterConfig:
    # heuristic: Stage 1 only; hybrid: Stage 2 only when Stage 1 finds nothing; ai: Stage 2 for every non-vision turn
    mode: RouterMode = "hybrid"

    # Trailing messages shown to the classifier
    history_window: int = 6
    # Stage 2 is abandoned after this long; Stage 1's answer stands
    classifier_timeout_seconds: float = 8.0

    chat_model: str = DEFAULT_CHAT_MODEL
    tool_model: str = DEFAULT_TOOL_MODEL
    classifier_model: str = DEFAULT_CHAT_MODEL

    chat_step_budget: int = 1
    tool_step_budget: int = 8


def load_router_config() -> RouterConfig:
    """
    Env:
    - ROUTER_MODE=heuristic|hybrid|ai (default hybrid)
    - ROUTER_HISTORY_WINDOW=6 (1..20)
    - ROUTER_CLASSIFIER_TIMEOUT_SECONDS=8 (0.5..60)
    - LLM_CHAT_MODEL / LLM_TOOL_MODEL / LLM_CLASSIFIER_MODEL
    - ROUTER_TOOL_STEP_BUDGET=8 (1..20)
    """
    mode = (os.getenv("ROUTER_MODE") or "hybrid").strip().lower()
    if mode not in _MODES:
        mode = "hybrid"
    chat_model = (os.getenv("LLM_CHAT_MODEL") or "").strip() or DEFAULT_CHAT_MODEL
    return RouterConfig(
        mode=mode,  # type: ignore[arg-type]
        history_window=max(1, min(_env_int("ROUTER_HISTORY_WINDOW", 6), 20)),
        classifier_timeout_seconds=max(0.5, min(_env_float("ROUTER_CLASSIFIER_TIMEOUT_SECONDS", 8.0), 60.0)),
        chat_model=chat_model,
        tool_model=(os.getenv("LLM_TOOL_MODEL") or "").strip() or DEFAULT_TOOL_MODEL,
        classifier_model=(os.getenv("LLM_CLASSIFIER_MODEL") or "").strip() or chat_model,
        chat_step_budget=1,
        tool_step_budget=max(1, min(_env_int("ROUTER_TOOL_STEP_BUDGET", 8), 20)),
    )
