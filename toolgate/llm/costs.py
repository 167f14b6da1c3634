"""
Per-turn cost estimates and model capabilities.

Prices are USD per 1,000 tokens. Unknown models fall back to an average price so a
turn always gets an estimate.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

FALLBACK_PRICE_PER_1K = 0.002


@dataclass(frozen=True)
class ModelInfo:
    name: str
    input_per_1k: float
    output_per_1k: float
    supports_tools: bool = True
    supports_vision: bool = False


MODEL_CATALOG: Dict[str, ModelInfo] = {
    # chat + vision tier
    "gemini-2.5-flash": ModelInfo("Gemini 2.5 Flash", 0.00015, 0.0006, supports_tools=True, supports_vision=True),
    "gemini-2.5-pro": ModelInfo("Gemini 2.5 Pro", 0.00125, 0.01, supports_tools=True, supports_vision=True),
    "gemini-2.0-flash-001": ModelInfo("Gemini 2.0 Flash", 0.0001, 0.0004, supports_tools=True, supports_vision=True),
    # tool tier
    "claude-opus-4-5": ModelInfo("Claude Opus 4.5", 0.015, 0.075, supports_tools=True, supports_vision=True),
    "claude-sonnet-4-5": ModelInfo("Claude Sonnet 4.5", 0.003, 0.015, supports_tools=True, supports_vision=True),
    "claude-sonnet-4": ModelInfo("Claude Sonnet 4", 0.003, 0.015, supports_tools=True, supports_vision=True),
    "claude-3-5-haiku-latest": ModelInfo("Claude 3.5 Haiku", 0.0008, 0.004, supports_tools=True),
}


def _lookup(model_id: str) -> Optional[ModelInfo]:
    m = (model_id or "").strip()
    if m in MODEL_CATALOG:
        return MODEL_CATALOG[m]
    # Accept provider-prefixed ids ("google/gemini-2.5-flash").
    return MODEL_CATALOG.get(m.split("/")[-1])


def calculate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
    info = _lookup(model_id)
    if info is None:
        return ((prompt_tokens + completion_tokens) / 1000.0) * FALLBACK_PRICE_PER_1K
    return (prompt_tokens / 1000.0) * info.input_per_1k + (completion_tokens / 1000.0) * info.output_per_1k


def format_cost(cost: float) -> str:
    """
    >>> format_cost(0.00001)
    '<$0.0001'
    >>> format_cost(0.0023)
    '$0.0023'
    >>> format_cost(0.1234)
    '$0.123'
    """
    if cost < 0.0001:
        return "<$0.0001"
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.3f}"


def model_short_name(model_id: str) -> str:
    info = _lookup(model_id)
    if info is not None:
        return info.name
    return (model_id or "").split("/")[-1] or model_id


def model_supports_tools(model_id: str) -> bool:
    info = _lookup(model_id)
    return info.supports_tools if info is not None else False


def model_supports_vision(model_id: str) -> bool:
    info = _lookup(model_id)
    return info.supports_vision if info is not None else False


@dataclass(frozen=True)
class CostInfo:
    model: str
    model_name: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    formatted_cost: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def create_cost_info(model_id: str, usage: Mapping[str, Any]) -> CostInfo:
    """Build a CostInfo from LangChain usage metadata (input_tokens/output_tokens)."""
    prompt = int(usage.get("input_tokens") or usage.get("prompt_tokens") or 0)
    completion = int(usage.get("output_tokens") or usage.get("completion_tokens") or 0)
    total = int(usage.get("total_tokens") or (prompt + completion))
    cost = calculate_cost(model_id, prompt, completion)
    return CostInfo(
        model=model_id,
        model_name=model_short_name(model_id),
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        estimated_cost=cost,
        formatted_cost=format_cost(cost),
    )
