from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_str(s: Any, *, max_chars: int) -> str:
    txt = "" if s is None else str(s)
    txt = txt.strip()
    if max_chars > 0 and len(txt) > max_chars:
        return txt[: max_chars - 1] + "…"
    return txt


def _clamp_list(xs: Any, *, max_items: int) -> list:
    if not isinstance(xs, list):
        return []
    if max_items > 0 and len(xs) > max_items:
        return xs[:max_items]
    return xs


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool: str = Field(default="")
    args: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tool", mode="before")
    @classmethod
    def _tool_trim(cls, v: Any) -> str:
        return _clamp_str(v, max_chars=120)

    @field_validator("args", mode="before")
    @classmethod
    def _args_obj(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}


class ToolPlanMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    warnings: List[str] = Field(default_factory=list)

    @field_validator("warnings", mode="before")
    @classmethod
    def _warnings_cap(cls, v: Any) -> List[str]:
        out: List[str] = []
        for x in _clamp_list(v, max_items=6):
            s = _clamp_str(x, max_chars=140)
            if s:
                out.append(s)
        return out


class ToolPlanResponse(BaseModel):
    """
    Versioned envelope for one step of the tool-calling loop.

    Either `tool_calls` is non-empty (execute them, then ask again) or `reply` is the
    final answer.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: Literal["toolgate.tool_plan.v1"] = "toolgate.tool_plan.v1"
    reply: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    meta: Optional[ToolPlanMeta] = None

    @field_validator("reply", mode="before")
    @classmethod
    def _reply_trim(cls, v: Any) -> str:
        return _clamp_str(v, max_chars=2000)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def _tool_calls_cap(cls, v: Any) -> List[ToolCall]:
        # Executor side caps as well; keep the model's output bounded.
        items = _clamp_list(v, max_items=3)
        out: List[ToolCall] = []
        for x in items:
            try:
                tc = x if isinstance(x, ToolCall) else ToolCall.model_validate(x)
            except Exception:
                continue
            if tc.tool:
                out.append(tc)
        return out
