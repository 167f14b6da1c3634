"""
LangSmith tracing for tool turns (env-gated, off by default).

The LangGraph run of a tool turn gets a LangChainTracer callback; every operation the
model calls gets its own span tagged with verb, table and mode. Span inputs carry the
redacted arguments only, never result rows.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from toolgate.authz.policy import redact_value
from toolgate.tools.special import SPECIAL_OPERATION_NAMES
from toolgate.tools.synthesizer import parse_operation_name

logger = logging.getLogger(__name__)


def _env_first(*names: str) -> str:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            return v
    return ""


@dataclass(frozen=True)
class TracingSettings:
    enabled: bool = False
    api_key: Optional[str] = None
    project: str = "toolgate"
    tags: Tuple[str, ...] = field(default_factory=tuple)
    run_name_prefix: str = ""


def load_tracing_settings() -> TracingSettings:
    """
    Env (LangSmith names first, legacy LangChain names as fallback):
    - LANGSMITH_TRACING / LANGCHAIN_TRACING_V2=1
    - LANGSMITH_API_KEY / LANGCHAIN_API_KEY (tracing stays off without one)
    - LANGSMITH_PROJECT / LANGCHAIN_PROJECT (default toolgate)
    - LANGSMITH_TAGS: comma-separated tags added to every run
    - LANGSMITH_RUN_NAME_PREFIX
    """
    wanted = _env_first("LANGSMITH_TRACING", "LANGCHAIN_TRACING_V2").lower() in ("1", "true", "yes", "y", "on")
    key = _env_first("LANGSMITH_API_KEY", "LANGCHAIN_API_KEY") or None
    if wanted and not key:
        logger.warning("LangSmith tracing requested but no API key is set; tracing disabled")
    raw_tags = (os.getenv("LANGSMITH_TAGS") or "").strip()
    return TracingSettings(
        enabled=bool(wanted and key),
        api_key=key,
        project=_env_first("LANGSMITH_PROJECT", "LANGCHAIN_PROJECT") or "toolgate",
        tags=tuple(t.strip() for t in raw_tags.split(",") if t.strip()),
        run_name_prefix=(os.getenv("LANGSMITH_RUN_NAME_PREFIX") or "").strip(),
    )


def operation_span_tags(tool: str, *, dry_run: bool) -> List[str]:
    """`update_roles` -> ["verb:update", "table:roles", "mode:dry_run"]."""
    name = (tool or "").strip()
    if name in SPECIAL_OPERATION_NAMES:
        head = ["privileged", f"operation:{name}"]
    else:
        parsed = parse_operation_name(name)
        head = [f"verb:{parsed[0]}", f"table:{parsed[1]}"] if parsed else ["unknown_operation"]
    return head + ["mode:dry_run" if dry_run else "mode:live"]


def build_invoke_config(
    *,
    kind: str,
    run_name: str,
    metadata: Optional[Dict[str, Any]] = None,
    settings: Optional[TracingSettings] = None,
) -> Dict[str, Any]:
    """
    RunnableConfig for a LangGraph invocation; {} when tracing is off.
    """
    s = settings or load_tracing_settings()
    if not s.enabled:
        return {}

    tags = list(s.tags) + [f"kind:{kind or 'unknown'}"]
    cfg: Dict[str, Any] = {
        "run_name": f"{s.run_name_prefix}{run_name}",
        "metadata": {**(metadata or {}), "kind": kind or "unknown"},
        "tags": tags,
    }
    try:
        from langchain_core.tracers.langchain import LangChainTracer  # type: ignore[import-not-found]
        from langsmith import Client  # type: ignore[import-not-found]
    except Exception as e:
        logger.warning("LangSmith tracing enabled but dependencies unavailable: %s", type(e).__name__)
        return cfg
    cfg["callbacks"] = [LangChainTracer(project_name=s.project, client=Client(api_key=s.api_key), tags=tags)]
    return cfg


def trace_operation(
    *,
    tool: str,
    args: Dict[str, Any],
    dry_run: bool,
    fn: Callable[[], Any],
    settings: Optional[TracingSettings] = None,
) -> Any:
    """
    Run `fn()` inside a LangSmith tool span when tracing is enabled.

    `fn` runs at most once: operations may mutate data, so a tracing failure after the
    call started must not trigger a second execution.
    """
    s = settings or load_tracing_settings()
    if not s.enabled:
        return fn()

    try:
        from langsmith.run_helpers import traceable  # type: ignore[import-not-found]
    except Exception:
        return fn()

    state: Dict[str, Any] = {"ran": False}

    @traceable(
        name=f"op:{tool}",
        run_type="tool",
        tags=operation_span_tags(tool, dry_run=dry_run),
        metadata={"operation": tool, "dry_run": dry_run},
    )
    def _span(operation: str, arguments: Dict[str, Any]):
        state["ran"] = True
        state["result"] = fn()
        return state["result"]

    try:
        return _span(str(tool), redact_value(dict(args or {})))
    except Exception:
        if state["ran"]:
            if "result" in state:
                return state["result"]
            raise
        logger.warning("LangSmith span for %s failed before the call started; running untraced", tool)
        return fn()
