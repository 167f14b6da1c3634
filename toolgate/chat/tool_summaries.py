from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple

from toolgate.chat.types import ChatToolOutcome
from toolgate.errors import AUTHORIZATION_FAILURE, VALIDATION_REJECTION
from toolgate.execution.types import ExecutionResult
from toolgate.tools.synthesizer import parse_operation_name


def _truncate(s: str, n: int) -> str:
    txt = (s or "").strip()
    if len(txt) <= n:
        return txt
    return txt[: max(0, n - 1)].rstrip() + "…"


def _jsonable(v: Any, *, _depth: int = 0, _max_depth: int = 6) -> Any:
    """
    Best-effort convert values to JSON-serializable objects for stable keying.
    """
    if _depth >= _max_depth:
        return str(v)
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _jsonable(vv, _depth=_depth + 1, _max_depth=_max_depth) for k, vv in v.items()}
    if isinstance(v, (list, tuple, set)):
        return [_jsonable(x, _depth=_depth + 1, _max_depth=_max_depth) for x in list(v)]
    if hasattr(v, "model_dump"):
        return _jsonable(v.model_dump(mode="json"), _depth=_depth + 1, _max_depth=_max_depth)
    return str(v)


def tool_call_key(tool: str, args: Dict[str, Any]) -> str:
    """
    Short stable fingerprint for (tool, args), order-insensitive.
    """
    norm = _jsonable(args or {})
    payload = json.dumps(
        {"tool": str(tool or "").strip(), "args": norm}, sort_keys=True, ensure_ascii=False, separators=(",", ":")
    )
    # Not intended for cryptographic use.
    h = hashlib.blake2s(payload.encode("utf-8"), digest_size=6).hexdigest()
    return f"{str(tool or '').strip()}:{h}"


def compact_args_for_prompt(args: Dict[str, Any], *, max_keys: int = 8, max_value_chars: int = 80) -> Dict[str, Any]:
    """
    Keep prompts small while still letting the model see what was called.
    """
    if not isinstance(args, dict):
        return {}
    out: Dict[str, Any] = {}
    for i, (k, v) in enumerate(args.items()):
        if i >= max_keys:
            break
        vv = _jsonable(v)
        if isinstance(vv, str):
            vv = _truncate(vv, max_value_chars)
        out[str(k)] = vv
    return out


def compact_result_for_prompt(data: Any, *, max_rows: int = 20, max_chars: int = 4000) -> Any:
    """Bound what a tool result contributes to the next planning prompt."""
    if isinstance(data, list) and len(data) > max_rows:
        data = list(data[:max_rows]) + [{"_truncated": f"{len(data) - max_rows} more rows"}]
    js = _jsonable(data)
    txt = json.dumps(js, ensure_ascii=False)
    if len(txt) > max_chars:
        return _truncate(txt, max_chars)
    return js


def summarize_tool_result(*, tool: str, result: ExecutionResult) -> Tuple[ChatToolOutcome, str]:
    """
    Return (outcome, summary) for prompts/UI.
    """
    t = str(tool or "").strip()
    if not result.success:
        outcome: ChatToolOutcome = (
            "rejected" if result.error_kind in (VALIDATION_REJECTION, AUTHORIZATION_FAILURE) else "error"
        )
        return outcome, _truncate(f"{t}: {outcome} {str(result.error or '').strip() or 'unknown'}", 160)

    if isinstance(result.data, dict) and result.data.get("dry_run"):
        return "dry_run", _truncate(f"{t}: dry-run, nothing changed", 160)

    parsed = parse_operation_name(t)
    if parsed is not None:
        verb, table = parsed
        n: Optional[int] = result.row_count
        if n is None and isinstance(result.data, list):
            n = len(result.data)
        if verb == "query":
            if not n:
                return "empty", _truncate(f"{t}: empty (0 rows from {table})", 160)
            return "ok", _truncate(f"{t}: ok ({n} rows from {table})", 160)
        label = {"insert": "inserted", "update": "updated", "delete": "deleted"}[verb]
        if not n:
            return "empty", _truncate(f"{t}: 0 rows {label}", 160)
        return "ok", _truncate(f"{t}: {n} rows {label} in {table}", 160)

    data = result.data
    if isinstance(data, dict):
        if data.get("found") is False:
            return "empty", _truncate(f"{t}: no match", 160)
        results = data.get("results")
        if isinstance(results, list):
            return ("empty" if not results else "ok"), _truncate(f"{t}: {len(results)} matches", 160)
        msg = str(data.get("message") or "").strip()
        if msg:
            return "ok", _truncate(f"{t}: {msg}", 160)

    return "ok", _truncate(f"{t}: ok", 160)
