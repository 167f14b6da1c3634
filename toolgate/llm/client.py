"""
Provider-agnostic LLM client.

Goals:
- One uniform way to call any configured model, per routing tier.
- `generate_text(system, prompt | messages, temperature) -> (text, err_code)` for chat,
  vision and the routing classifier.
- `generate_json(prompt, schema) -> (obj, err_code)` for tool planning.
- Stable error classification; never raise (callers have deterministic fallbacks).

Env (core):
- LLM_PROVIDER: default provider when the model id does not imply one (default: "vertexai")
  - vertexai: Gemini via Vertex AI using `langchain_google_vertexai`
  - anthropic: Claude via Anthropic API using `langchain_anthropic`
- LLM_MODEL: default model id (tiers override it, see toolgate.router.config)
- LLM_MOCK=1: return a deterministic stub (no external calls)
- LLM_TIMEOUT_SECONDS: HTTP timeout for LLM requests (default: 180, range: 5-300)

Vertex requirements:
- GOOGLE_CLOUD_PROJECT (required)
- GOOGLE_CLOUD_LOCATION (required)
- Application Default Credentials (ADC) must be available (e.g. Workload Identity, or GOOGLE_APPLICATION_CREDENTIALS)

Anthropic requirements:
- ANTHROPIC_API_KEY (required)
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

MOCK_TEXT = "LLM_MOCK enabled: no external call was made."


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _provider() -> str:
    return (os.getenv("LLM_PROVIDER") or "").strip().lower() or "vertexai"


def provider_for_model(model: str) -> str:
    """Model ids imply their provider; anything else uses LLM_PROVIDER."""
    m = (model or "").strip().lower()
    if m.startswith("claude") or m.startswith("anthropic/"):
        return "anthropic"
    if m.startswith("gemini") or m.startswith("google/"):
        return "vertexai"
    return _provider()


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort extraction for when a model wraps JSON in code fences or adds extra text.
    """
    if not text:
        return None
    t = text.strip()

    # Strip ```json fences if present
    if t.startswith("```"):
        t = re.sub(r"^```[a-zA-Z]*\s*", "", t)
        t = re.sub(r"\s*```$", "", t)
        t = t.strip()

    if t.startswith("{") and t.endswith("}"):
        try:
            obj = json.loads(t)
            return obj if isinstance(obj, dict) else None
        except Exception:
            pass

    # Fallback: scan for the first balanced JSON object substring and parse it.
    in_str = False
    escape = False
    depth = 0
    start = None

    for i, ch in enumerate(t):
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue

        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth > 0:
                depth -= 1
                if depth == 0 and start is not None:
                    candidate = t[start : i + 1]
                    try:
                        obj = json.loads(candidate)
                        return obj if isinstance(obj, dict) else None
                    except Exception:
                        start = None
                        continue
    return None


def _content_text(content: Any) -> str:
    """LangChain message content may be a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        out = ""
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                out += str(block.get("text", ""))
            elif isinstance(block, str):
                out += block
            elif hasattr(block, "text"):
                out += str(block.text)
        return out
    return str(content or "")


SchemaT = TypeVar("SchemaT")


@dataclass(frozen=True)
class LLMConfig:
    model: str
    temperature: float
    max_output_tokens: int
    timeout: int = 180


def _load_config() -> LLMConfig:
    model = (os.getenv("LLM_MODEL") or "").strip() or "gemini-2.5-flash"
    try:
        temperature = float((os.getenv("LLM_TEMPERATURE") or "").strip() or "0.2")
    except Exception:
        temperature = 0.2
    try:
        max_output_tokens = int((os.getenv("LLM_MAX_OUTPUT_TOKENS") or "").strip() or "4096")
    except Exception:
        max_output_tokens = 4096
    try:
        timeout = int((os.getenv("LLM_TIMEOUT_SECONDS") or "").strip() or "180")
    except Exception:
        timeout = 180

    # Keep bounds sane
    temperature = max(0.0, min(temperature, 1.0))
    max_output_tokens = max(64, min(max_output_tokens, 8192))
    timeout = max(5, min(timeout, 300))

    return LLMConfig(
        model=model,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=timeout,
    )


def _effective_config(
    *, model: Optional[str], temperature: Optional[float], timeout: Optional[float]
) -> LLMConfig:
    cfg = _load_config()
    if model:
        cfg = replace(cfg, model=model)
    if temperature is not None:
        cfg = replace(cfg, temperature=max(0.0, min(float(temperature), 1.0)))
    if timeout is not None:
        cfg = replace(cfg, timeout=max(1, min(int(round(timeout)), cfg.timeout)))
    return cfg


def _vertex_project_location_required() -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Return (project, location, err_code). Exactly one of (project/location) may be None only if err_code is set.
    """
    project = (os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip() or None
    location = (os.getenv("GOOGLE_CLOUD_LOCATION") or "").strip() or None
    if not project:
        return None, None, "missing_gcp_project"
    if not location:
        return None, None, "missing_gcp_location"
    return project, location, None


def _classify_error(e: Exception, *, model: str) -> str:
    msg = str(e or "").replace("\n", " ").strip()
    up = msg.upper()

    # Timeouts first; HTTP status codes before generic keywords.
    if isinstance(e, TimeoutError):
        return "timeout"
    if "408" in msg:
        return "timeout"
    if "504" in msg:
        return "gateway_timeout"
    if "DEADLINE_EXCEEDED" in up or "DEADLINE EXCEEDED" in up:
        return "deadline_exceeded"
    if "TIMEOUT" in up or "TIMED OUT" in up:
        return "timeout"

    if "PERMISSION_DENIED" in up or "403" in msg:
        return "permission_denied"
    if "UNAUTHENTICATED" in up or "401" in msg:
        return "unauthenticated"
    if "404" in msg or "NOT FOUND" in up:
        return f"model_not_found:{model}"
    if "RATE" in up and "LIMIT" in up:
        return "rate_limited"
    if "MAX_TOKENS" in up or "MAX TOKENS" in up or "CONTEXT LENGTH" in up:
        return "max_tokens_truncated"

    # Anthropic-specific patterns
    if "429" in msg or "OVERLOADED" in up:
        return "rate_limited"
    if "API_KEY" in up and ("INVALID" in up or "MISSING" in up):
        return "unauthenticated"

    return f"llm_error:{type(e).__name__}"


def _get_llm_instance(provider: str, cfg: LLMConfig, enable_thinking: bool = False) -> Tuple[Any, Optional[str]]:
    """
    Factory function that returns the appropriate LangChain chat model.

    Returns: (llm_instance, error_code). Exactly one is None.
    """
    if provider in ("vertexai", "vertex", "gcp_vertexai"):
        project, location, err = _vertex_project_location_required()
        if err:
            return None, err

        # Preflight ADC so we return stable error codes
        try:
            import google.auth  # type: ignore[import-not-found]
        except Exception:
            return None, "adc_import_failed"
        try:
            google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        except Exception:
            return None, "missing_adc_credentials"

        try:
            from langchain_google_vertexai import ChatVertexAI  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_google_vertexai"

        llm = ChatVertexAI(
            model=cfg.model.split("/", 1)[-1],
            temperature=cfg.temperature,
            max_output_tokens=cfg.max_output_tokens,
            project=str(project),
            location=str(location),
            timeout=cfg.timeout,
        )
        return llm, None

    elif provider == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
        if not api_key:
            return None, "missing_api_key"

        try:
            from langchain_anthropic import ChatAnthropic  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_anthropic"

        # Extended thinking is incompatible with forced tool calling and temperature 0.
        thinking_config = {"type": "enabled", "budget_tokens": 1024} if enable_thinking else None

        llm = ChatAnthropic(
            model=cfg.model.split("/", 1)[-1],
            temperature=cfg.temperature,
            max_tokens=cfg.max_output_tokens,
            anthropic_api_key=api_key,
            thinking=thinking_config,
            timeout=cfg.timeout,
        )
        return llm, None

    else:
        return None, "provider_not_configured"


def build_messages(
    *,
    system: Optional[str],
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Dict[str, Any]]] = None,
    image_b64: Optional[str] = None,
    image_media_type: str = "image/png",
) -> List[Any]:
    """
    Build LangChain messages from {role, content} dicts and/or a prompt.

    When an image is given it is attached to the last user message.
    """
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage  # type: ignore[import-not-found]

    out: List[Any] = []
    if system:
        out.append(SystemMessage(content=system))
    for m in messages or []:
        role = str(m.get("role") or "user")
        content = str(m.get("content") or "")
        if role == "assistant":
            out.append(AIMessage(content=content))
        elif role == "system":
            out.append(SystemMessage(content=content))
        else:
            out.append(HumanMessage(content=content))
    if prompt:
        out.append(HumanMessage(content=prompt))

    if image_b64:
        idx = max((i for i, msg in enumerate(out) if isinstance(msg, HumanMessage)), default=-1)
        text = _content_text(out[idx].content) if idx >= 0 else ""
        parts: List[Any] = [
            {"type": "text", "text": text or "Describe the screenshot."},
            {"type": "image_url", "image_url": {"url": f"data:{image_media_type};base64,{image_b64}"}},
        ]
        if idx >= 0:
            out[idx] = HumanMessage(content=parts)
        else:
            out.append(HumanMessage(content=parts))
    return out


def generate_text(
    *,
    system: Optional[str] = None,
    prompt: Optional[str] = None,
    messages: Optional[Sequence[Dict[str, Any]]] = None,
    temperature: Optional[float] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    image_b64: Optional[str] = None,
    usage: Optional[Dict[str, int]] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Provider-agnostic text call.

    `usage`, when given, receives the provider's token counts (input_tokens, output_tokens).

    Returns: (text, err_code). Exactly one is non-None.
    """
    if _env_bool("LLM_MOCK", False):
        return MOCK_TEXT, None

    cfg = _effective_config(model=model, temperature=temperature, timeout=timeout)
    llm, err = _get_llm_instance(provider_for_model(cfg.model), cfg)
    if err:
        return None, err

    try:
        msgs = build_messages(system=system, prompt=prompt, messages=messages, image_b64=image_b64)
        out = llm.invoke(msgs)
        if usage is not None and isinstance(getattr(out, "usage_metadata", None), dict):
            usage.update({k: int(v) for k, v in out.usage_metadata.items() if isinstance(v, int)})
        text = _content_text(getattr(out, "content", out)).strip()
        return (text, None) if text else (None, "empty_response")
    except Exception as e:
        return None, _classify_error(e, model=cfg.model)


def generate_json(
    prompt: str,
    *,
    schema: Optional[Type[SchemaT]] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Provider-agnostic JSON call.

    Returns: (obj, err_code). Exactly one is non-None.
    """
    if _env_bool("LLM_MOCK", False):
        if schema is not None:
            # Best-effort: instantiate schema defaults so callers get the right shape.
            try:
                obj0 = getattr(schema, "model_validate")({})  # type: ignore[misc]
                dump = getattr(obj0, "model_dump")(mode="json")  # type: ignore[misc]
                return dump if isinstance(dump, dict) else {}, None
            except Exception:
                return {"reply": MOCK_TEXT}, None
        return {"reply": MOCK_TEXT}, None

    cfg = _effective_config(model=model, temperature=None, timeout=timeout)
    llm, err = _get_llm_instance(provider_for_model(cfg.model), cfg)
    if err:
        return None, err

    try:
        if schema is not None:
            structured = llm.with_structured_output(schema)  # type: ignore[call-arg, attr-defined]
            out = structured.invoke(prompt)
            if hasattr(out, "model_dump"):
                d = out.model_dump(mode="json")  # type: ignore[no-any-return]
                return (d, None) if isinstance(d, dict) else (None, "schema_dump_failed")
            if isinstance(out, dict):
                return out, None
            return None, "schema_output_unexpected"

        msg = llm.invoke(prompt)
        obj = _extract_json_object(_content_text(getattr(msg, "content", None)))
        return (obj, None) if obj is not None else (None, "json_parse_failed")

    except Exception as e:
        return None, _classify_error(e, model=cfg.model)
