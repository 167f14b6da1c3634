"""
Stage 2: LLM classification of the trailing conversation window.

Best-effort by contract: every failure (transport error, unparseable output, timeout)
yields CHAT with an explicit status, and the call is abandoned after a bounded time.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, Sequence, Tuple

from toolgate.authz.policy import redact_text
from toolgate.llm.client import generate_text
from toolgate.router.config import RouterConfig

logger = logging.getLogger(__name__)

RouteLabel = Literal["UI_ACTION", "DB_QUERY", "VISION", "CHAT"]
Stage2Status = Literal["ok", "invalid_output", "error", "timeout", "empty"]

LABELS: Tuple[str, ...] = ("UI_ACTION", "DB_QUERY", "VISION", "CHAT")

ROUTER_SYSTEM_PROMPT = """You are the routing classifier for an in-app assistant.

TASK:
Read the conversation and its last message. Decide which category applies.

CATEGORIES:
- UI_ACTION: navigation, opening a page, expanding/collapsing a panel, operating a menu,
  or confirming a navigation the assistant offered ("ja", "ok", "mach das", "bitte", "yes please")
- DB_QUERY: reading/creating/changing/deleting data, managing users or roles, database operations
- VISION: questions about what is visible on screen, screenshot analysis, visual descriptions
- CHAT: general questions, explanations, help, small talk, thanks

IMPORTANT:
- Use the CONTEXT. If the assistant just offered a navigation and the user says "ja" -> UI_ACTION
- Short confirmations ("ja", "ok", "bitte", "mach das") usually confirm the previous offer
- "Can you do that?" after an offer -> same category as the offer
- Answer with exactly one word: UI_ACTION, DB_QUERY, VISION or CHAT"""

# (system, prompt, temperature, model, timeout) -> (text, err)
TextGenerator = Callable[..., Tuple[Optional[str], Optional[str]]]


@dataclass(frozen=True)
class Stage2Result:
    label: RouteLabel
    status: Stage2Status
    raw: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status != "ok"


def _role_and_text(m: Any) -> Tuple[str, str]:
    if isinstance(m, dict):
        return str(m.get("role") or "user"), str(m.get("content") or "")
    return str(getattr(m, "role", "user") or "user"), str(getattr(m, "content", "") or "")


def format_conversation(messages: Sequence[Any], *, window: int = 6) -> str:
    recent = list(messages)[-max(1, window) :]
    lines = []
    for m in recent:
        role, text = _role_and_text(m)
        lines.append(f"{role.upper()}: {redact_text(text.strip())}")
    return "\n".join(lines)


def parse_label(text: Optional[str]) -> Optional[RouteLabel]:
    """Uppercase, keep only [A-Z_], and accept exactly one known label."""
    cleaned = re.sub(r"[^A-Z_]", "", (text or "").strip().upper())
    return cleaned if cleaned in LABELS else None  # type: ignore[return-value]


def classify_conversation(
    messages: Sequence[Any],
    *,
    cfg: RouterConfig,
    generate: TextGenerator = generate_text,
) -> Stage2Result:
    """
    Ask the classifier model for one label. Never raises.
    """
    if not messages:
        return Stage2Result(label="CHAT", status="empty")

    prompt = f"CONVERSATION:\n{format_conversation(messages, window=cfg.history_window)}\n\nCATEGORY:"
    timeout = cfg.classifier_timeout_seconds

    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(
            generate,
            system=ROUTER_SYSTEM_PROMPT,
            prompt=prompt,
            temperature=0.0,
            model=cfg.classifier_model,
            timeout=timeout,
        )
        text, err = future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("Routing classifier timed out after %.1fs; keeping heuristic decision", timeout)
        return Stage2Result(label="CHAT", status="timeout", error="timeout")
    except Exception as e:
        logger.warning("Routing classifier failed: %s", type(e).__name__)
        return Stage2Result(label="CHAT", status="error", error=f"llm_error:{type(e).__name__}")
    finally:
        # Do not wait for an abandoned call.
        pool.shutdown(wait=False)

    if err:
        logger.warning("Routing classifier unavailable: %s", err)
        return Stage2Result(label="CHAT", status="error", error=err)

    label = parse_label(text)
    if label is None:
        logger.warning("Routing classifier returned invalid label %r; falling back to CHAT", (text or "")[:40])
        return Stage2Result(label="CHAT", status="invalid_output", raw=text)
    return Stage2Result(label=label, status="ok", raw=text)
