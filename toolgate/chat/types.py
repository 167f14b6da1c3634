from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from toolgate.tools.ui_actions import UIAction

ChatRole = Literal["user", "assistant", "system"]
ChatToolOutcome = Literal["ok", "empty", "dry_run", "rejected", "error", "skipped_duplicate"]


class ChatMessage(BaseModel):
    role: ChatRole
    content: str


class ChatToolEvent(BaseModel):
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    ok: bool
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    dry_run_statement: Optional[str] = None
    audited: bool = False
    # Used to reduce repeated tool calls and improve prompting.
    outcome: Optional[ChatToolOutcome] = None
    summary: Optional[str] = None
    key: Optional[str] = None


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    # Current page of the host surface; narrows the UI actions offered.
    route: Optional[str] = None
    # Base64-encoded PNG of the current view, used on the vision path.
    screenshot: Optional[str] = None
    ui_actions: List[UIAction] = Field(default_factory=list)
    dry_run: Optional[bool] = None


class ChatResponse(BaseModel):
    reply: str
    decision: Dict[str, Any] = Field(default_factory=dict)
    tool_events: List[ChatToolEvent] = Field(default_factory=list)
    cost: Optional[Dict[str, Any]] = None
