"""
UI-action lookup and execution.

The host surface publishes a flat list of actions ({id, action, target, description,
keywords, category}) and executes one by id. This module never sees the UI itself:
it ranks the list against a query and hands the chosen id back to the host.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from toolgate.errors import ExecutionFailure, ValidationRejection

logger = logging.getLogger(__name__)

UIActionType = Literal["navigate", "toggle", "submit", "open-modal", "close-modal", "select", "input", "trigger"]
UIActionCategory = Literal["navigation", "layout", "form", "modal", "data", "settings", "actions"]
RequiredRole = Literal["public", "user", "admin"]

_KEBAB_RE = re.compile(r"^[a-z][a-z0-9-]*$")

SEARCH_RESULT_LIMIT = 5

# Host executor boundary: action id -> {"success": bool, "message": str}
UIActionExecutor = Callable[[str], Dict[str, Any]]


class UIAction(BaseModel):
    """An action as supplied by the host for one turn (loosely validated)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    action: str = "trigger"
    target: Optional[str] = None
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    category: str = "actions"
    route: Optional[str] = None

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords_list(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [str(x) for x in v if str(x or "").strip()]


class ManifestAction(UIAction):
    """A manifest entry; stricter than request-supplied actions."""

    action: UIActionType  # type: ignore[assignment]
    category: UIActionCategory  # type: ignore[assignment]
    required_role: RequiredRole = Field(default="public", alias="requiredRole")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("id")
    @classmethod
    def _id_kebab(cls, v: str) -> str:
        if len(v) < 3 or not _KEBAB_RE.match(v):
            raise ValueError("id must be kebab-case and at least 3 characters")
        return v

    @field_validator("description")
    @classmethod
    def _description_len(cls, v: str) -> str:
        if not 10 <= len(v) <= 200:
            raise ValueError("description must be 10-200 characters")
        return v

    @field_validator("keywords")
    @classmethod
    def _keywords_min(cls, v: List[str]) -> List[str]:
        if len(v) < 2:
            raise ValueError("at least 2 keywords required")
        return v


def parse_manifest(doc: Any) -> Tuple[List[UIAction], List[str]]:
    """
    Validate a manifest document ({version, components: [...]}).

    Invalid entries are skipped; their errors are returned alongside the valid ones.
    """
    if not isinstance(doc, dict):
        return [], ["manifest must be a mapping with a components list"]
    comps = doc.get("components")
    if not isinstance(comps, list):
        return [], ["manifest.components must be a list"]

    out: List[UIAction] = []
    errors: List[str] = []
    seen: set = set()
    for i, raw in enumerate(comps):
        try:
            item = ManifestAction.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            errors.append(f"components[{i}]: {first.get('msg', 'invalid')}")
            continue
        if item.id in seen:
            errors.append(f"components[{i}]: duplicate id {item.id}")
            continue
        seen.add(item.id)
        out.append(item)
    return out, errors


def load_ui_manifest(path: Optional[str] = None) -> Tuple[bool, str, List[UIAction]]:
    """
    Load UI actions from a YAML manifest (`UI_ACTIONS_MANIFEST`).

    Returns: (ok, message, actions)
    """
    p = (path or os.getenv("UI_ACTIONS_MANIFEST") or "").strip()
    if not p:
        return False, "manifest_not_configured", []
    try:
        with Path(p).open("r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read UI manifest %s: %s", p, type(e).__name__)
        return False, "manifest_unreadable", []

    actions, errors = parse_manifest(doc)
    for err in errors:
        logger.warning("UI manifest %s: %s", p, err)
    return True, "ok", actions


def actions_for_route(actions: Sequence[UIAction], route: Optional[str]) -> List[UIAction]:
    """Global actions plus those bound to the current route."""
    out: List[UIAction] = []
    for a in actions:
        if not a.route or a.route == "global" or (route and a.route == route):
            out.append(a)
    return out


def score_action(action: UIAction, query: str) -> Tuple[int, List[str]]:
    q = (query or "").strip().lower()
    if not q:
        return 0, []
    words = q.split()
    score = 0
    matched: List[str] = []

    for kw in action.keywords:
        k = kw.lower()
        if q in k or k in q:
            score += 10
            matched.append(kw)
        for w in words:
            if w in k:
                score += 5
                if kw not in matched:
                    matched.append(kw)

    desc = action.description.lower()
    if q in desc:
        score += 3
    for w in words:
        if w in desc:
            score += 1

    ident = action.id.lower()
    for w in words:
        if w in ident:
            score += 2

    return score, matched


def search_ui_actions(actions: Sequence[UIAction], query: str) -> Dict[str, Any]:
    ranked = []
    for a in actions:
        score, matched = score_action(a, query)
        if score > 0:
            ranked.append((score, a, matched))
    # Stable sort keeps registry order between equal scores.
    ranked.sort(key=lambda t: t[0], reverse=True)
    top = ranked[:SEARCH_RESULT_LIMIT]

    if not top:
        categories = sorted({a.category for a in actions})
        return {
            "found": False,
            "query": query,
            "message": f'No UI actions found for "{query}". Available categories: {", ".join(categories)}',
            "categories": categories,
            "suggestions": [
                {"id": a.id, "description": a.description, "keywords": a.keywords[:3]} for a in list(actions)[:3]
            ],
        }

    return {
        "found": True,
        "query": query,
        "results": [
            {
                "id": a.id,
                "description": a.description,
                "action": a.action,
                "target": a.target,
                "keywords": a.keywords,
                "category": a.category,
                "matched_keywords": matched,
                "score": score,
            }
            for score, a, matched in top
        ],
        "hint": "Call execute_ui_action with the matching action_id.",
    }


def execute_ui_action(
    actions: Sequence[UIAction],
    action_id: str,
    *,
    executor: Optional[UIActionExecutor] = None,
) -> Dict[str, Any]:
    """
    Execute an action by id.

    Without a host executor the result is an envelope the client executes.
    """
    aid = str(action_id or "").strip()
    match = next((a for a in actions if a.id == aid), None)
    if match is None:
        raise ValidationRejection(f'unknown UI action "{aid}"')

    if executor is None:
        return {
            "__ui_action": "execute",
            "id": match.id,
            "action": match.action,
            "target": match.target,
            "description": match.description,
            "success": True,
            "message": f"Executing: {match.description}",
        }

    res = executor(match.id) or {}
    ok = bool(res.get("success"))
    msg = str(res.get("message") or "")
    if not ok:
        raise ExecutionFailure(msg or f'UI action "{match.id}" failed')
    return {"id": match.id, "success": True, "message": msg}
