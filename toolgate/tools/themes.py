"""
Theme-token staging.

Preview and reset only describe changes for the client to render; nothing is stored.
Save-as-new persists the staged token set under a new name and refuses names that
already exist.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from toolgate.db.config import resolve_dsn
from toolgate.errors import ExecutionFailure, ValidationRejection
from toolgate.execution.types import ExecutionContext

logger = logging.getLogger(__name__)

MAX_TOKENS_PER_CHANGE = 64


def _connect(dsn: str):
    from toolgate.db.config import connect

    return connect(dsn)


def _clean_tokens(raw: Any) -> List[Dict[str, str]]:
    if not isinstance(raw, list) or not raw:
        raise ValidationRejection("tokens must be a non-empty list")
    if len(raw) > MAX_TOKENS_PER_CHANGE:
        raise ValidationRejection(f"at most {MAX_TOKENS_PER_CHANGE} tokens per change")
    out: List[Dict[str, str]] = []
    for t in raw:
        if not isinstance(t, dict):
            raise ValidationRejection("each token must be an object")
        name = str(t.get("name") or "").strip()
        if not name.startswith("--"):
            raise ValidationRejection(f'token name "{name}" must start with "--"')
        light = t.get("light_value")
        dark = t.get("dark_value")
        if light is None and dark is None:
            raise ValidationRejection(f"token {name} needs light_value or dark_value")
        item = {"name": name}
        if light is not None:
            item["light_value"] = str(light)
        if dark is not None:
            item["dark_value"] = str(dark)
        out.append(item)
    return out


def get_theme_tokens(args: Dict[str, Any], ctx: ExecutionContext, *, dsn: Optional[str] = None) -> Dict[str, Any]:
    theme_id = str(args.get("theme_id") or "").strip()
    if not theme_id or theme_id == "current":
        # The active theme (including staged changes) is only known to the client.
        return {"__theme_action": "get_tokens", "theme_id": "current", "message": "Tokens are read by the client."}

    dsn = dsn or resolve_dsn()
    if not dsn:
        raise ExecutionFailure("Postgres not configured")
    try:
        with _connect(dsn) as conn:
            row = conn.execute(
                """
                SELECT id::text, name, description, tokens
                FROM themes
                WHERE id::text = %s OR name = %s
                LIMIT 1;
                """,
                (theme_id, theme_id),
            ).fetchone()
    except Exception as e:
        raise ExecutionFailure(f"theme lookup failed: {type(e).__name__}") from e

    if not row:
        raise ValidationRejection(f'theme "{theme_id}" not found')
    return {"theme_id": row[0], "name": row[1], "description": row[2], "tokens": row[3] or []}


def preview_theme_tokens(args: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
    tokens = _clean_tokens(args.get("tokens"))
    description = str(args.get("description") or "").strip()
    return {
        "__theme_action": "preview",
        "tokens": tokens,
        "description": description,
        "persisted": False,
        "message": f"Preview: {description or 'token changes'}. Save as a new theme or reset.",
    }


def reset_theme_preview(args: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
    return {"__theme_action": "reset", "message": "Preview reset to the saved theme."}


def save_as_new_theme(args: Dict[str, Any], ctx: ExecutionContext, *, dsn: Optional[str] = None) -> Dict[str, Any]:
    name = str(args.get("name") or "").strip()
    if not name:
        raise ValidationRejection("name is required")
    description = str(args.get("description") or "").strip() or None
    tokens = _clean_tokens(args.get("tokens"))

    if ctx.dry_run:
        return {"dry_run": True, "action": "save_as_new_theme", "name": name, "token_count": len(tokens)}

    dsn = dsn or resolve_dsn()
    if not dsn:
        raise ExecutionFailure("Postgres not configured")
    try:
        with _connect(dsn) as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO themes (name, description, tokens, created_by)
                    VALUES (%s, %s, %s::jsonb, %s)
                    ON CONFLICT (name) DO NOTHING
                    RETURNING id::text;
                    """,
                    (name, description, json.dumps(tokens), ctx.actor_id),
                ).fetchone()
    except Exception as e:
        raise ExecutionFailure(f"saving theme failed: {type(e).__name__}") from e

    if not row:
        raise ValidationRejection(f'a theme named "{name}" already exists; choose a new name')

    logger.info("Theme saved as new: name=%s tokens=%d", name, len(tokens))
    return {
        "__theme_action": "save_as_new",
        "theme_id": row[0],
        "name": name,
        "description": description,
        "message": f'Theme "{name}" saved.',
    }
