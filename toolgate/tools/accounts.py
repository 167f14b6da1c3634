"""
Account lifecycle operations (privileged).

Accounts live in the identity service and are managed through its admin HTTP API.
Profiles live in Postgres: a database trigger creates the profile row when an account
is created, and the foreign key cascade removes it when the account is deleted. This
module only updates the profile's display name and role after creation.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

import requests

from toolgate.db.config import resolve_dsn
from toolgate.errors import AuthorizationFailure, ExecutionFailure, TransportFailure, ValidationRejection
from toolgate.execution.types import ExecutionContext

logger = logging.getLogger(__name__)

ACCOUNT_ROLES = ("admin", "user")


@dataclass(frozen=True)
class IdentityAdminConfig:
    base_url: Optional[str]
    service_key: Optional[str]
    timeout_seconds: int = 10

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)


def load_identity_admin_config() -> IdentityAdminConfig:
    """
    Env:
    - IDENTITY_ADMIN_URL: base URL of the identity admin API (e.g. https://auth.example.com/auth/v1)
    - IDENTITY_SERVICE_KEY: service credential for admin calls
    - IDENTITY_TIMEOUT_SECONDS: request timeout (default 10, clamped 1..60)
    """
    raw_timeout = (os.getenv("IDENTITY_TIMEOUT_SECONDS") or "").strip()
    try:
        timeout = int(raw_timeout) if raw_timeout else 10
    except Exception:
        timeout = 10
    return IdentityAdminConfig(
        base_url=((os.getenv("IDENTITY_ADMIN_URL") or "").strip().rstrip("/") or None),
        service_key=((os.getenv("IDENTITY_SERVICE_KEY") or "").strip() or None),
        timeout_seconds=max(1, min(timeout, 60)),
    )


def _connect(dsn: str):
    from toolgate.db.config import connect

    return connect(dsn)


def _admin_request(cfg: IdentityAdminConfig, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
    if not cfg.configured:
        raise ExecutionFailure("identity admin API not configured")

    headers = kwargs.pop("headers", {})
    headers.update(
        {
            "Authorization": f"Bearer {cfg.service_key}",
            "apikey": str(cfg.service_key),
            "Content-Type": "application/json",
        }
    )
    url = f"{cfg.base_url}{path}"
    try:
        response = requests.request(method, url, headers=headers, timeout=cfg.timeout_seconds, **kwargs)
    except requests.RequestException as e:
        raise TransportFailure(f"identity admin API unreachable: {type(e).__name__}") from e

    if response.status_code >= 400:
        detail = ""
        try:
            body = response.json()
            detail = str(body.get("msg") or body.get("message") or body.get("error_description") or "")
        except Exception:
            detail = (response.text or "")[:200]
        raise ExecutionFailure(f"identity admin API error {response.status_code}: {detail}".rstrip(": "))

    try:
        data = response.json()
    except Exception:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def get_actor_role(actor_id: str, *, dsn: Optional[str] = None) -> Optional[str]:
    dsn = dsn or resolve_dsn()
    if not dsn or not actor_id:
        return None
    try:
        with _connect(dsn) as conn:
            row = conn.execute("SELECT role FROM profiles WHERE id::text = %s;", (str(actor_id),)).fetchone()
    except Exception as e:
        logger.warning("Admin check failed for actor: %s", type(e).__name__)
        return None
    if not row or row[0] is None:
        return None
    return str(row[0]).strip().lower()


def is_admin(actor_id: str, *, admin_roles: FrozenSet[str], dsn: Optional[str] = None) -> bool:
    """Fails closed: an unknown actor or an unreachable datastore is not an admin."""
    role = get_actor_role(actor_id, dsn=dsn)
    return bool(role) and role in admin_roles


def require_admin(ctx: ExecutionContext, *, admin_roles: FrozenSet[str], dsn: Optional[str] = None) -> None:
    if not is_admin(ctx.actor_id, admin_roles=admin_roles, dsn=dsn):
        raise AuthorizationFailure("only administrators may manage accounts")


def canonical_user_id(raw: Any) -> Optional[str]:
    """Canonical lower-case hyphenated form, or None when `raw` is not a UUID."""
    try:
        return str(uuid.UUID(str(raw or "").strip()))
    except (ValueError, AttributeError):
        return None


def forbid_self_deletion(args: Dict[str, Any], ctx: ExecutionContext) -> None:
    # The same account can be spelled many ways (case, braces, urn:uuid:, no hyphens).
    target = canonical_user_id(args.get("user_id"))
    if target is None:
        raise ValidationRejection("user_id must be a UUID")
    actor = canonical_user_id(ctx.actor_id)
    if actor is None or actor == target:
        raise AuthorizationFailure("cannot delete your own account")


def _display_name(args: Dict[str, Any]) -> str:
    name = str(args.get("display_name") or "").strip()
    if name:
        return name
    return str(args.get("email") or "").split("@")[0]


def _update_profile(user_id: str, *, display_name: str, role: str, dsn: Optional[str]) -> bool:
    dsn = dsn or resolve_dsn()
    if not dsn:
        return False
    try:
        with _connect(dsn) as conn:
            with conn.transaction():
                conn.execute(
                    "UPDATE profiles SET display_name = %s, role = %s WHERE id::text = %s;",
                    (display_name, role, str(user_id)),
                )
        return True
    except Exception as e:
        logger.warning("Profile update after account creation failed: %s", type(e).__name__)
        return False


def _load_profile(user_id: str, *, dsn: Optional[str]) -> Dict[str, Any]:
    dsn = dsn or resolve_dsn()
    if not dsn:
        return {}
    try:
        with _connect(dsn) as conn:
            row = conn.execute(
                "SELECT email, display_name FROM profiles WHERE id::text = %s;", (str(user_id),)
            ).fetchone()
    except Exception:
        return {}
    if not row:
        return {}
    return {"email": row[0], "display_name": row[1]}


def create_user(
    args: Dict[str, Any],
    ctx: ExecutionContext,
    *,
    cfg: Optional[IdentityAdminConfig] = None,
    dsn: Optional[str] = None,
) -> Dict[str, Any]:
    email = str(args.get("email") or "").strip()
    if "@" not in email:
        raise ValidationRejection("email must be a valid address")
    role = str(args.get("role") or "user").strip().lower()
    if role not in ACCOUNT_ROLES:
        raise ValidationRejection(f"role must be one of {', '.join(ACCOUNT_ROLES)}")
    send_invite = args.get("send_invite") is not False
    display_name = _display_name(args)

    if ctx.dry_run:
        return {
            "dry_run": True,
            "action": "create_user",
            "data": {"email": email, "display_name": display_name, "role": role, "send_invite": send_invite},
        }

    cfg = cfg or load_identity_admin_config()
    created = _admin_request(
        cfg,
        "POST",
        "/admin/users",
        json={
            "email": email,
            "email_confirm": True,
            "user_metadata": {"display_name": display_name, "role": role},
        },
    )
    user_id = str(created.get("id") or "")
    if not user_id:
        raise ExecutionFailure("identity admin API returned no account id")

    # The profile row already exists (created by trigger); fill in name and role.
    _update_profile(user_id, display_name=display_name, role=role, dsn=dsn)

    invited = False
    if send_invite:
        try:
            _admin_request(cfg, "POST", "/invite", json={"email": email})
            invited = True
        except (ExecutionFailure, TransportFailure) as e:
            logger.warning("Invitation for new account failed: %s", e.message)

    logger.info("Account created by actor=%s role=%s invited=%s", ctx.actor_id, role, invited)
    return {
        "user": {
            "id": user_id,
            "email": created.get("email") or email,
            "display_name": display_name,
            "role": role,
            "created_at": created.get("created_at"),
        },
        "invited": invited,
        "message": f'Account "{email}" created.' + (" An invitation was sent." if invited else ""),
    }


def delete_user(
    args: Dict[str, Any],
    ctx: ExecutionContext,
    *,
    cfg: Optional[IdentityAdminConfig] = None,
    dsn: Optional[str] = None,
) -> Dict[str, Any]:
    user_id = canonical_user_id(args.get("user_id"))
    if user_id is None:
        raise ValidationRejection("user_id must be a UUID")

    if ctx.dry_run:
        return {"dry_run": True, "action": "delete_user", "user_id": user_id}

    profile = _load_profile(user_id, dsn=dsn)
    cfg = cfg or load_identity_admin_config()
    _admin_request(cfg, "DELETE", f"/admin/users/{user_id}")

    logger.info("Account deleted by actor=%s", ctx.actor_id)
    email = profile.get("email") or user_id
    return {
        "deleted_user": {
            "id": user_id,
            "email": profile.get("email"),
            "display_name": profile.get("display_name"),
        },
        "message": f'Account "{email}" deleted.',
    }
