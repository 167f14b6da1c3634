"""
Privileged, hand-authored operations.

These live in their own registry: dispatch looks a name up here first (exact match)
and the generic catalog path never handles these names. Each operation carries its own
authorization predicates, which run in addition to generic argument checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from toolgate.authz.policy import ToolPolicy
from toolgate.errors import AuthorizationFailure
from toolgate.execution.types import ExecutionContext
from toolgate.tools import accounts, themes, ui_actions
from toolgate.tools.synthesizer import OperationDescriptor, ParameterSpec
from toolgate.tools.ui_actions import UIAction, UIActionExecutor

logger = logging.getLogger(__name__)

CREATE_USER = "create_user"
DELETE_USER = "delete_user"
SEARCH_UI_COMPONENTS = "search_ui_components"
EXECUTE_UI_ACTION = "execute_ui_action"
GET_THEME_TOKENS = "get_theme_tokens"
PREVIEW_THEME_TOKENS = "preview_theme_tokens"
RESET_THEME_PREVIEW = "reset_theme_preview"
SAVE_AS_NEW_THEME = "save_as_new_theme"

# Every name a privileged operation may use, published or not. Generated operations
# never take one of these names.
SPECIAL_OPERATION_NAMES: FrozenSet[str] = frozenset(
    {
        CREATE_USER,
        DELETE_USER,
        SEARCH_UI_COMPONENTS,
        EXECUTE_UI_ACTION,
        GET_THEME_TOKENS,
        PREVIEW_THEME_TOKENS,
        RESET_THEME_PREVIEW,
        SAVE_AS_NEW_THEME,
    }
)

SpecialHandler = Callable[[Dict[str, Any], ExecutionContext], Any]
# Raises AuthorizationFailure when the actor may not run the operation.
SpecialPredicate = Callable[[Dict[str, Any], ExecutionContext], None]


@dataclass(frozen=True)
class SpecialOperation:
    descriptor: OperationDescriptor
    handler: SpecialHandler
    predicates: Tuple[SpecialPredicate, ...] = ()

    @property
    def name(self) -> str:
        return self.descriptor.name

    def authorize(self, args: Dict[str, Any], ctx: ExecutionContext) -> None:
        for check in self.predicates:
            check(args, ctx)


class SpecialOperationsRegistry:
    def __init__(self, operations: Iterable[SpecialOperation] = ()) -> None:
        self._ops: Dict[str, SpecialOperation] = {}
        for op in operations:
            if op.name not in SPECIAL_OPERATION_NAMES:
                raise ValueError(f"unregistered privileged operation name: {op.name}")
            self._ops[op.name] = op

    def __contains__(self, name: object) -> bool:
        return name in self._ops

    def get(self, name: str) -> Optional[SpecialOperation]:
        return self._ops.get(name)

    def names(self) -> List[str]:
        return list(self._ops)

    def descriptors(self) -> List[OperationDescriptor]:
        return [op.descriptor for op in self._ops.values()]


def require_actor(args: Dict[str, Any], ctx: ExecutionContext) -> None:
    if not str(ctx.actor_id or "").strip():
        raise AuthorizationFailure("an authenticated actor is required")


def _account_operations(policy: ToolPolicy, *, dsn: Optional[str], identity: Optional[accounts.IdentityAdminConfig]):
    admin_only = partial(_require_admin, admin_roles=frozenset(policy.admin_roles), dsn=dsn)
    return [
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=CREATE_USER,
                privileged=True,
                description=(
                    "Create a new user account. Administrators only. The profile is created "
                    "automatically; an invitation e-mail is sent unless send_invite is false."
                ),
                parameters=(
                    ParameterSpec(name="email", type="string", format="email", required=True, description="E-mail address"),
                    ParameterSpec(name="display_name", type="string", description="Display name (default: part before @)"),
                    ParameterSpec(
                        name="role",
                        type="string",
                        enum=accounts.ACCOUNT_ROLES,
                        default="user",
                        description="Account role",
                    ),
                    ParameterSpec(name="send_invite", type="boolean", default=True, description="Send an invitation"),
                ),
            ),
            handler=partial(accounts.create_user, cfg=identity, dsn=dsn),
            predicates=(require_actor, admin_only),
        ),
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=DELETE_USER,
                privileged=True,
                description=(
                    "Delete a user account permanently. Administrators only; cannot be undone. "
                    "The profile is removed with the account. confirm must be true."
                ),
                parameters=(
                    ParameterSpec(name="user_id", type="string", format="uuid", required=True, description="Account id"),
                    ParameterSpec(
                        name="confirm", type="boolean", required=True, description="Must be true to confirm the deletion"
                    ),
                ),
            ),
            handler=partial(accounts.delete_user, cfg=identity, dsn=dsn),
            predicates=(require_actor, admin_only, accounts.forbid_self_deletion),
        ),
    ]


def _require_admin(args: Dict[str, Any], ctx: ExecutionContext, *, admin_roles: FrozenSet[str], dsn: Optional[str]) -> None:
    accounts.require_admin(ctx, admin_roles=admin_roles, dsn=dsn)


def _ui_operations(actions: Sequence[UIAction], executor: Optional[UIActionExecutor]):
    if not actions:
        return []
    ids = tuple(a.id for a in actions)
    by_category: Dict[str, List[str]] = {}
    for a in actions:
        by_category.setdefault(a.category, []).append(f"  - {a.id}: {a.description} [keywords: {', '.join(a.keywords)}]")
    listing = "\n\n".join(f"{cat}:\n" + "\n".join(lines) for cat, lines in by_category.items())

    def _search(args: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return ui_actions.search_ui_actions(actions, str(args.get("query") or ""))

    def _execute(args: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return ui_actions.execute_ui_action(actions, str(args.get("action_id") or ""), executor=executor)

    return [
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=SEARCH_UI_COMPONENTS,
                description=(
                    "Search the UI elements the assistant can operate by keyword "
                    "(e.g. 'dark mode', 'sidebar'). Returns matches to pass to execute_ui_action."
                ),
                parameters=(ParameterSpec(name="query", type="string", required=True, description="Search terms"),),
            ),
            handler=_search,
        ),
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=EXECUTE_UI_ACTION,
                description=(
                    "Execute a UI action by id. Use search_ui_components first when unsure.\n\n"
                    f"Available actions by category:\n{listing}"
                ),
                parameters=(
                    ParameterSpec(name="action_id", type="string", enum=ids, required=True, description="Action id"),
                ),
            ),
            handler=_execute,
        ),
    ]


def _theme_operations(*, dsn: Optional[str]):
    token_list = ParameterSpec(
        name="tokens",
        type="array",
        item_type="object",
        required=True,
        description="Token changes: [{name: '--primary', light_value?: 'oklch(...)', dark_value?: 'oklch(...)'}]",
    )
    return [
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=GET_THEME_TOKENS,
                description="Read the design tokens of a saved theme (default: the active theme).",
                parameters=(ParameterSpec(name="theme_id", type="string", description="Theme id or name"),),
            ),
            handler=partial(themes.get_theme_tokens, dsn=dsn),
        ),
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=PREVIEW_THEME_TOKENS,
                description="Show a live preview of token changes. Nothing is saved.",
                parameters=(
                    token_list,
                    ParameterSpec(name="description", type="string", required=True, description="Short summary"),
                ),
            ),
            handler=themes.preview_theme_tokens,
        ),
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=RESET_THEME_PREVIEW,
                description="Discard previewed token changes and return to the saved theme.",
            ),
            handler=themes.reset_theme_preview,
        ),
        SpecialOperation(
            descriptor=OperationDescriptor(
                name=SAVE_AS_NEW_THEME,
                description=(
                    "Save the previewed token changes as a NEW theme. The existing theme is never overwritten."
                ),
                parameters=(
                    ParameterSpec(name="name", type="string", required=True, description="Name of the new theme"),
                    ParameterSpec(name="description", type="string", description="Optional description"),
                    token_list,
                ),
            ),
            handler=partial(themes.save_as_new_theme, dsn=dsn),
            predicates=(require_actor,),
        ),
    ]


def build_special_registry(
    policy: ToolPolicy,
    *,
    ui_action_list: Sequence[UIAction] = (),
    ui_executor: Optional[UIActionExecutor] = None,
    dsn: Optional[str] = None,
    identity: Optional[accounts.IdentityAdminConfig] = None,
) -> SpecialOperationsRegistry:
    """Privileged operations enabled by policy for one request."""
    ops: List[SpecialOperation] = []
    if policy.allow_account_admin:
        ops.extend(_account_operations(policy, dsn=dsn, identity=identity))
    if policy.allow_ui_actions:
        ops.extend(_ui_operations(list(ui_action_list), ui_executor))
    if policy.allow_theme_tools:
        ops.extend(_theme_operations(dsn=dsn))
    return SpecialOperationsRegistry(ops)
