#!/usr/bin/env python3
"""
toolgate - routing and permission-gated tool calling for an in-app assistant.

Operator CLI: inspect routing decisions and the published operation set, invoke an
operation directly (dry-run by default), read the audit log, apply migrations, serve HTTP.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep toolgate imports lazy (inside functions) so `serve` and `--help` stay light.
#


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=False, default=str))


def _parse_args_json(raw: str) -> Dict[str, Any]:
    try:
        obj = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise SystemExit(f"--args must be a JSON object: {e}")
    if not isinstance(obj, dict):
        raise SystemExit("--args must be a JSON object")
    return obj


def cmd_route(messages: List[str]) -> int:
    """Route a conversation. Messages alternate user/assistant, starting and ending with the user."""
    from toolgate.router.router import route_turn

    convo = []
    for i, text in enumerate(messages):
        convo.append({"role": "user" if (len(messages) - 1 - i) % 2 == 0 else "assistant", "content": text})
    _print_json(route_turn(convo).to_dict())
    return 0


def cmd_tools(actor: str) -> int:
    from toolgate.chat.runtime import published_operation_set

    _print_json(published_operation_set(actor_id=actor))
    return 0


def cmd_invoke(name: str, raw_args: str, *, actor: str, session: str, live: bool) -> int:
    from toolgate.authz.policy import load_tool_policy
    from toolgate.execution.dispatch import invoke_operation
    from toolgate.execution.types import ExecutionContext
    from toolgate.tools.special import build_special_registry

    policy = load_tool_policy()
    ctx = ExecutionContext(actor_id=actor, session_id=session or None, dry_run=not live)
    res = invoke_operation(
        name, _parse_args_json(raw_args), ctx, policy=policy, specials=build_special_registry(policy)
    )
    _print_json(res.to_dict())
    return 0 if res.success else 1


def cmd_audit(*, session: str, actor: str, operation: str, limit: int) -> int:
    from toolgate.audit.log import list_audit_records

    ok, msg, items = list_audit_records(
        session_id=session or None, actor_id=actor or None, operation=operation or None, limit=limit
    )
    if not ok:
        print(f"Audit log unavailable: {msg}", file=sys.stderr)
        return 1
    _print_json([r.to_dict() for r in items])
    return 0


def cmd_migrate(*, status_only: bool = False) -> int:
    from toolgate.db.config import resolve_dsn
    from toolgate.db.migrate import MigrationDriftError, apply_migrations, migration_status

    dsn = resolve_dsn()
    if not dsn:
        print("Postgres not configured (POSTGRES_DSN or POSTGRES_HOST/...)", file=sys.stderr)
        return 1
    if status_only:
        rows = migration_status(dsn=dsn)
        for s in rows:
            print(f"{s.version}  {s.state:<8}  {s.name}")
        return 1 if any(s.state == "drifted" for s in rows) else 0
    try:
        n, versions = apply_migrations(dsn=dsn)
    except MigrationDriftError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(f"Applied {n} migration(s){': ' + ', '.join(versions) if versions else ''}")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Routing and permission-gated tool calling for an in-app assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show how a turn would be routed
  python main.py route "Zeige alle Rollen"

  # Dry-run an operation as a given actor
  python main.py invoke query_roles --actor 7f0c... --args '{"limit": 5}'

  # Apply database migrations
  python main.py migrate
        """,
    )
    sub = parser.add_subparsers(dest="command")

    p_route = sub.add_parser("route", help="Route a conversation (last message is the user's)")
    p_route.add_argument("messages", nargs="+", help="Conversation messages, oldest first")

    p_tools = sub.add_parser("tools", help="List the operations published to the tool tier")
    p_tools.add_argument("--actor", default="cli", help="Actor id (default: cli)")

    p_invoke = sub.add_parser("invoke", help="Validate, execute and audit one operation")
    p_invoke.add_argument("name", help="Operation name (e.g. query_roles, create_user)")
    p_invoke.add_argument("--args", default="{}", help="Operation arguments as a JSON object")
    p_invoke.add_argument("--actor", required=True, help="Actor id recorded in the audit log")
    p_invoke.add_argument("--session", default="", help="Session id recorded in the audit log")
    p_invoke.add_argument("--live", action="store_true", help="Apply mutations (default: dry-run)")

    p_audit = sub.add_parser("audit", help="Show recent audit records")
    p_audit.add_argument("--session", default="")
    p_audit.add_argument("--actor", default="")
    p_audit.add_argument("--operation", default="")
    p_audit.add_argument("--limit", type=int, default=20)

    p_migrate = sub.add_parser("migrate", help="Apply pending database migrations")
    p_migrate.add_argument("--status", action="store_true", help="Only report applied/pending/drifted migrations")

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p_serve.add_argument("--port", type=int, default=8080, help="Listen port (default: 8080)")

    args = parser.parse_args()

    if args.command == "route":
        sys.exit(cmd_route(args.messages))
    if args.command == "tools":
        sys.exit(cmd_tools(args.actor))
    if args.command == "invoke":
        sys.exit(cmd_invoke(args.name, args.args, actor=args.actor, session=args.session, live=args.live))
    if args.command == "audit":
        sys.exit(cmd_audit(session=args.session, actor=args.actor, operation=args.operation, limit=args.limit))
    if args.command == "migrate":
        sys.exit(cmd_migrate(status_only=args.status))
    if args.command == "serve":
        from toolgate.api.server import run

        run(host=args.host, port=args.port)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
