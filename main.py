#!/usr/bin/env python3
"""
FileGate -- operator CLI for the download gateway.

Usage:
  python main.py init-db
  python main.py create-user alice --role client
  python main.py issue-link --type task_upload --id 42
  python main.py verify-token --type task_upload --id 42 --token "1718000000|ab12..."
  python main.py audit-tail --limit 20
  python main.py audit-tail --json

All commands read the same settings as the API (DATABASE_URL, RESOURCE_ROOT,
PUBLIC_BASE_URL, ...), so a link issued here verifies in the running server.
"""

import argparse
import json
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.store import AuditLog
from auth.models import User
from auth.signing_key import DOWNLOAD_SECRET_KEY, DatabaseSecretProvider
from auth.store import UserStore
from auth.tokens import DOWNLOAD_TOKEN_TTL_SECONDS, DownloadTokenService
from core.config import get_settings
from core.models import ResourceType, Role
from resources.store import ResourceStore

_RESOURCE_TYPES = [t.value for t in ResourceType]


def _token_service(store: UserStore) -> DownloadTokenService:
    return DownloadTokenService(DatabaseSecretProvider(store))


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create every table, the resource root and the download signing secret."""
    settings = get_settings()
    settings.resource_root.mkdir(parents=True, exist_ok=True)
    users = UserStore()
    resources = ResourceStore()
    audit = AuditLog()
    try:
        DatabaseSecretProvider(users).get_secret()
    finally:
        audit.close()
        resources.close()
        users.close()
    print(f"  Database ready: {settings.database_url}")
    print(f"  Resource root:  {settings.resource_root.resolve()}")
    print(f"  Signing secret: stored under '{DOWNLOAD_SECRET_KEY}'")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    store = UserStore()
    try:
        uid = store.create_user(User(username=args.username, role=Role(args.role)))
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created {args.role} '{args.username}' (id={uid}).")
    return 0


def cmd_issue_link(args: argparse.Namespace) -> int:
    """Issue a link without an actor check. Operator use only."""
    users = UserStore()
    resources = ResourceStore()
    try:
        kind = ResourceType(args.type)
        if resources.fetch(kind, args.id) is None:
            print(f"  [!] No {kind.value} record with id {args.id}.")
            return 1
        link = _token_service(users).issue_download_link(kind, args.id, args.ttl)
    finally:
        resources.close()
        users.close()
    base = get_settings().public_base_url.rstrip("/")
    print(f"{base}/api/v1/downloads?{link.query}")
    print(f"  token:      {link.token}", file=sys.stderr)
    print(f"  expires_at: {link.expires_at}", file=sys.stderr)
    return 0


def cmd_verify_token(args: argparse.Namespace) -> int:
    store = UserStore()
    try:
        valid = _token_service(store).verify(args.token, args.id, ResourceType(args.type))
    finally:
        store.close()
    print("valid" if valid else "invalid")
    return 0 if valid else 1


def cmd_audit_tail(args: argparse.Namespace) -> int:
    audit = AuditLog()
    try:
        entries = audit.recent(args.limit)
    finally:
        audit.close()
    # Oldest first, like tail.
    for entry in reversed(entries):
        if args.json:
            print(json.dumps(entry.to_dict(), sort_keys=True))
            continue
        actor = entry.actor_role if entry.actor_id is None else f"{entry.actor_role}:{entry.actor_id}"
        print(
            f"{entry.timestamp}  {entry.outcome:<15} {entry.resource_type}/{entry.resource_id}  "
            f"{actor}  {entry.source_ip}  {entry.reason}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filegate",
        description="Operator tools for the FileGate download gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py create-user admin --role admin
  python main.py issue-link --type plan_document --id 7 --ttl 300
  python main.py audit-tail --limit 50
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init-db", help="Create tables, the resource root and the signing secret")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-user", help="Add a portal user")
    p.add_argument("username")
    p.add_argument("--role", choices=[r.value for r in Role], default=Role.client.value)
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("issue-link", help="Print a signed download URL for a resource")
    p.add_argument("--type", required=True, choices=_RESOURCE_TYPES, dest="type")
    p.add_argument("--id", required=True, type=int, dest="id")
    p.add_argument(
        "--ttl",
        type=int,
        default=DOWNLOAD_TOKEN_TTL_SECONDS,
        help=f"Advertised lifetime in seconds (capped at {DOWNLOAD_TOKEN_TTL_SECONDS})",
    )
    p.set_defaults(func=cmd_issue_link)

    p = sub.add_parser("verify-token", help="Check a download token against a resource")
    p.add_argument("--type", required=True, choices=_RESOURCE_TYPES, dest="type")
    p.add_argument("--id", required=True, type=int, dest="id")
    p.add_argument("--token", required=True)
    p.set_defaults(func=cmd_verify_token)

    p = sub.add_parser("audit-tail", help="Show the most recent download audit entries")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--json", action="store_true", help="One JSON object per line")
    p.set_defaults(func=cmd_audit_tail)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
