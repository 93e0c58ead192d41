#!/usr/bin/env python3
"""
outr-accounts -- administrative commands against the account store.

Usage:
  python manage.py sweep-sessions
  python manage.py deactivate alice@example.com
  python manage.py audit
  python manage.py audit --email alice@example.com --limit 20

Reads DATABASE_URL, SECRET_KEY and DEBUG like the API server (see core/config.py).
"""

import argparse
import json
import sys
from typing import Optional

from auth.models import AuditLogEntry
from auth.service import AuthService, ClientInfo
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.errors import AccountError


def _build_service(store: AccountStore) -> AuthService:
    settings = get_settings()
    sessions = SessionManager(store, ttl_seconds=settings.token_expire_seconds)
    tokens = TokenIssuer(settings.secret_key, ttl_seconds=settings.token_expire_seconds)
    return AuthService(store, tokens, sessions)


def _format_entry(entry: AuditLogEntry) -> str:
    who = entry.username or (f"user:{entry.user_id}" if entry.user_id is not None else "anonymous")
    meta = f" {json.dumps(entry.metadata, sort_keys=True)}" if entry.metadata else ""
    return f"  {entry.created_at}  {entry.action:<20} {who:<20} {entry.ip_address or '-'}{meta}"


def cmd_sweep_sessions(store: AccountStore, args: argparse.Namespace) -> int:
    removed = _build_service(store).sessions.sweep_expired()
    print(f"Removed {removed} expired session(s).")
    return 0


def cmd_deactivate(store: AccountStore, args: argparse.Namespace) -> int:
    user = store.find_user_by_email(args.email)
    if user is None:
        print(f"  [!] No account with email '{args.email}'.")
        return 1
    if not user.is_active:
        print(f"Account '{user.username}' is already inactive.")
        return 0
    _build_service(store).deactivate(user.id, ClientInfo(ip="local", user_agent="manage.py"))
    print(f"Deactivated '{user.username}' and revoked all sessions.")
    return 0


def cmd_audit(store: AccountStore, args: argparse.Namespace) -> int:
    entries: list[AuditLogEntry]
    if args.email:
        user = store.find_user_by_email(args.email)
        if user is None:
            print(f"  [!] No account with email '{args.email}'.")
            return 1
        entries = store.list_audit_logs(user.id, limit=args.limit)
    else:
        entries = store.list_recent_audit_logs(limit=args.limit)
    if not entries:
        print("No audit entries.")
        return 0
    for entry in entries:
        print(_format_entry(entry))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="outr-accounts",
        description="Administrative commands for the outr-accounts store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python manage.py sweep-sessions
  python manage.py deactivate alice@example.com
  python manage.py audit --email alice@example.com --limit 20
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sweep = sub.add_parser("sweep-sessions", help="Delete all expired sessions")
    sweep.set_defaults(func=cmd_sweep_sessions)

    deactivate = sub.add_parser("deactivate", help="Deactivate an account and revoke its sessions")
    deactivate.add_argument("email", help="Email of the account to deactivate (case-insensitive)")
    deactivate.set_defaults(func=cmd_deactivate)

    audit = sub.add_parser("audit", help="Print recent audit log entries")
    audit.add_argument("--email", metavar="EMAIL", help="Only entries for this account")
    audit.add_argument("--limit", type=int, default=50, metavar="N", help="Maximum entries to print (default: 50)")
    audit.set_defaults(func=cmd_audit)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    settings = get_settings()
    store = AccountStore(settings.database_url, timeout=settings.store_timeout_seconds)
    try:
        return args.func(store, args)
    except AccountError as e:
        print(f"  [!] {e.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
