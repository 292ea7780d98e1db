"""
CLI utility for out-of-band user and session administration.

Works directly on the JSON store under MCP_DATA_DIR (default ./data), so it is
how the first ADMIN gets assigned before anyone can use the set_user_role tool.
Run it while the server is stopped, or accept that a running server will not
see the change until it restarts: the server caches the store in memory.

Usage examples:

    # List users and their roles
    python -m scripts.admin list-users

    # Promote a user (by email or internal id) to admin
    python -m scripts.admin set-role --email alice@yourcompany.com --role admin
    python -m scripts.admin set-role --user-id 3f2a9c... --role readonly

    # Remove sessions that can no longer authenticate
    python -m scripts.admin sweep-sessions

    # Use a different data directory
    python -m scripts.admin --data-dir /var/lib/planning-mcp list-users
"""

import argparse
import asyncio
import sys
from pathlib import Path

from planning_mcp.config import settings
from planning_mcp.models import Role
from planning_mcp.sessions import SessionStore
from planning_mcp.storage import JsonFileBackend
from planning_mcp.users import UserDirectory


async def list_users(data_dir: Path) -> int:
    users = await UserDirectory(JsonFileBackend(data_dir)).list_users()
    if not users:
        print("No users.")
        return 0
    for user in users:
        print(f"{user.id}  {user.role.value:<8}  {user.email or '-':<32}  {user.display_name or '-'}")
    return 0


async def set_role(data_dir: Path, user_id: str | None, email: str | None, role: Role) -> int:
    directory = UserDirectory(JsonFileBackend(data_dir))

    if email:
        user = await directory.find_by_email(email)
        if user is None:
            print(f"No user with email {email}. They must log in once first.", file=sys.stderr)
            return 1
        user_id = user.id

    updated = await directory.set_role(user_id, role)
    if updated is None:
        print(f"No user with id {user_id}.", file=sys.stderr)
        return 1

    print(f"User:   {updated.id}")
    print(f"Email:  {updated.email or '-'}")
    print(f"Role:   {updated.role.value}")
    return 0


async def sweep_sessions(data_dir: Path, max_age_seconds: int | None) -> int:
    store = SessionStore(JsonFileBackend(data_dir), max_age_seconds=max_age_seconds)
    removed = await store.delete_expired()
    print(f"Removed {removed} session(s).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Administer users and sessions of the planning MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Bootstrap the first admin:
    %(prog)s set-role --email alice@yourcompany.com --role admin

  Demote a user:
    %(prog)s set-role --user-id 3f2a9c... --role readonly
        """,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=settings.data_dir,
        help=f"Directory holding users.json and sessions.json (default: {settings.data_dir})",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("list-users", help="List users and their roles")

    set_role_parser = subcommands.add_parser("set-role", help="Assign a role to a user")
    target = set_role_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="Internal user id")
    target.add_argument("--email", help="User email (first match)")
    set_role_parser.add_argument(
        "--role",
        required=True,
        choices=[r.value for r in Role],
        help="New role",
    )

    sweep_parser = subcommands.add_parser("sweep-sessions", help="Delete unusable sessions")
    sweep_parser.add_argument(
        "--max-age-seconds",
        type=int,
        default=settings.session_max_age_seconds,
        help="Also delete sessions older than this (default: MCP_SESSION_MAX_AGE_SECONDS)",
    )

    args = parser.parse_args()

    if args.command == "list-users":
        code = asyncio.run(list_users(args.data_dir))
    elif args.command == "set-role":
        code = asyncio.run(set_role(args.data_dir, args.user_id, args.email, Role(args.role)))
    else:
        code = asyncio.run(sweep_sessions(args.data_dir, args.max_age_seconds))
    sys.exit(code)


if __name__ == "__main__":
    main()
