#!/usr/bin/env python3
"""
Payroll auth -- operator commands.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py create-user admin --role ROLE_ADMIN
  echo "s3cret" | python main.py create-user alice --password-stdin
  python main.py set-role alice ROLE_ADMIN
  python main.py purge-tokens

Environment variables:
  SECRET_KEY     Access token signing key (>= 32 chars). Required unless DEBUG=true.
  DATABASE_URL   SQLAlchemy URL of the auth database (default: sqlite file next to this script).
  DEBUG          true = generate a throwaway SECRET_KEY.

Self-registration through POST /auth/register always creates ROLE_USER
accounts; the first admin has to be created here.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError
from auth.models import Role
from auth.service import build_session_service
from core.config import get_settings


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _create_user(args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if not password:
        print("  [!] Password must not be empty.")
        return 1
    if len(password.encode("utf-8")) > 72:
        print("  [!] Password must be at most 72 bytes.")
        return 1
    service = build_session_service(get_settings())
    try:
        user = service.register(args.username, password)
        if args.role != user.role:
            service.users.update_role(user.id, args.role)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    except SQLAlchemyError as exc:
        print(f"  [!] Could not set role {args.role.value} on {args.username}: {type(exc).__name__}")
        print(f"      Run: python main.py set-role {args.username} {args.role.value}")
        return 1
    finally:
        service.users.close()
    print(f"  Created {args.username} ({args.role.value}).")
    return 0


def _set_role(args: argparse.Namespace) -> int:
    service = build_session_service(get_settings())
    try:
        user = service.users.get_by_username(args.username)
        if user is None:
            print(f"  [!] No such user: {args.username}")
            return 1
        service.users.update_role(user.id, args.role)
    finally:
        service.users.close()
    print(f"  {args.username} is now {args.role.value}. Existing access tokens keep the old role until they expire.")
    return 0


def _purge_tokens(args: argparse.Namespace) -> int:
    service = build_session_service(get_settings())
    try:
        removed = service.purge_expired_tokens()
    finally:
        service.users.close()
    print(f"  Removed {removed} expired or consumed refresh token(s).")
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="payroll-auth",
        description="Operator commands for the payroll authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    p_serve.set_defaults(func=_serve)

    role_choices = [r.value for r in Role]

    p_create = sub.add_parser("create-user", help="Create a user account")
    p_create.add_argument("username")
    p_create.add_argument(
        "--role",
        type=Role,
        default=Role.USER,
        metavar="ROLE",
        help=f"One of {', '.join(role_choices)} (default: {Role.USER.value})",
    )
    p_create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    p_create.set_defaults(func=_create_user)

    p_role = sub.add_parser("set-role", help="Change a user's role")
    p_role.add_argument("username")
    p_role.add_argument("role", type=Role, metavar="ROLE", help=f"One of {', '.join(role_choices)}")
    p_role.set_defaults(func=_set_role)

    p_purge = sub.add_parser("purge-tokens", help="Delete expired and consumed refresh tokens")
    p_purge.set_defaults(func=_purge_tokens)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
